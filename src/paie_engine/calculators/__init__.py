"""Payroll calculation modules."""

from paie_engine.calculators.acp import AcpCalculator, LeaveEntry, SalaryHistoryEntry
from paie_engine.calculators.components import SalaryComponentResolver, years_of_service
from paie_engine.calculators.engine import PayrollEngine
from paie_engine.calculators.line_builder import ConservationError, LineItemBuilder
from paie_engine.calculators.overtime import OvertimeCalculator
from paie_engine.calculators.policy_provider import PolicyProvider
from paie_engine.calculators.statutory import StatutoryDeductionCalculator

__all__ = [
    "AcpCalculator",
    "ConservationError",
    "LeaveEntry",
    "LineItemBuilder",
    "OvertimeCalculator",
    "PayrollEngine",
    "PolicyProvider",
    "SalaryComponentResolver",
    "SalaryHistoryEntry",
    "StatutoryDeductionCalculator",
    "years_of_service",
]
