"""Line item builder with conservation checks and deterministic hashing."""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal

from paie_engine.calculators.components import ACP_COMPONENT_CODE
from paie_engine.calculators.types import (
    ZERO,
    EmployeeCalculationInput,
    LineItemResult,
    OvertimeResult,
    ResolvedCompensation,
    StatutoryDeductions,
    round_xof,
)


class ConservationError(AssertionError):
    """A built line item does not balance. Indicates a calculator bug."""


class LineItemBuilder:
    """Assembles one employee's pay from the calculator outputs.

    Conservation (non-negotiable):
    - gross = sum(components) + overtime pay
    - net = gross - total employee deductions
    - employer cost = gross + sum(employer contributions)

    Every amount is a whole franc before totals are taken, so totals are
    exact sums of what gets persisted.
    """

    @staticmethod
    def compute_hash(item: LineItemResult) -> str:
        """Compute deterministic hash of the item's values."""
        canonical = item.to_canonical_dict()
        json_str = json.dumps(canonical, sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()

    @staticmethod
    def build(
        employee: EmployeeCalculationInput,
        compensation: ResolvedCompensation,
        overtime: OvertimeResult,
        deductions: StatutoryDeductions,
    ) -> LineItemResult:
        overtime_pay = overtime.total_amount
        gross = compensation.total + overtime_pay
        brut_imposable = compensation.taxable_total + overtime_pay
        total_deductions = deductions.total_employee
        total_employer = deductions.total_employer
        acp_amount = sum(
            (c.amount for c in compensation.components if c.code == ACP_COMPONENT_CODE), ZERO
        )

        item = LineItemResult(
            employee_id=employee.employee_id,
            employee_number=employee.employee_number,
            employee_name=employee.employee_name,
            base_salary=round_xof(compensation.base_salary),
            days_worked=compensation.days_worked,
            components=list(compensation.components),
            overtime=list(overtime.bands),
            overtime_pay=overtime_pay,
            gross_salary=gross,
            brut_imposable=brut_imposable,
            employee_deductions=list(deductions.employee_deductions),
            employer_contributions=list(deductions.employer_contributions),
            total_deductions=total_deductions,
            total_employer_contributions=total_employer,
            net_salary=gross - total_deductions,
            total_employer_cost=gross + total_employer,
            acp_amount=acp_amount,
            acp_detail=employee.acp_detail,
        )
        LineItemBuilder.validate(item)
        item.calculation_hash = LineItemBuilder.compute_hash(item)
        return item

    @staticmethod
    def validate(item: LineItemResult) -> None:
        """Check conservation and whole-franc amounts.

        Raises:
            ConservationError: If the item does not balance.
        """
        components_total = sum((c.amount for c in item.components), ZERO)
        checks = [
            ("gross", item.gross_salary, components_total + item.overtime_pay),
            ("net", item.net_salary + item.total_deductions, item.gross_salary),
            (
                "employer_cost",
                item.total_employer_cost,
                item.gross_salary + sum((c.amount for c in item.employer_contributions), ZERO),
            ),
            (
                "deductions",
                item.total_deductions,
                sum((d.amount for d in item.employee_deductions), ZERO),
            ),
        ]
        for name, actual, expected in checks:
            if actual != expected:
                raise ConservationError(f"{name} does not balance: {actual} != {expected}")

        for amount in (item.gross_salary, item.net_salary, item.total_employer_cost):
            if amount != amount.to_integral_value():
                raise ConservationError(f"Fractional franc amount: {amount}")

    @staticmethod
    def is_negative_net(item: LineItemResult) -> bool:
        return item.net_salary < Decimal("0")
