"""Per-employee payroll computation.

``PayrollEngine`` is pure: it reads only the frozen policy snapshot and the
employee input assembled by the orchestrator, so the same input always
yields the same line item.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date
from decimal import Decimal

from paie_engine.calculators.components import BASE_SALARY_CODE, SalaryComponentResolver
from paie_engine.calculators.line_builder import LineItemBuilder
from paie_engine.calculators.overtime import OvertimeCalculator
from paie_engine.calculators.statutory import StatutoryDeductionCalculator
from paie_engine.calculators.types import (
    ZERO,
    EmployeeCalculationInput,
    LineItemResult,
    OvertimeResult,
    PolicySnapshot,
    TaxableBases,
)
from paie_engine.exceptions import ValidationError


class PayrollEngine:
    """Runs resolver, overtime and statutory calculators for one employee."""

    def __init__(self, snapshot: PolicySnapshot):
        self.snapshot = snapshot
        self.resolver = SalaryComponentResolver(snapshot.payroll_policy)
        self.overtime = OvertimeCalculator(snapshot.overtime_table())
        self.statutory = StatutoryDeductionCalculator(snapshot)

    @staticmethod
    def snapshot_fingerprint(snapshot: PolicySnapshot) -> str:
        """Stable fingerprint of the policy set a run calculated with."""
        data = json.dumps(snapshot.to_dict(), sort_keys=True)
        return hashlib.sha256(data.encode()).hexdigest()[:16]

    def hourly_rate(self, base_salary: Decimal) -> Decimal:
        return base_salary / self.snapshot.payroll_policy.monthly_reference_hours

    def calculate_employee(
        self, employee: EmployeeCalculationInput, as_of: date | None = None
    ) -> LineItemResult:
        """Compute one employee's line item.

        Raises:
            ValidationError: Malformed compensation or attendance data.
            ConfigurationError: Missing rate set or overtime band.
        """
        compensation = self.resolver.resolve(
            employee.components,
            hire_date=employee.hire_date,
            termination_date=employee.termination_date,
            period_start=employee.period_start,
            period_end=employee.period_end,
            employee_id=employee.employee_id,
            extra_components=employee.extra_components,
        )

        if employee.overtime_segments:
            overtime = self.overtime.calculate(
                employee.overtime_segments,
                hourly_rate=self.hourly_rate(compensation.base_salary),
            )
        else:
            overtime = OvertimeResult()

        base_component = next(
            (c.amount for c in compensation.components if c.code == BASE_SALARY_CODE), ZERO
        )
        bases = TaxableBases(
            gross_salary=compensation.total + overtime.total_amount,
            brut_imposable=compensation.taxable_total + overtime.total_amount,
            base_salary=base_component,
        )
        deductions = self.statutory.calculate(
            bases,
            employee.profile,
            country_code=self.snapshot.country_code,
            as_of=as_of or self.snapshot.as_of,
        )

        item = LineItemBuilder.build(employee, compensation, overtime, deductions)
        if LineItemBuilder.is_negative_net(item):
            raise ValidationError(
                f"Deductions exceed gross salary (net {item.net_salary})", employee.employee_id
            )
        return item
