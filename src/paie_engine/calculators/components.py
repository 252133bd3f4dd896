"""Salary component resolver.

Expands a compensation record into the flat list of components paid for a
period: prorates standard and custom components for partial months and adds
calculated components (seniority allowance, ACP indemnity).
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from paie_engine.calculators.types import (
    ZERO,
    PayrollPolicySpec,
    ResolvedCompensation,
    SalaryComponent,
    SourceType,
    round_xof,
)
from paie_engine.exceptions import ValidationError

BASE_SALARY_CODE = "11"
SENIORITY_ALLOWANCE_CODE = "21"
ACP_COMPONENT_CODE = "ACP"


def years_of_service(hire_date: date, on: date) -> int:
    """Completed years between ``hire_date`` and ``on``."""
    years = on.year - hire_date.year
    if (on.month, on.day) < (hire_date.month, hire_date.day):
        years -= 1
    return max(years, 0)


class SalaryComponentResolver:
    """Resolves an employee's components for one pay period."""

    def __init__(self, policy: PayrollPolicySpec):
        self.policy = policy

    def parse_components(
        self, raw: list[dict[str, Any]], employee_id: UUID | None = None
    ) -> list[SalaryComponent]:
        """Validate stored component dicts.

        Raises:
            ValidationError: Missing base salary, negative or malformed amount.
        """
        if not raw:
            raise ValidationError("Compensation record has no components", employee_id)

        components = []
        seen: set[str] = set()
        for item in raw:
            code = str(item.get("code") or "").strip()
            if not code:
                raise ValidationError("Salary component without code", employee_id)
            if code in seen:
                raise ValidationError(f"Duplicate salary component '{code}'", employee_id)
            seen.add(code)
            try:
                amount = Decimal(str(item["amount"]))
            except (KeyError, ArithmeticError, ValueError) as exc:
                raise ValidationError(
                    f"Invalid amount for component '{code}'", employee_id
                ) from exc
            if not amount.is_finite() or amount < 0:
                raise ValidationError(
                    f"Negative or invalid amount for component '{code}': {item.get('amount')}",
                    employee_id,
                )
            try:
                source_type = SourceType(item.get("source_type", SourceType.STANDARD.value))
            except ValueError as exc:
                raise ValidationError(
                    f"Unknown source type for component '{code}'", employee_id
                ) from exc
            components.append(
                SalaryComponent(
                    code=code,
                    name=item.get("name") or code,
                    amount=amount,
                    source_type=source_type,
                    taxable=bool(item.get("taxable", True)),
                )
            )

        if BASE_SALARY_CODE not in seen:
            raise ValidationError("Missing base salary component '11'", employee_id)
        base = next(c for c in components if c.code == BASE_SALARY_CODE)
        if base.amount <= 0:
            raise ValidationError("Base salary must be positive", employee_id)
        return components

    def days_worked(
        self,
        hire_date: date,
        termination_date: date | None,
        period_start: date,
        period_end: date,
    ) -> Decimal:
        """Days worked on a fixed monthly basis (30 days for a full month)."""
        full = Decimal(self.policy.days_per_month)
        start = max(hire_date, period_start)
        end = min(termination_date, period_end) if termination_date else period_end
        if end < start:
            return ZERO
        if start == period_start and end == period_end:
            return full
        return min(Decimal((end - start).days + 1), full)

    def resolve(
        self,
        raw_components: list[dict[str, Any]],
        hire_date: date,
        termination_date: date | None,
        period_start: date,
        period_end: date,
        employee_id: UUID | None = None,
        extra_components: list[SalaryComponent] | None = None,
    ) -> ResolvedCompensation:
        """Flatten and prorate components for the period."""
        components = self.parse_components(raw_components, employee_id)
        days = self.days_worked(hire_date, termination_date, period_start, period_end)
        ratio = days / Decimal(self.policy.days_per_month)
        base_full = next(c for c in components if c.code == BASE_SALARY_CODE).amount

        resolved = [
            SalaryComponent(
                code=c.code,
                name=c.name,
                amount=round_xof(c.amount * ratio),
                source_type=c.source_type,
                taxable=c.taxable,
            )
            for c in components
        ]

        if SENIORITY_ALLOWANCE_CODE not in {c.code for c in components}:
            allowance = self.seniority_allowance(base_full, hire_date, period_end)
            if allowance > 0:
                resolved.append(
                    SalaryComponent(
                        code=SENIORITY_ALLOWANCE_CODE,
                        name="Prime d'ancienneté",
                        amount=round_xof(allowance * ratio),
                        source_type=SourceType.CALCULATED,
                    )
                )

        for extra in extra_components or []:
            if extra.amount < 0:
                raise ValidationError(f"Negative calculated component '{extra.code}'", employee_id)
            resolved.append(extra)

        return ResolvedCompensation(
            components=resolved,
            base_salary=base_full,
            days_worked=days,
        )

    def seniority_allowance(self, base_salary: Decimal, hire_date: date, on: date) -> Decimal:
        rule = self.policy.seniority_allowance
        if rule is None:
            return ZERO
        return base_salary * rule.rate_for(years_of_service(hire_date, on))
