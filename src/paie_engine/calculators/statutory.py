"""Statutory deduction calculator (CNPS, CMU, ITS and the like).

Every active rate definition is evaluated against the same
``TaxableBases`` snapshot. No definition's result feeds another's base, so
evaluation order cannot change the outcome.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from paie_engine.calculators.types import (
    ZERO,
    CalculationBase,
    ContributionProfile,
    NamedAmount,
    PolicySnapshot,
    RateSpec,
    StatutoryDeductions,
    TaxableBases,
    round_xof,
)


class StatutoryDeductionCalculator:
    """Applies a policy snapshot's rate definitions to one employee."""

    def __init__(self, snapshot: PolicySnapshot):
        self.snapshot = snapshot

    def calculate(
        self,
        bases: TaxableBases,
        profile: ContributionProfile,
        country_code: str,
        as_of: date,
    ) -> StatutoryDeductions:
        """Compute employee deductions and employer contributions.

        Raises:
            ConfigurationError: Unknown country or no active rate set.
        """
        result = StatutoryDeductions()

        for rate in self.snapshot.active_rates(country_code, as_of):
            if rate.calculation_base == CalculationBase.FIXED:
                employee_amount, employer_amount = self._fixed_amounts(rate, profile)
                base = None
            else:
                base = self.capped_base(bases.for_kind(rate.base_kind), rate)
                if rate.calculation_base == CalculationBase.BRACKET:
                    employee_amount = self._bracket_tax(base, rate, profile)
                    employer_amount = None
                else:
                    employee_amount = (
                        base * rate.employee_rate if rate.employee_rate is not None else None
                    )
                    employer_rate = self.employer_rate(rate, profile)
                    employer_amount = base * employer_rate if employer_rate is not None else None

            if employee_amount is not None:
                result.employee_deductions.append(
                    NamedAmount(
                        code=rate.code,
                        name=rate.name,
                        amount=round_xof(employee_amount),
                        base=base,
                        rate=rate.employee_rate,
                    )
                )
            if employer_amount is not None:
                result.employer_contributions.append(
                    NamedAmount(
                        code=rate.code,
                        name=rate.name,
                        amount=round_xof(employer_amount),
                        base=base,
                        rate=self.employer_rate(rate, profile),
                    )
                )

        return result

    @staticmethod
    def capped_base(base: Decimal, rate: RateSpec) -> Decimal:
        """Clamp a base at the rate's per-period ceiling."""
        if base <= 0:
            return ZERO
        ceiling = rate.period_ceiling()
        if ceiling is None:
            return base
        return min(base, ceiling)

    @staticmethod
    def employer_rate(rate: RateSpec, profile: ContributionProfile) -> Decimal | None:
        """Employer rate after tenant and sector variation.

        A tenant-specific override wins over the sector table, which wins
        over the default employer rate.
        """
        if rate.calculation_base != CalculationBase.PERCENTAGE:
            return None
        if rate.code in profile.employer_rate_overrides:
            return profile.employer_rate_overrides[rate.code]
        if profile.sector_code:
            for sector, sector_rate in rate.sector_rates:
                if sector == profile.sector_code:
                    return sector_rate
        return rate.employer_rate

    @staticmethod
    def _fixed_amounts(
        rate: RateSpec, profile: ContributionProfile
    ) -> tuple[Decimal | None, Decimal | None]:
        if profile.has_family and (
            rate.family_employee_amount is not None or rate.family_employer_amount is not None
        ):
            return rate.family_employee_amount, rate.family_employer_amount
        return rate.fixed_amount, rate.employer_fixed_amount

    def _bracket_tax(
        self, base: Decimal, rate: RateSpec, profile: ContributionProfile
    ) -> Decimal:
        """Progressive tax over brackets, less the family reduction."""
        tax = self.progressive_tax(base, rate)
        reduction = self.family_reduction(rate, profile.fiscal_parts)
        return max(tax - reduction, ZERO)

    @staticmethod
    def progressive_tax(base: Decimal, rate: RateSpec) -> Decimal:
        """Calculate tax using progressive brackets."""
        if base <= 0:
            return ZERO

        total = ZERO
        for bracket in sorted(rate.brackets, key=lambda b: b.min_amount):
            if base <= bracket.min_amount:
                break
            upper = base if bracket.max_amount is None else min(base, bracket.max_amount)
            total += (upper - bracket.min_amount) * bracket.rate
        return total

    @staticmethod
    def family_reduction(rate: RateSpec, fiscal_parts: Decimal) -> Decimal:
        """Reduction for the highest fiscal-parts step not above the employee's."""
        reduction = ZERO
        for parts, amount in sorted(rate.family_deductions):
            if fiscal_parts >= parts:
                reduction = amount
        return reduction
