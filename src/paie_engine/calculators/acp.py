"""Paid-leave indemnity (ACP) calculator.

The indemnity is the average daily taxable salary earned over the reference
period, multiplied by the leave days taken plus seniority bonus days:

    daily = sum(brut imposable of paid runs) / sum(days paid)
    acp   = daily * (leave days taken + seniority bonus days)

The reference period runs from the last ACP payment (or hire date) up to
the day before the payment date. Eligibility and data-quality issues are
reported as warnings; they never block the computation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from paie_engine.calculators.components import years_of_service
from paie_engine.calculators.types import ZERO, AcpPreview, LeavePolicySpec, round_xof
from paie_engine.exceptions import EligibilityWarning

AVERAGE_DAYS_PER_MONTH = Decimal("30.4167")
ACCRUAL_TOLERANCE = Decimal("1.1")


@dataclass(frozen=True)
class SalaryHistoryEntry:
    """Taxable salary paid by one payroll run."""

    period_start: date
    period_end: date
    brut_imposable: Decimal
    days_paid: Decimal


@dataclass(frozen=True)
class LeaveEntry:
    """An approved leave deductible for ACP."""

    start_date: date
    end_date: date
    total_days: Decimal


def reference_period(
    hire_date: date, last_paid_at: date | None, payment_date: date
) -> tuple[date, date]:
    """Start and inclusive end of the ACP reference period."""
    start = last_paid_at or hire_date
    end = payment_date - timedelta(days=1)
    if end < start:
        end = start
    return start, end


class AcpCalculator:
    """Computes ACP previews from already loaded history."""

    def __init__(self, policy: LeavePolicySpec, days_per_month: int = 30):
        self.policy = policy
        self.days_per_month = Decimal(days_per_month)

    def calculate(
        self,
        employee_id: UUID,
        contract_type: str,
        hire_date: date,
        payment_date: date,
        history: list[SalaryHistoryEntry],
        leaves: list[LeaveEntry],
        last_paid_at: date | None = None,
        fallback_monthly_salary: Decimal = ZERO,
    ) -> AcpPreview:
        start, end = reference_period(hire_date, last_paid_at, payment_date)
        months = (Decimal((end - start).days) / AVERAGE_DAYS_PER_MONTH).quantize(
            Decimal("0.1"), rounding=ROUND_HALF_UP
        )

        if contract_type not in self.policy.eligible_contract_types:
            return AcpPreview(
                employee_id=employee_id,
                acp_amount=ZERO,
                daily_average_salary=ZERO,
                total_gross_taxable_salary=ZERO,
                number_of_months=months,
                leave_days_taken_calendar=ZERO,
                seniority_bonus_days=0,
                reference_period_start=start,
                reference_period_end=end,
                is_eligible=False,
                warnings=[
                    EligibilityWarning(
                        "not_eligible",
                        f"Contract type {contract_type} is not eligible for ACP",
                    )
                ],
            )

        warnings: list[EligibilityWarning] = []
        runs = [h for h in history if h.period_start >= start and h.period_end <= end]
        total_taxable = sum((h.brut_imposable for h in runs), ZERO)
        paid_days = sum((h.days_paid for h in runs), ZERO)

        if len(runs) < self.policy.min_history_runs:
            warnings.append(
                EligibilityWarning(
                    "insufficient_salary_history",
                    f"{len(runs)} paid payroll run(s) in reference period, "
                    f"{self.policy.min_history_runs} expected",
                )
            )

        if not runs:
            warnings.append(
                EligibilityWarning(
                    "no_salary_history",
                    "No paid payroll in reference period, current base salary used",
                )
            )
            daily = fallback_monthly_salary / self.days_per_month
        elif paid_days <= 0:
            warnings.append(
                EligibilityWarning("zero_paid_days", "No paid days in reference period")
            )
            daily = fallback_monthly_salary / self.days_per_month
        else:
            daily = total_taxable / paid_days

        leave_days = sum(
            (lv.total_days for lv in leaves if lv.start_date >= start and lv.end_date <= end),
            ZERO,
        )
        bonus_days = self.policy.bonus_days_for(years_of_service(hire_date, payment_date))

        accrued = (
            months * self.policy.days_per_month_factor + bonus_days
        ) * self.policy.calendar_day_multiplier
        if leave_days > accrued * ACCRUAL_TOLERANCE:
            warnings.append(
                EligibilityWarning(
                    "leave_exceeds_accrual",
                    f"{leave_days} days taken but only {accrued.quantize(Decimal('0.1'))} accrued",
                )
            )

        return AcpPreview(
            employee_id=employee_id,
            acp_amount=round_xof(daily * (leave_days + bonus_days)),
            daily_average_salary=daily.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
            total_gross_taxable_salary=total_taxable,
            number_of_months=months,
            leave_days_taken_calendar=leave_days,
            seniority_bonus_days=bonus_days,
            reference_period_start=start,
            reference_period_end=end,
            total_paid_days=paid_days,
            payroll_run_count=len(runs),
            leave_days_accrued=accrued.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
            warnings=warnings,
        )
