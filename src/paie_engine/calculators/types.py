"""Type definitions for the calculation pipeline.

Everything here is a plain value object. Policy records are frozen so a
snapshot taken at run start cannot drift while the run executes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from paie_engine.exceptions import ConfigurationError, EligibilityWarning

# XOF has no fractional unit
XOF_PRECISION = Decimal("1")
ZERO = Decimal("0")


def round_xof(amount: Decimal) -> Decimal:
    """Round to a whole franc, half up."""
    return amount.quantize(XOF_PRECISION, rounding=ROUND_HALF_UP)


def _dec(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _str(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _is_active(effective_from: date, effective_to: date | None, as_of: date) -> bool:
    return effective_from <= as_of and (effective_to is None or as_of < effective_to)


class CalculationBase(str, Enum):
    """How a rate definition turns a base into an amount."""

    FIXED = "fixed"
    PERCENTAGE = "percentage"
    BRACKET = "bracket"


class BaseKind(str, Enum):
    """Which taxable aggregate a rate applies to."""

    GROSS_SALARY = "gross_salary"
    BRUT_IMPOSABLE = "brut_imposable"
    BASE_SALARY = "base_salary"


class CeilingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SourceType(str, Enum):
    """Origin of a salary component."""

    STANDARD = "standard"
    CUSTOM = "custom"
    CALCULATED = "calculated"


class PeriodType(str, Enum):
    """Overtime bands."""

    WEEKDAY_41_48 = "weekday_41_48"
    WEEKDAY_48_PLUS = "weekday_48_plus"
    SATURDAY = "saturday"
    SUNDAY = "sunday"
    HOLIDAY = "holiday"
    NIGHT = "night"


# ===== Monetary results =====


@dataclass(frozen=True)
class NamedAmount:
    """A named monetary line (a deduction, contribution, or component)."""

    code: str
    name: str
    amount: Decimal
    base: Decimal | None = None
    rate: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "amount": str(self.amount),
            "base": _str(self.base),
            "rate": _str(self.rate),
        }


@dataclass(frozen=True)
class TaxableBases:
    """Aggregates every rate definition reads from.

    Computed once per employee; rate definitions never feed back into it.
    """

    gross_salary: Decimal
    brut_imposable: Decimal
    base_salary: Decimal

    def for_kind(self, kind: BaseKind) -> Decimal:
        if kind == BaseKind.GROSS_SALARY:
            return self.gross_salary
        if kind == BaseKind.BASE_SALARY:
            return self.base_salary
        return self.brut_imposable


@dataclass(frozen=True)
class ContributionProfile:
    """Employee and employer attributes that vary contributions."""

    has_family: bool = False
    fiscal_parts: Decimal = Decimal("1")
    sector_code: str | None = None
    employer_rate_overrides: dict[str, Decimal] = field(default_factory=dict)


@dataclass
class StatutoryDeductions:
    """Employee deductions and employer contributions for one employee."""

    employee_deductions: list[NamedAmount] = field(default_factory=list)
    employer_contributions: list[NamedAmount] = field(default_factory=list)

    @property
    def total_employee(self) -> Decimal:
        return sum((d.amount for d in self.employee_deductions), ZERO)

    @property
    def total_employer(self) -> Decimal:
        return sum((c.amount for c in self.employer_contributions), ZERO)


# ===== Policy records =====


@dataclass(frozen=True)
class TaxBracket:
    """Tax bracket for progressive taxation."""

    min_amount: Decimal
    max_amount: Decimal | None  # None = no upper limit
    rate: Decimal  # As decimal, e.g., 0.16 for 16%

    def to_dict(self) -> dict[str, Any]:
        return {
            "min": str(self.min_amount),
            "max": _str(self.max_amount),
            "rate": str(self.rate),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaxBracket:
        return cls(
            min_amount=Decimal(str(data["min"])),
            max_amount=_dec(data.get("max")),
            rate=Decimal(str(data["rate"])),
        )


@dataclass(frozen=True)
class RateSpec:
    """Immutable view of a RateDefinition row."""

    id: UUID | None
    code: str
    name: str
    country_code: str
    calculation_base: CalculationBase
    effective_from: date
    effective_to: date | None = None
    category: str = "social_security"
    base_kind: BaseKind = BaseKind.BRUT_IMPOSABLE
    employee_rate: Decimal | None = None
    employer_rate: Decimal | None = None
    fixed_amount: Decimal | None = None
    employer_fixed_amount: Decimal | None = None
    family_employee_amount: Decimal | None = None
    family_employer_amount: Decimal | None = None
    sector_rates: tuple[tuple[str, Decimal], ...] = ()
    brackets: tuple[TaxBracket, ...] = ()
    family_deductions: tuple[tuple[Decimal, Decimal], ...] = ()
    ceiling_amount: Decimal | None = None
    ceiling_period: CeilingPeriod | None = None

    def is_active(self, as_of: date) -> bool:
        return _is_active(self.effective_from, self.effective_to, as_of)

    def period_ceiling(self) -> Decimal | None:
        """Ceiling for one monthly pay period. Nothing carries over."""
        if self.ceiling_amount is None:
            return None
        if self.ceiling_period == CeilingPeriod.ANNUAL:
            return self.ceiling_amount / Decimal("12")
        return self.ceiling_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "code": self.code,
            "name": self.name,
            "country_code": self.country_code,
            "calculation_base": self.calculation_base.value,
            "effective_from": self.effective_from.isoformat(),
            "effective_to": self.effective_to.isoformat() if self.effective_to else None,
            "category": self.category,
            "base_kind": self.base_kind.value,
            "employee_rate": _str(self.employee_rate),
            "employer_rate": _str(self.employer_rate),
            "fixed_amount": _str(self.fixed_amount),
            "employer_fixed_amount": _str(self.employer_fixed_amount),
            "family_employee_amount": _str(self.family_employee_amount),
            "family_employer_amount": _str(self.family_employer_amount),
            "sector_rates": {k: str(v) for k, v in self.sector_rates},
            "brackets": [b.to_dict() for b in self.brackets],
            "family_deductions": {str(k): str(v) for k, v in self.family_deductions},
            "ceiling_amount": _str(self.ceiling_amount),
            "ceiling_period": self.ceiling_period.value if self.ceiling_period else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RateSpec:
        return cls(
            id=UUID(data["id"]) if data.get("id") else None,
            code=data["code"],
            name=data["name"],
            country_code=data["country_code"],
            calculation_base=CalculationBase(data["calculation_base"]),
            effective_from=date.fromisoformat(data["effective_from"]),
            effective_to=(
                date.fromisoformat(data["effective_to"]) if data.get("effective_to") else None
            ),
            category=data.get("category", "social_security"),
            base_kind=BaseKind(data.get("base_kind", BaseKind.BRUT_IMPOSABLE.value)),
            employee_rate=_dec(data.get("employee_rate")),
            employer_rate=_dec(data.get("employer_rate")),
            fixed_amount=_dec(data.get("fixed_amount")),
            employer_fixed_amount=_dec(data.get("employer_fixed_amount")),
            family_employee_amount=_dec(data.get("family_employee_amount")),
            family_employer_amount=_dec(data.get("family_employer_amount")),
            sector_rates=tuple(
                sorted((k, Decimal(str(v))) for k, v in (data.get("sector_rates") or {}).items())
            ),
            brackets=tuple(TaxBracket.from_dict(b) for b in data.get("brackets") or []),
            family_deductions=tuple(
                sorted(
                    (Decimal(str(k)), Decimal(str(v)))
                    for k, v in (data.get("family_deductions") or {}).items()
                )
            ),
            ceiling_amount=_dec(data.get("ceiling_amount")),
            ceiling_period=(
                CeilingPeriod(data["ceiling_period"]) if data.get("ceiling_period") else None
            ),
        )


@dataclass(frozen=True)
class OvertimeRateSpec:
    """Immutable view of an OvertimeRate row."""

    period_type: PeriodType
    rate_multiplier: Decimal
    legal_minimum: Decimal
    locked: bool = False
    precedence: int = 100
    additive_with: frozenset[PeriodType] = frozenset()
    id: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "period_type": self.period_type.value,
            "rate_multiplier": str(self.rate_multiplier),
            "legal_minimum": str(self.legal_minimum),
            "locked": self.locked,
            "precedence": self.precedence,
            "additive_with": sorted(p.value for p in self.additive_with),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OvertimeRateSpec:
        return cls(
            id=UUID(data["id"]) if data.get("id") else None,
            period_type=PeriodType(data["period_type"]),
            rate_multiplier=Decimal(str(data["rate_multiplier"])),
            legal_minimum=Decimal(str(data["legal_minimum"])),
            locked=bool(data.get("locked", False)),
            precedence=int(data.get("precedence", 100)),
            additive_with=frozenset(PeriodType(p) for p in data.get("additive_with") or []),
        )


@dataclass(frozen=True)
class SeniorityTier:
    min_years: int
    bonus_days: int


@dataclass(frozen=True)
class LeavePolicySpec:
    """ACP rules for a country."""

    eligible_contract_types: frozenset[str]
    seniority_tiers: tuple[SeniorityTier, ...]
    min_history_runs: int = 3
    days_per_month_factor: Decimal = Decimal("2.2")
    calendar_day_multiplier: Decimal = Decimal("1.25")

    def bonus_days_for(self, years_of_service: int) -> int:
        """Bonus days of the highest tier reached."""
        bonus = 0
        for tier in sorted(self.seniority_tiers, key=lambda t: t.min_years):
            if years_of_service >= tier.min_years:
                bonus = tier.bonus_days
        return bonus

    def to_dict(self) -> dict[str, Any]:
        return {
            "eligible_contract_types": sorted(self.eligible_contract_types),
            "seniority_tiers": [
                {"min_years": t.min_years, "bonus_days": t.bonus_days}
                for t in self.seniority_tiers
            ],
            "min_history_runs": self.min_history_runs,
            "days_per_month_factor": str(self.days_per_month_factor),
            "calendar_day_multiplier": str(self.calendar_day_multiplier),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LeavePolicySpec:
        return cls(
            eligible_contract_types=frozenset(data["eligible_contract_types"]),
            seniority_tiers=tuple(
                SeniorityTier(int(t["min_years"]), int(t["bonus_days"]))
                for t in data["seniority_tiers"]
            ),
            min_history_runs=int(data.get("min_history_runs", 3)),
            days_per_month_factor=Decimal(str(data.get("days_per_month_factor", "2.2"))),
            calendar_day_multiplier=Decimal(str(data.get("calendar_day_multiplier", "1.25"))),
        )


@dataclass(frozen=True)
class SeniorityAllowanceRule:
    """Prime d'ancienneté: a percentage of the base component by tenure."""

    base_rate: Decimal = Decimal("0.02")
    increment: Decimal = Decimal("0.01")
    cap: Decimal = Decimal("0.25")
    minimum_years: int = 2

    def rate_for(self, years_of_service: int) -> Decimal:
        if years_of_service < self.minimum_years:
            return ZERO
        rate = self.base_rate + (years_of_service - self.minimum_years) * self.increment
        return min(rate, self.cap)


@dataclass(frozen=True)
class PayrollPolicySpec:
    """Country-wide payroll conventions."""

    monthly_reference_hours: Decimal = Decimal("173.33")
    days_per_month: int = 30
    seniority_allowance: SeniorityAllowanceRule | None = None

    def to_dict(self) -> dict[str, Any]:
        rule = self.seniority_allowance
        return {
            "monthly_reference_hours": str(self.monthly_reference_hours),
            "days_per_month": self.days_per_month,
            "seniority_allowance": (
                {
                    "base_rate": str(rule.base_rate),
                    "increment": str(rule.increment),
                    "cap": str(rule.cap),
                    "minimum_years": rule.minimum_years,
                }
                if rule
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PayrollPolicySpec:
        raw = data.get("seniority_allowance")
        return cls(
            monthly_reference_hours=Decimal(str(data.get("monthly_reference_hours", "173.33"))),
            days_per_month=int(data.get("days_per_month", 30)),
            seniority_allowance=(
                SeniorityAllowanceRule(
                    base_rate=Decimal(str(raw["base_rate"])),
                    increment=Decimal(str(raw["increment"])),
                    cap=Decimal(str(raw["cap"])),
                    minimum_years=int(raw["minimum_years"]),
                )
                if raw
                else None
            ),
        )


@dataclass(frozen=True)
class PolicySnapshot:
    """Every policy record a run needs, frozen at run start."""

    country_code: str
    as_of: date
    rates: tuple[RateSpec, ...]
    overtime_rates: tuple[OvertimeRateSpec, ...] = ()
    payroll_policy: PayrollPolicySpec = field(default_factory=PayrollPolicySpec)
    leave_policy: LeavePolicySpec | None = None

    def active_rates(self, country_code: str, as_of: date) -> list[RateSpec]:
        """Rate definitions active for the country on ``as_of``.

        Raises:
            ConfigurationError: Unknown country or no active rate set.
        """
        if country_code != self.country_code:
            raise ConfigurationError(
                "No rate set loaded for country", country_code=country_code, as_of=as_of
            )
        active = [r for r in self.rates if r.country_code == country_code and r.is_active(as_of)]
        if not active:
            raise ConfigurationError(
                "No active rate definitions", country_code=country_code, as_of=as_of
            )
        return sorted(active, key=lambda r: r.code)

    def overtime_table(self) -> dict[PeriodType, OvertimeRateSpec]:
        return {r.period_type: r for r in self.overtime_rates}

    @property
    def rate_ids(self) -> list[UUID]:
        return [r.id for r in self.rates if r.id is not None]

    def to_dict(self) -> dict[str, Any]:
        return {
            "country_code": self.country_code,
            "as_of": self.as_of.isoformat(),
            "rates": [r.to_dict() for r in self.rates],
            "overtime_rates": [r.to_dict() for r in self.overtime_rates],
            "payroll_policy": self.payroll_policy.to_dict(),
            "leave_policy": self.leave_policy.to_dict() if self.leave_policy else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PolicySnapshot:
        return cls(
            country_code=data["country_code"],
            as_of=date.fromisoformat(data["as_of"]),
            rates=tuple(RateSpec.from_dict(r) for r in data["rates"]),
            overtime_rates=tuple(OvertimeRateSpec.from_dict(r) for r in data["overtime_rates"]),
            payroll_policy=PayrollPolicySpec.from_dict(data["payroll_policy"]),
            leave_policy=(
                LeavePolicySpec.from_dict(data["leave_policy"])
                if data.get("leave_policy")
                else None
            ),
        )


# ===== Employee inputs =====


@dataclass(frozen=True)
class SalaryComponent:
    """One named monetary component of a compensation record."""

    code: str
    name: str
    amount: Decimal
    source_type: SourceType = SourceType.STANDARD
    taxable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "amount": str(self.amount),
            "source_type": self.source_type.value,
            "taxable": self.taxable,
        }


@dataclass(frozen=True)
class OvertimeSegment:
    """Hours worked that qualify for one or more overtime bands."""

    hours: Decimal
    period_types: frozenset[PeriodType]


@dataclass
class EmployeeCalculationInput:
    """Everything needed to compute one employee's pay for one run."""

    employee_id: UUID
    employee_number: str
    employee_name: str
    hire_date: date
    termination_date: date | None
    period_start: date
    period_end: date
    components: list[dict[str, Any]]
    contract_type: str = "CDI"
    profile: ContributionProfile = field(default_factory=ContributionProfile)
    overtime_segments: list[OvertimeSegment] = field(default_factory=list)
    extra_components: list[SalaryComponent] = field(default_factory=list)
    acp_detail: dict[str, Any] | None = None


@dataclass
class ResolvedCompensation:
    """Flat component list for one period."""

    components: list[SalaryComponent]
    base_salary: Decimal
    days_worked: Decimal

    @property
    def total(self) -> Decimal:
        return sum((c.amount for c in self.components), ZERO)

    @property
    def taxable_total(self) -> Decimal:
        return sum((c.amount for c in self.components if c.taxable), ZERO)


# ===== Overtime results =====


@dataclass(frozen=True)
class OvertimeBandResult:
    """Paid-hours-equivalent for one band."""

    period_type: PeriodType
    worked_hours: Decimal
    bonus_hours: Decimal
    paid_hours: Decimal
    rate_multiplier: Decimal
    amount: Decimal = ZERO

    def to_dict(self) -> dict[str, Any]:
        return {
            "period_type": self.period_type.value,
            "worked_hours": str(self.worked_hours),
            "bonus_hours": str(self.bonus_hours),
            "paid_hours": str(self.paid_hours),
            "rate_multiplier": str(self.rate_multiplier),
            "amount": str(self.amount),
        }


@dataclass
class OvertimeResult:
    bands: list[OvertimeBandResult] = field(default_factory=list)

    @property
    def total_worked_hours(self) -> Decimal:
        return sum((b.worked_hours for b in self.bands), ZERO)

    @property
    def total_bonus_hours(self) -> Decimal:
        return sum((b.bonus_hours for b in self.bands), ZERO)

    @property
    def total_paid_hours(self) -> Decimal:
        return sum((b.paid_hours for b in self.bands), ZERO)

    @property
    def total_amount(self) -> Decimal:
        return sum((b.amount for b in self.bands), ZERO)


# ===== Line item result =====


@dataclass
class LineItemResult:
    """Computed pay for one employee, ready for persistence."""

    employee_id: UUID
    employee_number: str
    employee_name: str
    base_salary: Decimal
    days_worked: Decimal
    components: list[SalaryComponent]
    overtime: list[OvertimeBandResult]
    overtime_pay: Decimal
    gross_salary: Decimal
    brut_imposable: Decimal
    employee_deductions: list[NamedAmount]
    employer_contributions: list[NamedAmount]
    total_deductions: Decimal
    total_employer_contributions: Decimal
    net_salary: Decimal
    total_employer_cost: Decimal
    acp_amount: Decimal = ZERO
    acp_detail: dict[str, Any] | None = None
    calculation_hash: str = ""

    def to_canonical_dict(self) -> dict[str, Any]:
        """Deterministic representation used for hashing and persistence."""
        return {
            "employee_id": str(self.employee_id),
            "base_salary": str(self.base_salary),
            "days_worked": str(self.days_worked),
            "components": [c.to_dict() for c in self.components],
            "overtime": [b.to_dict() for b in self.overtime],
            "overtime_pay": str(self.overtime_pay),
            "gross_salary": str(self.gross_salary),
            "brut_imposable": str(self.brut_imposable),
            "employee_deductions": [d.to_dict() for d in self.employee_deductions],
            "employer_contributions": [c.to_dict() for c in self.employer_contributions],
            "total_deductions": str(self.total_deductions),
            "total_employer_contributions": str(self.total_employer_contributions),
            "net_salary": str(self.net_salary),
            "total_employer_cost": str(self.total_employer_cost),
            "acp_amount": str(self.acp_amount),
        }


# ===== ACP =====


@dataclass
class AcpPreview:
    """Paid-leave indemnity computation result."""

    employee_id: UUID
    acp_amount: Decimal
    daily_average_salary: Decimal
    total_gross_taxable_salary: Decimal
    number_of_months: Decimal
    leave_days_taken_calendar: Decimal
    seniority_bonus_days: int
    reference_period_start: date
    reference_period_end: date
    total_paid_days: Decimal = ZERO
    payroll_run_count: int = 0
    leave_days_accrued: Decimal = ZERO
    is_eligible: bool = True
    warnings: list[EligibilityWarning] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "employee_id": str(self.employee_id),
            "acp_amount": str(self.acp_amount),
            "daily_average_salary": str(self.daily_average_salary),
            "total_gross_taxable_salary": str(self.total_gross_taxable_salary),
            "number_of_months": str(self.number_of_months),
            "leave_days_taken_calendar": str(self.leave_days_taken_calendar),
            "seniority_bonus_days": self.seniority_bonus_days,
            "reference_period_start": self.reference_period_start.isoformat(),
            "reference_period_end": self.reference_period_end.isoformat(),
            "total_paid_days": str(self.total_paid_days),
            "payroll_run_count": self.payroll_run_count,
            "leave_days_accrued": str(self.leave_days_accrued),
            "is_eligible": self.is_eligible,
            "warnings": [w.to_dict() for w in self.warnings],
        }
