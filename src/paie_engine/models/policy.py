"""Versioned policy tables: contribution rates, overtime rates, leave rules.

All tables are keyed by (country_code, effective_from). A row is active on
``as_of`` when ``effective_from <= as_of`` and ``effective_to`` is null or
strictly after ``as_of``.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from paie_engine.models.base import Base, JSONType, TimestampMixin


class RateDefinition(Base, TimestampMixin):
    """Statutory contribution or tax definition (CNPS, CMU, ITS, ...)."""

    __tablename__ = "rate_definition"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False, default="social_security")
    calculation_base: Mapped[str] = mapped_column(String, nullable=False)
    base_kind: Mapped[str] = mapped_column(String, nullable=False, default="brut_imposable")

    employee_rate: Mapped[Decimal | None] = mapped_column(Numeric(8, 6))
    employer_rate: Mapped[Decimal | None] = mapped_column(Numeric(8, 6))
    fixed_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    employer_fixed_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    # {"employee": "1000", "employer": "5000"} used instead of the fixed
    # amounts when the employee has a family
    family_amounts: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    # {sector_code: employer_rate}
    sector_rates: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    # [{"min": "0", "max": "75000", "rate": "0"}, ...]
    brackets: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType)
    # {"1.0": "0", "1.5": "5500", ...} subtracted from bracket tax
    family_deductions: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    ceiling_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    ceiling_period: Mapped[str | None] = mapped_column(String)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)
    # Set once a payroll run snapshots this definition; frozen afterwards
    referenced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "country_code", "code", "effective_from", name="rate_definition_version_unique"
        ),
        CheckConstraint(
            "calculation_base IN ('fixed', 'percentage', 'bracket')",
            name="rate_definition_calculation_base_check",
        ),
        CheckConstraint(
            "base_kind IN ('gross_salary', 'brut_imposable', 'base_salary')",
            name="rate_definition_base_kind_check",
        ),
        CheckConstraint(
            "ceiling_period IS NULL OR ceiling_period IN ('monthly', 'annual')",
            name="rate_definition_ceiling_period_check",
        ),
    )


class OvertimeRate(Base, TimestampMixin):
    """Overtime multiplier for one period type.

    ``rate_multiplier`` is a percentage (175 means hours are paid at 175%).
    ``precedence`` orders bands when hours qualify for several: the lowest
    number wins. ``additive_with`` lists bands this one stacks with.
    """

    __tablename__ = "overtime_rate"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    period_type: Mapped[str] = mapped_column(String, nullable=False)
    rate_multiplier: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    legal_minimum: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    precedence: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    additive_with: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    legal_reference: Mapped[str | None] = mapped_column(Text)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)

    __table_args__ = (
        UniqueConstraint(
            "country_code", "period_type", "effective_from", name="overtime_rate_version_unique"
        ),
        CheckConstraint(
            "period_type IN ('weekday_41_48', 'weekday_48_plus', 'saturday', "
            "'sunday', 'holiday', 'night')",
            name="overtime_rate_period_type_check",
        ),
        CheckConstraint("rate_multiplier >= legal_minimum", name="overtime_rate_minimum_check"),
    )


class LeaveAccrualPolicy(Base, TimestampMixin):
    """Paid-leave accrual and ACP rules for a country."""

    __tablename__ = "leave_accrual_policy"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    eligible_contract_types: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    min_history_runs: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    days_per_month_factor: Mapped[Decimal] = mapped_column(
        Numeric(4, 2), nullable=False, default=Decimal("2.2")
    )
    calendar_day_multiplier: Mapped[Decimal] = mapped_column(
        Numeric(4, 2), nullable=False, default=Decimal("1.25")
    )
    # [{"min_years": 5, "bonus_days": 1}, ...]
    seniority_tiers: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)

    __table_args__ = (
        UniqueConstraint(
            "country_code", "effective_from", name="leave_accrual_policy_version_unique"
        ),
    )


class PayrollPolicy(Base, TimestampMixin):
    """Country-level payroll conventions (working hours, seniority allowance)."""

    __tablename__ = "payroll_policy"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    monthly_reference_hours: Mapped[Decimal] = mapped_column(
        Numeric(6, 2), nullable=False, default=Decimal("173.33")
    )
    days_per_month: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    # {"base_rate": "0.02", "increment": "0.01", "cap": "0.25", "minimum_years": 2}
    seniority_allowance: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)

    __table_args__ = (
        UniqueConstraint("country_code", "effective_from", name="payroll_policy_version_unique"),
    )
