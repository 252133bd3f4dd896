"""Payroll run, line item, progress and ACP payment models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paie_engine.models.base import Base, JSONType, TimestampMixin, UpdatedAtMixin

if TYPE_CHECKING:
    from paie_engine.models.employee import Employee


# ===== Payroll Runs =====


class PayrollRun(Base, UpdatedAtMixin):
    """One payroll run for a tenant and period."""

    __tablename__ = "payroll_run"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        ForeignKey("tenant.id", ondelete="CASCADE"), nullable=False, index=True
    )
    run_number: Mapped[str] = mapped_column(String, nullable=False)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    completion_status: Mapped[str | None] = mapped_column(String)
    employee_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pause_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text)

    # Rate set captured when calculation starts; reused on resume
    policy_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    total_gross: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False, default=0)
    total_net: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False, default=0)
    total_employee_deductions: Mapped[Decimal] = mapped_column(
        Numeric(16, 2), nullable=False, default=0
    )
    total_employer_contributions: Mapped[Decimal] = mapped_column(
        Numeric(16, 2), nullable=False, default=0
    )
    total_employer_cost: Mapped[Decimal] = mapped_column(
        Numeric(16, 2), nullable=False, default=0
    )

    created_by: Mapped[str | None] = mapped_column(String)
    calculated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[str | None] = mapped_column(String)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "period_start", "period_end", name="payroll_run_tenant_period_unique"
        ),
        CheckConstraint("period_end >= period_start", name="payroll_run_period_check"),
        CheckConstraint(
            "status IN ('draft', 'calculating', 'paused', 'calculated', "
            "'approved', 'paid', 'failed')",
            name="payroll_run_status_check",
        ),
    )

    line_items: Mapped[list[PayrollLineItem]] = relationship(
        back_populates="payroll_run", cascade="all, delete-orphan"
    )
    progress: Mapped[RunProgress | None] = relationship(
        back_populates="payroll_run", cascade="all, delete-orphan", uselist=False
    )


class PayrollLineItem(Base, UpdatedAtMixin):
    """One employee's computed pay for one run.

    Breakdown columns hold lists of ``{"code", "name", "amount", ...}``
    objects with amounts serialized as strings.
    """

    __tablename__ = "payroll_line_item"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.id", ondelete="CASCADE"), nullable=False, index=True
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    employee_number: Mapped[str] = mapped_column(String, nullable=False)
    employee_name: Mapped[str] = mapped_column(String, nullable=False)

    base_salary: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    days_worked: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    components: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    overtime: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    overtime_pay: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    gross_salary: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    brut_imposable: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    employee_deductions: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    employer_contributions: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False
    )
    total_deductions: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_employer_contributions: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False
    )
    net_salary: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_employer_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    acp_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    acp_detail: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    calculation_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String, nullable=False, default="calculated")

    __table_args__ = (
        UniqueConstraint(
            "payroll_run_id", "employee_id", name="payroll_line_item_run_employee_unique"
        ),
        CheckConstraint(
            "status IN ('calculated', 'approved', 'paid')",
            name="payroll_line_item_status_check",
        ),
    )

    payroll_run: Mapped[PayrollRun] = relationship(back_populates="line_items")
    employee: Mapped[Employee] = relationship()


# ===== Progress =====


class RunProgress(Base):
    """Checkpointed progress of the current calculation attempt."""

    __tablename__ = "run_progress"

    payroll_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.id", ondelete="CASCADE"), primary_key=True
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    total_employees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Number of chunks fully processed and checkpointed
    current_chunk: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'paused')",
            name="run_progress_status_check",
        ),
        CheckConstraint("processed_count <= total_employees", name="run_progress_count_check"),
        CheckConstraint(
            "success_count + error_count = processed_count",
            name="run_progress_balance_check",
        ),
    )

    payroll_run: Mapped[PayrollRun] = relationship(back_populates="progress")


class RunError(Base, TimestampMixin):
    """Per-employee error recorded during a calculation attempt.

    Kept verbatim across attempts; progress can be rebuilt but this log
    cannot.
    """

    __tablename__ = "run_error"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.id", ondelete="CASCADE"), nullable=False, index=True
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_id: Mapped[UUID | None] = mapped_column()
    employee_number: Mapped[str | None] = mapped_column(String)
    error_code: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)


# ===== ACP =====


class AcpPaymentRecord(Base, TimestampMixin):
    """ACP indemnity paid through a payroll run."""

    __tablename__ = "acp_payment_record"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        ForeignKey("tenant.id", ondelete="CASCADE"), nullable=False
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payroll_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.id", ondelete="CASCADE"), nullable=False
    )
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    reference_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    reference_period_end: Mapped[date] = mapped_column(Date, nullable=False)
    acp_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    daily_average_salary: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_gross_taxable_salary: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False)
    number_of_months: Mapped[Decimal] = mapped_column(Numeric(6, 1), nullable=False)
    leave_days_taken_calendar: Mapped[Decimal] = mapped_column(Numeric(6, 1), nullable=False)
    seniority_bonus_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warnings: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("employee_id", "payroll_run_id", name="acp_payment_employee_run_unique"),
    )
