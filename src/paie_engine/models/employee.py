"""Employee, compensation and attendance models."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
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
    from paie_engine.models.tenant import Tenant


# ===== Employees =====


class Employee(Base, UpdatedAtMixin):
    """Employee record with the attributes payroll needs."""

    __tablename__ = "employee"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        ForeignKey("tenant.id", ondelete="CASCADE"), nullable=False, index=True
    )
    employee_number: Mapped[str] = mapped_column(String, nullable=False)
    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False)
    hire_date: Mapped[date] = mapped_column(Date, nullable=False)
    termination_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    contract_type: Mapped[str] = mapped_column(String, nullable=False, default="CDI")

    # Family situation drives CMU tiers and ITS fiscal parts
    marital_status: Mapped[str] = mapped_column(String, nullable=False, default="single")
    dependent_children: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fiscal_parts: Mapped[Decimal] = mapped_column(
        Numeric(3, 1), nullable=False, default=Decimal("1.0")
    )
    sector_code: Mapped[str | None] = mapped_column(String)

    # ACP payment scheduling
    acp_payment_date: Mapped[date | None] = mapped_column(Date)
    acp_payment_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acp_notes: Mapped[str | None] = mapped_column(Text)
    acp_last_paid_at: Mapped[date | None] = mapped_column(Date)

    __table_args__ = (
        UniqueConstraint("tenant_id", "employee_number", name="employee_tenant_number_unique"),
        CheckConstraint(
            "status IN ('active', 'terminated', 'suspended')",
            name="employee_status_check",
        ),
        CheckConstraint(
            "contract_type IN ('CDI', 'CDD', 'CDDTI', 'INTERIM', 'STAGE')",
            name="employee_contract_type_check",
        ),
    )

    tenant: Mapped[Tenant] = relationship(back_populates="employees")
    salaries: Mapped[list[EmployeeSalary]] = relationship(back_populates="employee")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def has_family(self) -> bool:
        """Married or with dependents, for family-tiered contributions."""
        return self.marital_status == "married" or self.dependent_children > 0


class EmployeeSalary(Base, TimestampMixin):
    """Effective-dated compensation record.

    ``components`` holds the salary components as a list of
    ``{"code", "name", "amount", "source_type", "taxable"}`` objects.
    Amounts are stored as strings to keep Decimal precision in JSON.
    """

    __tablename__ = "employee_salary"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.id", ondelete="CASCADE"), nullable=False, index=True
    )
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)
    components: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="XOF")

    employee: Mapped[Employee] = relationship(back_populates="salaries")


# ===== Attendance =====


class OvertimeEntry(Base, TimestampMixin):
    """Overtime hours worked on one day.

    ``period_types`` lists every band the hours qualify for, e.g.
    ``["night", "sunday"]`` for Sunday night work.
    """

    __tablename__ = "overtime_entry"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.id", ondelete="CASCADE"), nullable=False, index=True
    )
    work_date: Mapped[date] = mapped_column(Date, nullable=False)
    hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    period_types: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String, nullable=False, default="approved")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="overtime_entry_status_check",
        ),
    )


class TimeOffRequest(Base, TimestampMixin):
    """Leave request. Owned by the time-off workflow, read by ACP."""

    __tablename__ = "time_off_request"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        ForeignKey("tenant.id", ondelete="CASCADE"), nullable=False
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.id", ondelete="CASCADE"), nullable=False, index=True
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_days: Mapped[Decimal] = mapped_column(Numeric(5, 1), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    is_deductible_for_acp: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="time_off_dates_check"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'cancelled')",
            name="time_off_status_check",
        ),
    )
