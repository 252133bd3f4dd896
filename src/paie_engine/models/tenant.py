"""Tenant (employer) model."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paie_engine.models.base import Base, JSONType, TimestampMixin

if TYPE_CHECKING:
    from paie_engine.models.employee import Employee


class Tenant(Base, TimestampMixin):
    """Employer account. Every payroll record is scoped to one tenant."""

    __tablename__ = "tenant"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    sector_code: Mapped[str | None] = mapped_column(String)
    # Employer rates assigned to this tenant by the social security fund,
    # keyed by rate code, e.g. {"CNPS_AT": "0.03"}
    employer_rate_overrides: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'inactive', 'suspended')",
            name="tenant_status_check",
        ),
    )

    employees: Mapped[list[Employee]] = relationship(back_populates="tenant")
