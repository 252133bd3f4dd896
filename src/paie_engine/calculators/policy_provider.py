"""Rate/policy provider: versioned policy tables keyed by country and date."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paie_engine.calculators.types import (
    BaseKind,
    CalculationBase,
    CeilingPeriod,
    LeavePolicySpec,
    OvertimeRateSpec,
    PayrollPolicySpec,
    PeriodType,
    PolicySnapshot,
    RateSpec,
    SeniorityAllowanceRule,
    SeniorityTier,
    TaxBracket,
)
from paie_engine.exceptions import ConfigurationError, NotFoundError, PolicyViolationError
from paie_engine.models import LeaveAccrualPolicy, OvertimeRate, PayrollPolicy, RateDefinition

logger = logging.getLogger(__name__)


def _effective_on(model: Any, as_of: date) -> Any:
    return (model.effective_from <= as_of) & or_(
        model.effective_to.is_(None), model.effective_to > as_of
    )


def _decimal_pairs(data: dict[str, Any] | None) -> tuple[tuple[Any, Decimal], ...]:
    return tuple(sorted((k, Decimal(str(v))) for k, v in (data or {}).items()))


def rate_spec_from_row(row: RateDefinition) -> RateSpec:
    family = row.family_amounts or {}
    return RateSpec(
        id=row.id,
        code=row.code,
        name=row.name,
        country_code=row.country_code,
        calculation_base=CalculationBase(row.calculation_base),
        effective_from=row.effective_from,
        effective_to=row.effective_to,
        category=row.category,
        base_kind=BaseKind(row.base_kind),
        employee_rate=row.employee_rate,
        employer_rate=row.employer_rate,
        fixed_amount=row.fixed_amount,
        employer_fixed_amount=row.employer_fixed_amount,
        family_employee_amount=(
            Decimal(str(family["employee"])) if family.get("employee") is not None else None
        ),
        family_employer_amount=(
            Decimal(str(family["employer"])) if family.get("employer") is not None else None
        ),
        sector_rates=_decimal_pairs(row.sector_rates),
        brackets=tuple(TaxBracket.from_dict(b) for b in row.brackets or []),
        family_deductions=tuple(
            sorted(
                (Decimal(str(k)), Decimal(str(v)))
                for k, v in (row.family_deductions or {}).items()
            )
        ),
        ceiling_amount=row.ceiling_amount,
        ceiling_period=CeilingPeriod(row.ceiling_period) if row.ceiling_period else None,
    )


def overtime_spec_from_row(row: OvertimeRate) -> OvertimeRateSpec:
    return OvertimeRateSpec(
        id=row.id,
        period_type=PeriodType(row.period_type),
        rate_multiplier=Decimal(str(row.rate_multiplier)),
        legal_minimum=Decimal(str(row.legal_minimum)),
        locked=row.locked,
        precedence=row.precedence,
        additive_with=frozenset(PeriodType(p) for p in row.additive_with or []),
    )


def leave_policy_from_row(row: LeaveAccrualPolicy) -> LeavePolicySpec:
    return LeavePolicySpec(
        eligible_contract_types=frozenset(row.eligible_contract_types),
        seniority_tiers=tuple(
            SeniorityTier(int(t["min_years"]), int(t["bonus_days"])) for t in row.seniority_tiers
        ),
        min_history_runs=row.min_history_runs,
        days_per_month_factor=Decimal(str(row.days_per_month_factor)),
        calendar_day_multiplier=Decimal(str(row.calendar_day_multiplier)),
    )


def payroll_policy_from_row(row: PayrollPolicy) -> PayrollPolicySpec:
    raw = row.seniority_allowance
    return PayrollPolicySpec(
        monthly_reference_hours=Decimal(str(row.monthly_reference_hours)),
        days_per_month=row.days_per_month,
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


class PolicyProvider:
    """Loads policy records effective for a country on a date.

    Snapshots are cached per (country, as_of) for the lifetime of the
    provider, matching the lifetime of a session.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._cache: dict[tuple[str, date], PolicySnapshot] = {}

    async def get_snapshot(self, country_code: str, as_of: date) -> PolicySnapshot:
        """Build the immutable policy snapshot for a country and date.

        Raises:
            ConfigurationError: No active rate definitions or payroll policy.
        """
        cache_key = (country_code, as_of)
        if cache_key in self._cache:
            return self._cache[cache_key]

        rates = await self.get_rate_definitions(country_code, as_of)
        if not rates:
            raise ConfigurationError(
                "No active rate definitions", country_code=country_code, as_of=as_of
            )

        payroll_row = await self._latest(PayrollPolicy, country_code, as_of)
        if payroll_row is None:
            raise ConfigurationError(
                "No active payroll policy", country_code=country_code, as_of=as_of
            )
        leave_row = await self._latest(LeaveAccrualPolicy, country_code, as_of)

        snapshot = PolicySnapshot(
            country_code=country_code,
            as_of=as_of,
            rates=tuple(rate_spec_from_row(r) for r in rates),
            overtime_rates=tuple(
                overtime_spec_from_row(r)
                for r in await self.list_overtime_rates(country_code, as_of)
            ),
            payroll_policy=payroll_policy_from_row(payroll_row),
            leave_policy=leave_policy_from_row(leave_row) if leave_row else None,
        )
        self._cache[cache_key] = snapshot
        return snapshot

    async def get_leave_policy(self, country_code: str, as_of: date) -> LeavePolicySpec:
        row = await self._latest(LeaveAccrualPolicy, country_code, as_of)
        if row is None:
            raise ConfigurationError(
                "No active leave accrual policy", country_code=country_code, as_of=as_of
            )
        return leave_policy_from_row(row)

    async def get_payroll_policy(self, country_code: str, as_of: date) -> PayrollPolicySpec:
        row = await self._latest(PayrollPolicy, country_code, as_of)
        if row is None:
            raise ConfigurationError(
                "No active payroll policy", country_code=country_code, as_of=as_of
            )
        return payroll_policy_from_row(row)

    async def get_rate_definitions(self, country_code: str, as_of: date) -> list[RateDefinition]:
        result = await self.session.execute(
            select(RateDefinition)
            .where(
                RateDefinition.country_code == country_code,
                _effective_on(RateDefinition, as_of),
            )
            .order_by(RateDefinition.code)
        )
        return list(result.scalars().all())

    async def list_overtime_rates(self, country_code: str, as_of: date) -> list[OvertimeRate]:
        result = await self.session.execute(
            select(OvertimeRate)
            .where(
                OvertimeRate.country_code == country_code,
                _effective_on(OvertimeRate, as_of),
            )
            .order_by(OvertimeRate.precedence, OvertimeRate.period_type)
        )
        return list(result.scalars().all())

    async def update_overtime_rate(self, rate_id: UUID, rate_multiplier: Decimal) -> OvertimeRate:
        """Change a tenant-editable overtime multiplier.

        Raises:
            PolicyViolationError: The rate is locked or the new multiplier
                is below the legal minimum. Nothing is changed.
        """
        rate = await self.session.get(OvertimeRate, rate_id)
        if rate is None:
            raise NotFoundError("OvertimeRate", rate_id)
        if rate.locked:
            raise PolicyViolationError(
                "OvertimeRate", rate_id, "rate is locked by collective agreement"
            )
        if rate_multiplier < rate.legal_minimum:
            raise PolicyViolationError(
                "OvertimeRate",
                rate_id,
                f"multiplier {rate_multiplier} is below legal minimum {rate.legal_minimum}",
            )
        rate.rate_multiplier = rate_multiplier
        await self.session.flush()
        self._cache.clear()
        return rate

    async def publish_rate_definition(self, definition: RateDefinition) -> RateDefinition:
        """Add a new version, closing the open version of the same code.

        Referenced versions are never edited; only their open-ended
        ``effective_to`` is set.
        """
        result = await self.session.execute(
            select(RateDefinition).where(
                RateDefinition.country_code == definition.country_code,
                RateDefinition.code == definition.code,
                RateDefinition.effective_to.is_(None),
                RateDefinition.effective_from < definition.effective_from,
            )
        )
        for previous in result.scalars().all():
            previous.effective_to = definition.effective_from
        self.session.add(definition)
        await self.session.flush()
        self._cache.clear()
        logger.info(
            "rate_definition_published",
            extra={
                "country_code": definition.country_code,
                "code": definition.code,
                "effective_from": definition.effective_from.isoformat(),
            },
        )
        return definition

    async def mark_referenced(self, snapshot: PolicySnapshot) -> None:
        """Freeze every rate definition a run has snapshotted."""
        ids = snapshot.rate_ids
        if not ids:
            return
        await self.session.execute(
            update(RateDefinition)
            .where(RateDefinition.id.in_(ids), RateDefinition.referenced_at.is_(None))
            .values(referenced_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    async def _latest(self, model: Any, country_code: str, as_of: date) -> Any:
        result = await self.session.execute(
            select(model)
            .where(model.country_code == country_code, _effective_on(model, as_of))
            .order_by(model.effective_from.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
