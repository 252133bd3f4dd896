"""Payroll run service: run lifecycle outside of calculation.

Calculation itself belongs to ``PayrollRunOrchestrator``; this service
creates runs, moves them through approval and payment, and exposes the
computed line items.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paie_engine.calculators.policy_provider import PolicyProvider
from paie_engine.events.types import (
    DomainEvent,
    EventMetadata,
    PayrollRunApproved,
    PayrollRunPaid,
)
from paie_engine.exceptions import (
    ConcurrencyConflictError,
    ImmutabilityViolationError,
    NotFoundError,
    ValidationError,
)
from paie_engine.models import Employee, PayrollLineItem, PayrollRun, Tenant
from paie_engine.services.acp_service import AcpService
from paie_engine.services.state_machine import (
    InvalidTransitionError,
    PayrollRunStateMachine,
    PayrollRunStatus,
)

if TYPE_CHECKING:
    from paie_engine.events.emitter import AsyncEventEmitter

logger = logging.getLogger(__name__)


class PayrollRunService:
    """Service for managing the payroll run lifecycle.

    Operations:
    - create_run: open a draft run for a tenant and period
    - approve_run: calculated → approved
    - mark_paid: approved → paid, recording ACP payments
    - list_line_items: payslip data of a calculated run
    """

    def __init__(self, session: AsyncSession, emitter: AsyncEventEmitter | None = None):
        self.session = session
        self.emitter = emitter

    async def get_run(self, tenant_id: UUID, run_id: UUID) -> PayrollRun:
        run = await self.session.get(PayrollRun, run_id)
        if run is None or run.tenant_id != tenant_id:
            raise NotFoundError("PayrollRun", run_id)
        return run

    async def list_runs(self, tenant_id: UUID, status: str | None = None) -> list[PayrollRun]:
        query = select(PayrollRun).where(PayrollRun.tenant_id == tenant_id)
        if status:
            query = query.where(PayrollRun.status == status)
        result = await self.session.execute(query.order_by(PayrollRun.period_start.desc()))
        return list(result.scalars().all())

    async def find_overlapping(
        self,
        tenant_id: UUID,
        period_start: date,
        period_end: date,
        exclude_run_id: UUID | None = None,
        statuses: set[str] | None = None,
    ) -> PayrollRun | None:
        """First run of the tenant whose period intersects the given one."""
        query = select(PayrollRun).where(
            PayrollRun.tenant_id == tenant_id,
            PayrollRun.period_start <= period_end,
            PayrollRun.period_end >= period_start,
        )
        if exclude_run_id is not None:
            query = query.where(PayrollRun.id != exclude_run_id)
        if statuses is not None:
            query = query.where(PayrollRun.status.in_([getattr(s, "value", s) for s in statuses]))
        result = await self.session.execute(query.order_by(PayrollRun.period_start).limit(1))
        return result.scalar_one_or_none()

    async def create_run(
        self,
        tenant_id: UUID,
        period_start: date,
        period_end: date,
        payment_date: date,
        country_code: str | None = None,
        actor_id: str | None = None,
    ) -> PayrollRun:
        """Create a draft run.

        Raises:
            ValidationError: Inverted period.
            ConcurrencyConflictError: Another run already covers the period.
            ConfigurationError: No rate set for the country on period end.
        """
        if period_end < period_start:
            raise ValidationError("Period end precedes period start")

        tenant = await self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant", tenant_id)
        country = country_code or tenant.country_code

        existing = await self.find_overlapping(tenant_id, period_start, period_end)
        if existing is not None:
            raise ConcurrencyConflictError(
                f"Period overlaps payroll run {existing.run_number}", existing.id
            )

        # Fails fast rather than at calculation time
        await PolicyProvider(self.session).get_snapshot(country, period_end)

        run = PayrollRun(
            tenant_id=tenant_id,
            run_number=f"PAY-{period_start:%Y-%m}",
            country_code=country,
            period_start=period_start,
            period_end=period_end,
            payment_date=payment_date,
            status=PayrollRunStatus.DRAFT.value,
            created_by=actor_id,
        )
        self.session.add(run)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConcurrencyConflictError(
                "A payroll run for this period was created concurrently"
            ) from exc

        logger.info(
            "payroll_run_created",
            extra={
                "tenant_id": str(tenant_id),
                "payroll_run_id": str(run.id),
                "run_number": run.run_number,
            },
        )
        return run

    async def approve_run(
        self, tenant_id: UUID, run_id: UUID, actor_id: str | None = None
    ) -> PayrollRun:
        run = await self.get_run(tenant_id, run_id)
        errors = PayrollRunStateMachine.validate_run_for_transition(
            run, PayrollRunStatus.APPROVED
        )
        if errors:
            raise InvalidTransitionError(
                run.status, PayrollRunStatus.APPROVED.value, "; ".join(errors)
            )

        for item in await self._line_items(run.id):
            item.status = "approved"
        run.status = PayrollRunStatus.APPROVED.value
        run.approved_at = datetime.now(timezone.utc)
        run.approved_by = actor_id
        await self.session.flush()

        await self._emit(
            PayrollRunApproved(
                metadata=EventMetadata.create(
                    tenant_id=tenant_id, actor_id=actor_id, actor_type="user"
                ),
                payroll_run_id=run.id,
                approved_by=actor_id,
            )
        )
        return run

    async def mark_paid(
        self, tenant_id: UUID, run_id: UUID, actor_id: str | None = None
    ) -> PayrollRun:
        """Mark an approved run as paid. Results become immutable."""
        run = await self.get_run(tenant_id, run_id)
        if PayrollRunStateMachine.are_results_immutable(run.status):
            raise ImmutabilityViolationError("PayrollRun", run.id, "run is already paid")
        PayrollRunStateMachine.validate_transition(run.status, PayrollRunStatus.PAID)

        acp = AcpService(self.session)
        acp_payments = 0
        for item in await self._line_items(run.id):
            item.status = "paid"
            if item.acp_detail is not None:
                employee = await self.session.get(Employee, item.employee_id)
                await acp.record_payment(run, item, employee)
                acp_payments += 1

        run.status = PayrollRunStatus.PAID.value
        run.paid_at = datetime.now(timezone.utc)
        await self.session.flush()

        logger.info(
            "payroll_run_paid",
            extra={"payroll_run_id": str(run.id), "acp_payments": acp_payments},
        )
        await self._emit(
            PayrollRunPaid(
                metadata=EventMetadata.create(
                    tenant_id=tenant_id, actor_id=actor_id, actor_type="user"
                ),
                payroll_run_id=run.id,
                acp_payments=acp_payments,
            )
        )
        return run

    async def list_line_items(self, tenant_id: UUID, run_id: UUID) -> list[PayrollLineItem]:
        """Line items ordered by employee number.

        Raises:
            ValidationError: The run has no calculated result yet.
        """
        run = await self.get_run(tenant_id, run_id)
        if not PayrollRunStateMachine.can_list_line_items(run.status):
            raise ValidationError(f"Payroll run is {run.status}; line items are not available")
        return await self._line_items(run.id)

    async def get_line_item(
        self, tenant_id: UUID, run_id: UUID, employee_id: UUID
    ) -> PayrollLineItem:
        await self.get_run(tenant_id, run_id)
        result = await self.session.execute(
            select(PayrollLineItem).where(
                PayrollLineItem.payroll_run_id == run_id,
                PayrollLineItem.employee_id == employee_id,
            )
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise NotFoundError("PayrollLineItem", employee_id)
        return item

    async def _line_items(self, run_id: UUID) -> list[PayrollLineItem]:
        result = await self.session.execute(
            select(PayrollLineItem)
            .where(PayrollLineItem.payroll_run_id == run_id)
            .order_by(PayrollLineItem.employee_number)
        )
        return list(result.scalars().all())

    async def _emit(self, event: DomainEvent) -> None:
        if self.emitter is not None:
            await self.emitter.emit(event)
