"""ACP service: paid-leave indemnity previews, scheduling and payment records."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paie_engine.calculators.acp import AcpCalculator, LeaveEntry, SalaryHistoryEntry
from paie_engine.calculators.components import BASE_SALARY_CODE
from paie_engine.calculators.policy_provider import PolicyProvider
from paie_engine.calculators.types import ZERO, AcpPreview, LeavePolicySpec
from paie_engine.events.types import AcpPreviewComputed, EventMetadata, LeaveRequestApproved
from paie_engine.exceptions import ConcurrencyConflictError, NotFoundError, ValidationError
from paie_engine.models import (
    AcpPaymentRecord,
    Employee,
    EmployeeSalary,
    PayrollLineItem,
    PayrollRun,
    Tenant,
    TimeOffRequest,
)
from paie_engine.services.state_machine import PayrollRunStatus

if TYPE_CHECKING:
    from paie_engine.events.emitter import AsyncEventEmitter

logger = logging.getLogger(__name__)


class AcpService:
    """ACP operations scoped to one session.

    History is read from paid runs only; a run that was calculated but never
    paid did not pay any salary.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.policies = PolicyProvider(session)

    async def get_employee(self, tenant_id: UUID, employee_id: UUID) -> Employee:
        employee = await self.session.get(Employee, employee_id)
        if employee is None or employee.tenant_id != tenant_id:
            raise NotFoundError("Employee", employee_id)
        return employee

    async def preview(
        self, tenant_id: UUID, employee_id: UUID, payment_date: date
    ) -> AcpPreview:
        """Compute the ACP an employee would receive on ``payment_date``.

        Raises:
            NotFoundError: Unknown employee for this tenant.
            ConfigurationError: No leave accrual policy for the country.
        """
        employee = await self.get_employee(tenant_id, employee_id)
        tenant = await self.session.get(Tenant, tenant_id)
        country_code = tenant.country_code if tenant else ""
        leave_policy = await self.policies.get_leave_policy(country_code, payment_date)
        payroll_policy = await self.policies.get_payroll_policy(country_code, payment_date)
        return await self.compute(
            employee, payment_date, leave_policy, payroll_policy.days_per_month
        )

    async def compute(
        self,
        employee: Employee,
        payment_date: date,
        leave_policy: LeavePolicySpec,
        days_per_month: int = 30,
    ) -> AcpPreview:
        """Compute ACP with an already resolved leave policy."""
        last_paid_at = await self.last_paid_at(employee)
        history = await self.salary_history(employee.id, payment_date)
        leaves = await self.deductible_leaves(employee.id, payment_date)
        fallback = await self.current_base_salary(employee.id, payment_date)

        calculator = AcpCalculator(leave_policy, days_per_month=days_per_month)
        return calculator.calculate(
            employee_id=employee.id,
            contract_type=employee.contract_type,
            hire_date=employee.hire_date,
            payment_date=payment_date,
            history=history,
            leaves=leaves,
            last_paid_at=last_paid_at,
            fallback_monthly_salary=fallback,
        )

    async def last_paid_at(self, employee: Employee) -> date | None:
        if employee.acp_last_paid_at is not None:
            return employee.acp_last_paid_at
        result = await self.session.execute(
            select(func.max(AcpPaymentRecord.payment_date)).where(
                AcpPaymentRecord.employee_id == employee.id
            )
        )
        return result.scalar_one_or_none()

    async def salary_history(
        self, employee_id: UUID, before: date
    ) -> list[SalaryHistoryEntry]:
        """Taxable salary of every paid run ending before ``before``."""
        result = await self.session.execute(
            select(
                PayrollRun.period_start,
                PayrollRun.period_end,
                PayrollLineItem.brut_imposable,
                PayrollLineItem.days_worked,
            )
            .join(PayrollRun, PayrollRun.id == PayrollLineItem.payroll_run_id)
            .where(
                PayrollLineItem.employee_id == employee_id,
                PayrollRun.status == PayrollRunStatus.PAID.value,
                PayrollRun.period_end < before,
            )
            .order_by(PayrollRun.period_start)
        )
        return [
            SalaryHistoryEntry(
                period_start=row.period_start,
                period_end=row.period_end,
                brut_imposable=Decimal(str(row.brut_imposable)),
                days_paid=Decimal(str(row.days_worked)),
            )
            for row in result.all()
        ]

    async def deductible_leaves(self, employee_id: UUID, before: date) -> list[LeaveEntry]:
        result = await self.session.execute(
            select(TimeOffRequest)
            .where(
                TimeOffRequest.employee_id == employee_id,
                TimeOffRequest.status == "approved",
                TimeOffRequest.is_deductible_for_acp.is_(True),
                TimeOffRequest.start_date < before,
            )
            .order_by(TimeOffRequest.start_date)
        )
        return [
            LeaveEntry(r.start_date, r.end_date, Decimal(str(r.total_days)))
            for r in result.scalars().all()
        ]

    async def current_base_salary(self, employee_id: UUID, as_of: date) -> Decimal:
        result = await self.session.execute(
            select(EmployeeSalary)
            .where(
                EmployeeSalary.employee_id == employee_id,
                EmployeeSalary.effective_from <= as_of,
            )
            .order_by(EmployeeSalary.effective_from.desc())
            .limit(1)
        )
        salary = result.scalar_one_or_none()
        if salary is None:
            return ZERO
        for component in salary.components:
            if component.get("code") == BASE_SALARY_CODE:
                return Decimal(str(component["amount"]))
        return ZERO

    async def set_payment_date(
        self,
        tenant_id: UUID,
        employee_id: UUID,
        payment_date: date | None,
        active: bool,
        notes: str | None = None,
    ) -> Employee:
        """Schedule (or cancel) the next ACP payment for an employee.

        Deactivating clears the date; the next run no longer includes ACP.
        """
        employee = await self.get_employee(tenant_id, employee_id)
        if active and payment_date is None:
            raise ValidationError("An active ACP schedule needs a payment date", employee_id)
        employee.acp_payment_active = active
        employee.acp_payment_date = payment_date if active else None
        employee.acp_notes = notes
        await self.session.flush()
        logger.info(
            "acp_payment_scheduled",
            extra={
                "employee_id": str(employee_id),
                "active": active,
                "payment_date": payment_date.isoformat() if payment_date and active else None,
            },
        )
        return employee

    async def list_scheduled(self, tenant_id: UUID) -> list[Employee]:
        """Employees with an active ACP payment schedule."""
        result = await self.session.execute(
            select(Employee)
            .where(Employee.tenant_id == tenant_id, Employee.acp_payment_active.is_(True))
            .order_by(Employee.acp_payment_date, Employee.employee_number)
        )
        return list(result.scalars().all())

    async def set_deductible(
        self, tenant_id: UUID, time_off_request_id: UUID, deductible: bool
    ) -> TimeOffRequest:
        request = await self.session.get(TimeOffRequest, time_off_request_id)
        if request is None or request.tenant_id != tenant_id:
            raise NotFoundError("TimeOffRequest", time_off_request_id)
        request.is_deductible_for_acp = deductible
        await self.session.flush()
        return request

    async def record_payment(
        self, run: PayrollRun, line_item: PayrollLineItem, employee: Employee
    ) -> AcpPaymentRecord:
        """Persist the ACP paid by ``run`` and close the employee's schedule.

        Raises:
            ConcurrencyConflictError: ACP for this employee and run was
                already recorded.
        """
        existing = await self.session.execute(
            select(AcpPaymentRecord.id).where(
                AcpPaymentRecord.employee_id == employee.id,
                AcpPaymentRecord.payroll_run_id == run.id,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConcurrencyConflictError(
                f"ACP already recorded for employee {employee.employee_number}", run.id
            )

        detail = line_item.acp_detail or {}
        payment_date = employee.acp_payment_date or run.payment_date
        record = AcpPaymentRecord(
            tenant_id=run.tenant_id,
            employee_id=employee.id,
            payroll_run_id=run.id,
            payment_date=payment_date,
            reference_period_start=date.fromisoformat(detail["reference_period_start"]),
            reference_period_end=date.fromisoformat(detail["reference_period_end"]),
            acp_amount=line_item.acp_amount,
            daily_average_salary=Decimal(detail.get("daily_average_salary", "0")),
            total_gross_taxable_salary=Decimal(detail.get("total_gross_taxable_salary", "0")),
            number_of_months=Decimal(detail.get("number_of_months", "0")),
            leave_days_taken_calendar=Decimal(detail.get("leave_days_taken_calendar", "0")),
            seniority_bonus_days=int(detail.get("seniority_bonus_days", 0)),
            warnings=list(detail.get("warnings", [])),
        )
        self.session.add(record)

        employee.acp_last_paid_at = payment_date
        employee.acp_payment_active = False
        employee.acp_payment_date = None
        return record


class AcpLeaveApprovalHandler:
    """Event handler: recompute the ACP preview when leave is approved."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        emitter: AsyncEventEmitter,
    ):
        self.session_factory = session_factory
        self.emitter = emitter

    async def __call__(self, event: LeaveRequestApproved) -> None:
        async with self.session_factory() as session:
            service = AcpService(session)
            employee = await service.get_employee(event.metadata.tenant_id, event.employee_id)
            payment_date = (
                employee.acp_payment_date
                if employee.acp_payment_active and employee.acp_payment_date
                else event.start_date
            )
            preview = await service.preview(
                event.metadata.tenant_id, event.employee_id, payment_date
            )

        await self.emitter.emit(
            AcpPreviewComputed(
                metadata=EventMetadata.create(
                    tenant_id=event.metadata.tenant_id,
                    correlation_id=event.metadata.correlation_id,
                ),
                employee_id=event.employee_id,
                time_off_request_id=event.time_off_request_id,
                payment_date=payment_date,
                acp_amount=preview.acp_amount,
                warnings=tuple(w.code for w in preview.warnings),
            )
        )
