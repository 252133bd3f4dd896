"""Payroll run orchestrator: chunked, checkpointed, resumable calculation.

Triggering a calculation claims the run with a conditional status update,
freezes the policy snapshot onto the run and hands execution to a task
runner. Execution walks the roster in fixed-size chunks ordered by employee
number. Each chunk is committed together with the progress checkpoint, so a
crash, pause or retry resumes at the first unfinished chunk.

Per-employee problems (bad compensation data, negative net) are written to
the run error log and the run keeps going. A missing country configuration
fails the whole run.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paie_engine.calculators.components import ACP_COMPONENT_CODE
from paie_engine.calculators.engine import PayrollEngine
from paie_engine.calculators.line_builder import ConservationError
from paie_engine.calculators.policy_provider import PolicyProvider
from paie_engine.calculators.types import (
    ContributionProfile,
    EmployeeCalculationInput,
    LineItemResult,
    OvertimeSegment,
    PeriodType,
    PolicySnapshot,
    SalaryComponent,
    SourceType,
)
from paie_engine.config import Settings, get_settings
from paie_engine.events.emitter import AsyncEventEmitter
from paie_engine.events.types import (
    DomainEvent,
    EventMetadata,
    PayrollRunChunkCompleted,
    PayrollRunCompleted,
    PayrollRunFailed,
    PayrollRunPaused,
    PayrollRunStarted,
)
from paie_engine.exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    ImmutabilityViolationError,
    NotFoundError,
    PayrollEngineError,
    ValidationError,
)
from paie_engine.models import (
    Employee,
    EmployeeSalary,
    OvertimeEntry,
    PayrollLineItem,
    PayrollRun,
    RunError,
    RunProgress,
    Tenant,
)
from paie_engine.services.acp_service import AcpService
from paie_engine.services.payroll_run_service import PayrollRunService
from paie_engine.services.progress_service import ProgressService, RunProgressState
from paie_engine.services.state_machine import (
    CompletionStatus,
    InvalidTransitionError,
    PayrollRunStateMachine,
    PayrollRunStatus,
    ProgressStatus,
)

if TYPE_CHECKING:
    from paie_engine.services.task_runner import TaskRunner

logger = logging.getLogger(__name__)

# Per-employee failures; anything else is an infrastructure failure
EMPLOYEE_ERRORS = (
    PayrollEngineError,
    ConservationError,
    ArithmeticError,
    KeyError,
    TypeError,
    ValueError,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EmployeeRecalculation:
    """Outcome of recalculating a single employee in a calculated run."""

    employee_id: UUID
    previous_net: Decimal | None
    net_salary: Decimal
    calculation_hash: str

    @property
    def changed(self) -> bool:
        return self.previous_net != self.net_salary

    def to_dict(self) -> dict[str, Any]:
        return {
            "employee_id": str(self.employee_id),
            "previous_net": str(self.previous_net) if self.previous_net is not None else None,
            "net_salary": str(self.net_salary),
            "calculation_hash": self.calculation_hash,
            "changed": self.changed,
        }


class PayrollRunOrchestrator:
    """Drives payroll run calculation.

    Every public method opens its own sessions from ``session_factory``; the
    orchestrator is safe to share across requests and background tasks.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        task_runner: TaskRunner,
        emitter: AsyncEventEmitter | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.task_runner = task_runner
        self.emitter = emitter or AsyncEventEmitter()
        self.settings = settings or get_settings()

    @property
    def chunk_size(self) -> int:
        return max(1, self.settings.chunk_size)

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    async def start_calculation(
        self, tenant_id: UUID, run_id: UUID, actor_id: str | None = None
    ) -> RunProgressState:
        """Start (or restart) calculation and return immediately.

        Raises:
            NotFoundError: Unknown run for this tenant.
            ImmutabilityViolationError: The run is paid.
            ConcurrencyConflictError: The run is already calculating, or
                another run occupies an overlapping period.
            InvalidTransitionError: The run cannot be calculated from its
                current status.
            ConfigurationError: No rate set for the run's country and period.
                The run is marked failed.
        """
        async with self.session_factory() as session:
            run = await PayrollRunService(session).get_run(tenant_id, run_id)
            if PayrollRunStateMachine.are_results_immutable(run.status):
                raise ImmutabilityViolationError("PayrollRun", run.id, "run is paid")
            if run.status in (PayrollRunStatus.CALCULATING, PayrollRunStatus.PAUSED):
                raise ConcurrencyConflictError(
                    f"Payroll run {run.run_number} is already {run.status}", run.id
                )
            if not PayrollRunStateMachine.can_calculate(run.status):
                raise InvalidTransitionError(run.status, PayrollRunStatus.CALCULATING.value)

            await self._check_period_conflicts(session, run)
            await self._claim(session, run, run.status)

            provider = PolicyProvider(session)
            try:
                snapshot = await provider.get_snapshot(run.country_code, run.period_end)
            except ConfigurationError as exc:
                await self._fail(session, run, None, exc.code, exc.message)
                raise

            total = await self._roster_count(session, run)
            run.attempt += 1
            run.policy_snapshot = snapshot.to_dict()
            run.pause_requested = False
            run.completion_status = None
            run.failure_reason = None
            run.calculated_at = None

            progress = await session.get(RunProgress, run.id)
            if progress is None:
                progress = RunProgress(payroll_run_id=run.id)
                session.add(progress)
            progress.attempt = run.attempt
            progress.status = ProgressStatus.PENDING.value
            progress.total_employees = total
            progress.processed_count = 0
            progress.success_count = 0
            progress.error_count = 0
            progress.current_chunk = 0
            progress.total_chunks = math.ceil(total / self.chunk_size)
            progress.started_at = None
            progress.completed_at = None
            progress.updated_at = _now()

            await provider.mark_referenced(snapshot)
            await session.commit()

            state = await ProgressService(session).get_progress(tenant_id, run.id)

        logger.info(
            "payroll_run_calculation_started",
            extra={
                "payroll_run_id": str(run_id),
                "attempt": state.attempt,
                "total_employees": total,
            },
        )
        await self._emit(
            PayrollRunStarted(
                metadata=self._metadata(tenant_id, run_id, actor_id),
                payroll_run_id=run_id,
                attempt=state.attempt,
                total_employees=total,
                policy_fingerprint=PayrollEngine.snapshot_fingerprint(snapshot),
            )
        )
        self._schedule(run_id)
        return state

    async def request_pause(self, tenant_id: UUID, run_id: UUID) -> RunProgressState:
        """Ask a calculating run to pause at the next chunk boundary."""
        async with self.session_factory() as session:
            run = await PayrollRunService(session).get_run(tenant_id, run_id)
            if run.status == PayrollRunStatus.CALCULATING:
                run.pause_requested = True
                await session.commit()
                logger.info("payroll_run_pause_requested", extra={"payroll_run_id": str(run_id)})
            elif run.status != PayrollRunStatus.PAUSED:
                raise InvalidTransitionError(run.status, PayrollRunStatus.PAUSED.value)
            return await ProgressService(session).get_progress(tenant_id, run_id)

    async def resume(
        self, tenant_id: UUID, run_id: UUID, actor_id: str | None = None
    ) -> RunProgressState:
        """Continue a paused run from its last checkpoint."""
        async with self.session_factory() as session:
            run = await PayrollRunService(session).get_run(tenant_id, run_id)
            if run.status != PayrollRunStatus.PAUSED:
                raise InvalidTransitionError(
                    run.status, PayrollRunStatus.CALCULATING.value, "run is not paused"
                )
            await self._claim(session, run, PayrollRunStatus.PAUSED.value)
            run.pause_requested = False
            progress = await session.get(RunProgress, run.id)
            if progress is not None:
                progress.status = ProgressStatus.PENDING.value
                progress.updated_at = _now()
            await session.commit()
            state = await ProgressService(session).get_progress(tenant_id, run_id)

        logger.info(
            "payroll_run_resumed",
            extra={"payroll_run_id": str(run_id), "current_chunk": state.current_chunk},
        )
        self._schedule(run_id)
        return state

    def _schedule(self, run_id: UUID) -> None:
        if not self.task_runner.submit(str(run_id), lambda: self.execute(run_id)):
            # A pending execution will find the run calculating and pick it up
            logger.info(
                "payroll_run_execution_already_pending", extra={"payroll_run_id": str(run_id)}
            )

    async def recover_interrupted_runs(self) -> int:
        """Resubmit runs left calculating by a previous process."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PayrollRun.id).where(PayrollRun.status == PayrollRunStatus.CALCULATING.value)
            )
            run_ids = list(result.scalars().all())

        recovered = 0
        for run_id in run_ids:
            if self.task_runner.submit(str(run_id), lambda rid=run_id: self.execute(rid)):
                recovered += 1
                logger.info("payroll_run_recovered", extra={"payroll_run_id": str(run_id)})
        return recovered

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, run_id: UUID) -> None:
        """Process the remaining chunks of a run, retrying from checkpoint.

        Infrastructure failures are retried with exponential backoff. Once
        retries are exhausted the run is marked failed.
        """
        failures = 0
        while True:
            try:
                await self._execute_once(run_id)
                return
            except Exception as exc:
                failures += 1
                if failures > self.settings.max_retries:
                    logger.exception(
                        "payroll_run_retries_exhausted",
                        extra={"payroll_run_id": str(run_id), "failures": failures},
                    )
                    await self._mark_failed(run_id, "RETRIES_EXHAUSTED", str(exc))
                    return
                delay = self.settings.retry_backoff_seconds * (2 ** (failures - 1))
                logger.warning(
                    "payroll_run_retrying",
                    extra={
                        "payroll_run_id": str(run_id),
                        "failures": failures,
                        "delay_seconds": delay,
                        "error": str(exc),
                    },
                )
                await asyncio.sleep(delay)

    async def _execute_once(self, run_id: UUID) -> None:
        async with self.session_factory() as session:
            run = await session.get(PayrollRun, run_id)
            if run is None or run.status != PayrollRunStatus.CALCULATING:
                logger.info(
                    "payroll_run_execution_skipped",
                    extra={"payroll_run_id": str(run_id), "status": run.status if run else None},
                )
                return

            progress = await session.get(RunProgress, run_id)
            if progress is None:
                progress = RunProgress(
                    payroll_run_id=run.id,
                    attempt=run.attempt,
                    processed_count=0,
                    success_count=0,
                    error_count=0,
                    current_chunk=0,
                )
                session.add(progress)

            if run.policy_snapshot is None:
                await self._fail(
                    session, run, progress, ConfigurationError.code, "Run has no policy snapshot"
                )
                return

            snapshot = PolicySnapshot.from_dict(run.policy_snapshot)
            engine = PayrollEngine(snapshot)
            tenant = await session.get(Tenant, run.tenant_id)
            done = await self._handled_this_attempt(session, run)
            remaining = [e for e in await self._roster(session, run) if e not in done]
            chunks = [
                remaining[i : i + self.chunk_size]
                for i in range(0, len(remaining), self.chunk_size)
            ]
            first_chunk = progress.current_chunk

            progress.status = ProgressStatus.PROCESSING.value
            progress.started_at = progress.started_at or _now()
            progress.total_chunks = first_chunk + len(chunks)
            progress.total_employees = progress.processed_count + len(remaining)
            progress.updated_at = _now()
            await session.commit()

            try:
                for index, chunk in enumerate(chunks, start=first_chunk):
                    await session.refresh(run, attribute_names=["pause_requested"])
                    if run.pause_requested:
                        await self._pause(session, run, progress)
                        return

                    await self._process_chunk(
                        session, run, tenant, snapshot, engine, progress, index, chunk
                    )
                    progress.current_chunk = index + 1
                    progress.updated_at = _now()
                    await session.commit()

                    logger.info(
                        "payroll_run_chunk_completed",
                        extra={
                            "payroll_run_id": str(run.id),
                            "chunk_index": index,
                            "processed_count": progress.processed_count,
                            "error_count": progress.error_count,
                        },
                    )
                    await self._emit(
                        PayrollRunChunkCompleted(
                            metadata=self._metadata(run.tenant_id, run.id),
                            payroll_run_id=run.id,
                            chunk_index=index,
                            total_chunks=progress.total_chunks,
                            processed_count=progress.processed_count,
                            error_count=progress.error_count,
                        )
                    )

                await self._finalize(session, run, progress)
            except ConfigurationError as exc:
                await session.rollback()
                await session.refresh(run)
                await session.refresh(progress)
                await self._fail(session, run, progress, exc.code, exc.message)

    async def _process_chunk(
        self,
        session: AsyncSession,
        run: PayrollRun,
        tenant: Tenant | None,
        snapshot: PolicySnapshot,
        engine: PayrollEngine,
        progress: RunProgress,
        index: int,
        employee_ids: list[UUID],
    ) -> None:
        employees = await self._employees(session, employee_ids)
        salaries = await self._salaries(session, employee_ids, run)
        overtime = await self._overtime(session, employee_ids, run)
        existing = await self._line_items(session, run.id, employee_ids)
        acp = AcpService(session)

        for employee in employees:
            try:
                item = await self._calculate(
                    acp,
                    run,
                    tenant,
                    snapshot,
                    engine,
                    employee,
                    salaries.get(employee.id),
                    overtime.get(employee.id, []),
                )
            except ConfigurationError:
                raise
            except EMPLOYEE_ERRORS as exc:
                self._record_error(session, run, progress, index, employee, exc)
                continue

            self._store(session, run, existing.get(employee.id), item)
            progress.success_count += 1
            progress.processed_count += 1

    async def _calculate(
        self,
        acp: AcpService,
        run: PayrollRun,
        tenant: Tenant | None,
        snapshot: PolicySnapshot,
        engine: PayrollEngine,
        employee: Employee,
        salary: EmployeeSalary | None,
        overtime: list[OvertimeEntry],
    ) -> LineItemResult:
        if salary is None:
            raise ValidationError("No compensation record effective for the period", employee.id)

        segments: list[OvertimeSegment] = []
        for entry in overtime:
            try:
                period_types = frozenset(PeriodType(p) for p in entry.period_types)
            except ValueError as exc:
                raise ValidationError(
                    f"Unknown overtime period type in {entry.period_types}", employee.id
                ) from exc
            segments.append(OvertimeSegment(Decimal(str(entry.hours)), period_types))

        extra, acp_detail = await self._acp_components(acp, run, snapshot, employee)
        overrides = (tenant.employer_rate_overrides if tenant else None) or {}
        calc_input = EmployeeCalculationInput(
            employee_id=employee.id,
            employee_number=employee.employee_number,
            employee_name=employee.full_name,
            hire_date=employee.hire_date,
            termination_date=employee.termination_date,
            period_start=run.period_start,
            period_end=run.period_end,
            components=list(salary.components),
            contract_type=employee.contract_type,
            profile=ContributionProfile(
                has_family=employee.has_family,
                fiscal_parts=Decimal(str(employee.fiscal_parts)),
                sector_code=employee.sector_code or (tenant.sector_code if tenant else None),
                employer_rate_overrides={k: Decimal(str(v)) for k, v in overrides.items()},
            ),
            overtime_segments=segments,
            extra_components=extra,
            acp_detail=acp_detail,
        )
        return engine.calculate_employee(calc_input)

    async def _acp_components(
        self,
        acp: AcpService,
        run: PayrollRun,
        snapshot: PolicySnapshot,
        employee: Employee,
    ) -> tuple[list[SalaryComponent], dict[str, Any] | None]:
        payment_date = employee.acp_payment_date
        if not (
            employee.acp_payment_active
            and payment_date is not None
            and run.period_start <= payment_date <= run.period_end
        ):
            return [], None
        if snapshot.leave_policy is None:
            raise ConfigurationError(
                "No active leave accrual policy",
                country_code=snapshot.country_code,
                as_of=snapshot.as_of,
            )

        preview = await acp.compute(
            employee,
            payment_date,
            snapshot.leave_policy,
            snapshot.payroll_policy.days_per_month,
        )
        components = []
        if preview.acp_amount > 0:
            components.append(
                SalaryComponent(
                    code=ACP_COMPONENT_CODE,
                    name="Allocation de congés payés",
                    amount=preview.acp_amount,
                    source_type=SourceType.CALCULATED,
                )
            )
        return components, preview.to_dict()

    def _record_error(
        self,
        session: AsyncSession,
        run: PayrollRun,
        progress: RunProgress,
        index: int,
        employee: Employee,
        exc: Exception,
    ) -> None:
        code = getattr(exc, "code", None) or "CALCULATION_ERROR"
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        session.add(
            RunError(
                payroll_run_id=run.id,
                attempt=run.attempt,
                chunk_index=index,
                employee_id=employee.id,
                employee_number=employee.employee_number,
                error_code=code,
                message=message,
            )
        )
        progress.error_count += 1
        progress.processed_count += 1
        logger.warning(
            "employee_calculation_failed",
            extra={
                "payroll_run_id": str(run.id),
                "employee_number": employee.employee_number,
                "error_code": code,
                "error": message,
            },
        )

    @staticmethod
    def _store(
        session: AsyncSession,
        run: PayrollRun,
        line_item: PayrollLineItem | None,
        item: LineItemResult,
    ) -> PayrollLineItem:
        """Insert or overwrite the line item of one employee."""
        values = {
            "employee_number": item.employee_number,
            "employee_name": item.employee_name,
            "base_salary": item.base_salary,
            "days_worked": item.days_worked,
            "components": [c.to_dict() for c in item.components],
            "overtime": [b.to_dict() for b in item.overtime],
            "overtime_pay": item.overtime_pay,
            "gross_salary": item.gross_salary,
            "brut_imposable": item.brut_imposable,
            "employee_deductions": [d.to_dict() for d in item.employee_deductions],
            "employer_contributions": [c.to_dict() for c in item.employer_contributions],
            "total_deductions": item.total_deductions,
            "total_employer_contributions": item.total_employer_contributions,
            "net_salary": item.net_salary,
            "total_employer_cost": item.total_employer_cost,
            "acp_amount": item.acp_amount,
            "acp_detail": item.acp_detail,
            "calculation_hash": item.calculation_hash,
            "attempt": run.attempt,
            "status": "calculated",
        }
        if line_item is None:
            line_item = PayrollLineItem(
                payroll_run_id=run.id, employee_id=item.employee_id, **values
            )
            session.add(line_item)
        else:
            for key, value in values.items():
                setattr(line_item, key, value)
        return line_item

    async def _finalize(
        self, session: AsyncSession, run: PayrollRun, progress: RunProgress
    ) -> None:
        # Drop results of employees that left the roster or failed this attempt
        errored = select(RunError.employee_id).where(
            RunError.payroll_run_id == run.id,
            RunError.attempt == run.attempt,
            RunError.employee_id.is_not(None),
        )
        await session.execute(
            delete(PayrollLineItem)
            .where(
                PayrollLineItem.payroll_run_id == run.id,
                or_(
                    PayrollLineItem.employee_id.not_in(self._roster_query(run)),
                    PayrollLineItem.employee_id.in_(errored),
                ),
            )
            .execution_options(synchronize_session=False)
        )
        await self._update_totals(session, run)

        # Counters follow what is actually persisted after the cleanup
        failed = await session.execute(
            select(func.count(func.distinct(RunError.employee_id))).where(
                RunError.payroll_run_id == run.id,
                RunError.attempt == run.attempt,
            )
        )
        progress.success_count = run.employee_count
        progress.error_count = failed.scalar_one()
        progress.processed_count = progress.success_count + progress.error_count
        progress.total_employees = progress.processed_count

        run.completion_status = (
            CompletionStatus.COMPLETED_WITH_ERRORS.value
            if progress.error_count
            else CompletionStatus.COMPLETED.value
        )
        run.status = PayrollRunStatus.CALCULATED.value
        run.calculated_at = _now()
        progress.status = ProgressStatus.COMPLETED.value
        progress.completed_at = _now()
        progress.updated_at = progress.completed_at
        await session.commit()

        logger.info(
            "payroll_run_calculated",
            extra={
                "payroll_run_id": str(run.id),
                "completion_status": run.completion_status,
                "success_count": progress.success_count,
                "error_count": progress.error_count,
            },
        )
        await self._emit(
            PayrollRunCompleted(
                metadata=self._metadata(run.tenant_id, run.id),
                payroll_run_id=run.id,
                completion_status=run.completion_status,
                success_count=progress.success_count,
                error_count=progress.error_count,
                total_net=run.total_net,
            )
        )

    async def _update_totals(self, session: AsyncSession, run: PayrollRun) -> None:
        result = await session.execute(
            select(
                func.count(PayrollLineItem.id),
                func.coalesce(func.sum(PayrollLineItem.gross_salary), 0),
                func.coalesce(func.sum(PayrollLineItem.net_salary), 0),
                func.coalesce(func.sum(PayrollLineItem.total_deductions), 0),
                func.coalesce(func.sum(PayrollLineItem.total_employer_contributions), 0),
                func.coalesce(func.sum(PayrollLineItem.total_employer_cost), 0),
            ).where(PayrollLineItem.payroll_run_id == run.id)
        )
        count, gross, net, deductions, employer, cost = result.one()
        run.employee_count = count
        run.total_gross = Decimal(str(gross))
        run.total_net = Decimal(str(net))
        run.total_employee_deductions = Decimal(str(deductions))
        run.total_employer_contributions = Decimal(str(employer))
        run.total_employer_cost = Decimal(str(cost))

    async def _pause(
        self, session: AsyncSession, run: PayrollRun, progress: RunProgress
    ) -> None:
        run.status = PayrollRunStatus.PAUSED.value
        run.pause_requested = False
        progress.status = ProgressStatus.PAUSED.value
        progress.updated_at = _now()
        await session.commit()
        logger.info(
            "payroll_run_paused",
            extra={"payroll_run_id": str(run.id), "current_chunk": progress.current_chunk},
        )
        await self._emit(
            PayrollRunPaused(
                metadata=self._metadata(run.tenant_id, run.id),
                payroll_run_id=run.id,
                completed_chunks=progress.current_chunk,
            )
        )

    async def _fail(
        self,
        session: AsyncSession,
        run: PayrollRun,
        progress: RunProgress | None,
        error_code: str,
        reason: str,
    ) -> None:
        run.status = PayrollRunStatus.FAILED.value
        run.failure_reason = reason
        run.pause_requested = False
        if progress is not None:
            progress.status = ProgressStatus.FAILED.value
            progress.completed_at = _now()
            progress.updated_at = progress.completed_at
        await session.commit()
        logger.error(
            "payroll_run_failed",
            extra={"payroll_run_id": str(run.id), "error_code": error_code, "reason": reason},
        )
        await self._emit(
            PayrollRunFailed(
                metadata=self._metadata(run.tenant_id, run.id),
                payroll_run_id=run.id,
                error_code=error_code,
                reason=reason,
            )
        )

    async def _mark_failed(self, run_id: UUID, error_code: str, reason: str) -> None:
        async with self.session_factory() as session:
            run = await session.get(PayrollRun, run_id)
            if run is None or run.status != PayrollRunStatus.CALCULATING:
                return
            progress = await session.get(RunProgress, run_id)
            await self._fail(session, run, progress, error_code, reason)

    # ------------------------------------------------------------------
    # Single-employee recalculation
    # ------------------------------------------------------------------

    async def recalculate_employee(
        self, tenant_id: UUID, run_id: UUID, employee_id: UUID
    ) -> EmployeeRecalculation:
        """Recompute one employee of a calculated run with its frozen snapshot.

        Raises:
            ImmutabilityViolationError: The run is paid.
            InvalidTransitionError: The run is not calculated.
            ValidationError: The employee's data is still invalid.
        """
        async with self.session_factory() as session:
            run = await PayrollRunService(session).get_run(tenant_id, run_id)
            if PayrollRunStateMachine.are_results_immutable(run.status):
                raise ImmutabilityViolationError("PayrollRun", run.id, "run is paid")
            if run.status != PayrollRunStatus.CALCULATED or run.policy_snapshot is None:
                raise InvalidTransitionError(
                    run.status,
                    PayrollRunStatus.CALCULATING.value,
                    "only calculated runs can recalculate an employee",
                )
            employee = await session.get(Employee, employee_id)
            if employee is None or employee.tenant_id != tenant_id:
                raise NotFoundError("Employee", employee_id)

            snapshot = PolicySnapshot.from_dict(run.policy_snapshot)
            tenant = await session.get(Tenant, tenant_id)
            salaries = await self._salaries(session, [employee_id], run)
            overtime = await self._overtime(session, [employee_id], run)
            existing = (await self._line_items(session, run.id, [employee_id])).get(employee_id)
            previous_net = existing.net_salary if existing is not None else None

            item = await self._calculate(
                AcpService(session),
                run,
                tenant,
                snapshot,
                PayrollEngine(snapshot),
                employee,
                salaries.get(employee_id),
                overtime.get(employee_id, []),
            )
            self._store(session, run, existing, item)
            await session.flush()
            await self._update_totals(session, run)
            await session.commit()

        logger.info(
            "payroll_employee_recalculated",
            extra={
                "payroll_run_id": str(run_id),
                "employee_id": str(employee_id),
                "previous_net": str(previous_net) if previous_net is not None else None,
                "net_salary": str(item.net_salary),
            },
        )
        return EmployeeRecalculation(
            employee_id=employee_id,
            previous_net=previous_net,
            net_salary=item.net_salary,
            calculation_hash=item.calculation_hash,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _roster_query(run: PayrollRun) -> Any:
        """Employees on payroll for the run period."""
        return select(Employee.id).where(
            Employee.tenant_id == run.tenant_id,
            Employee.hire_date <= run.period_end,
            or_(
                and_(
                    Employee.status == "active",
                    or_(
                        Employee.termination_date.is_(None),
                        Employee.termination_date >= run.period_start,
                    ),
                ),
                and_(
                    Employee.status == "terminated",
                    Employee.termination_date >= run.period_start,
                ),
            ),
        )

    async def _roster(self, session: AsyncSession, run: PayrollRun) -> list[UUID]:
        result = await session.execute(
            self._roster_query(run).order_by(Employee.employee_number)
        )
        return list(result.scalars().all())

    async def _handled_this_attempt(self, session: AsyncSession, run: PayrollRun) -> set[UUID]:
        """Employees already stored or logged as failed in the current attempt."""
        stored = select(PayrollLineItem.employee_id).where(
            PayrollLineItem.payroll_run_id == run.id,
            PayrollLineItem.attempt == run.attempt,
        )
        failed = select(RunError.employee_id).where(
            RunError.payroll_run_id == run.id,
            RunError.attempt == run.attempt,
            RunError.employee_id.is_not(None),
        )
        result = await session.execute(stored.union(failed))
        return set(result.scalars().all())

    async def _roster_count(self, session: AsyncSession, run: PayrollRun) -> int:
        result = await session.execute(
            select(func.count()).select_from(self._roster_query(run).subquery())
        )
        return result.scalar_one()

    @staticmethod
    async def _employees(session: AsyncSession, ids: list[UUID]) -> list[Employee]:
        result = await session.execute(
            select(Employee).where(Employee.id.in_(ids)).order_by(Employee.employee_number)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _salaries(
        session: AsyncSession, ids: list[UUID], run: PayrollRun
    ) -> dict[UUID, EmployeeSalary]:
        """Compensation record effective on period end, per employee."""
        result = await session.execute(
            select(EmployeeSalary)
            .where(
                EmployeeSalary.employee_id.in_(ids),
                EmployeeSalary.effective_from <= run.period_end,
                or_(
                    EmployeeSalary.effective_to.is_(None),
                    EmployeeSalary.effective_to > run.period_end,
                ),
            )
            .order_by(EmployeeSalary.effective_from)
        )
        # Later records override earlier ones
        return {s.employee_id: s for s in result.scalars().all()}

    @staticmethod
    async def _overtime(
        session: AsyncSession, ids: list[UUID], run: PayrollRun
    ) -> dict[UUID, list[OvertimeEntry]]:
        result = await session.execute(
            select(OvertimeEntry)
            .where(
                OvertimeEntry.employee_id.in_(ids),
                OvertimeEntry.status == "approved",
                OvertimeEntry.work_date >= run.period_start,
                OvertimeEntry.work_date <= run.period_end,
            )
            .order_by(OvertimeEntry.work_date)
        )
        entries: dict[UUID, list[OvertimeEntry]] = {}
        for entry in result.scalars().all():
            entries.setdefault(entry.employee_id, []).append(entry)
        return entries

    @staticmethod
    async def _line_items(
        session: AsyncSession, run_id: UUID, ids: list[UUID]
    ) -> dict[UUID, PayrollLineItem]:
        result = await session.execute(
            select(PayrollLineItem).where(
                PayrollLineItem.payroll_run_id == run_id,
                PayrollLineItem.employee_id.in_(ids),
            )
        )
        return {item.employee_id: item for item in result.scalars().all()}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _check_period_conflicts(self, session: AsyncSession, run: PayrollRun) -> None:
        conflict = await PayrollRunService(session).find_overlapping(
            run.tenant_id,
            run.period_start,
            run.period_end,
            exclude_run_id=run.id,
            statuses=PayrollRunStateMachine.OCCUPIES_PERIOD,
        )
        if conflict is not None:
            raise ConcurrencyConflictError(
                f"Payroll run {conflict.run_number} already covers an overlapping period",
                conflict.id,
            )

    @staticmethod
    async def _claim(session: AsyncSession, run: PayrollRun, from_status: str) -> None:
        """Atomically move the run to calculating, or fail if someone else did."""
        result = await session.execute(
            update(PayrollRun)
            .where(PayrollRun.id == run.id, PayrollRun.status == from_status)
            .values(status=PayrollRunStatus.CALCULATING.value)
            .returning(PayrollRun.id)
            .execution_options(synchronize_session=False)
        )
        if result.scalar_one_or_none() is None:
            await session.rollback()
            raise ConcurrencyConflictError(
                f"Payroll run {run.run_number} changed status concurrently", run.id
            )
        await session.refresh(run)

    @staticmethod
    def _metadata(tenant_id: UUID, run_id: UUID, actor_id: str | None = None) -> EventMetadata:
        return EventMetadata.create(
            tenant_id=tenant_id,
            correlation_id=run_id,
            actor_id=actor_id,
            actor_type="user" if actor_id else "system",
        )

    async def _emit(self, event: DomainEvent) -> None:
        await self.emitter.emit(event)
