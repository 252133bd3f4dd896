"""Integration tests for PayrollRunOrchestrator against SQLite."""

import asyncio
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import MARCH_END, MARCH_START, add_employee, calculate, create_run, salary_components
from paie_engine.events.types import (
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
)
from paie_engine.models import (
    AcpPaymentRecord,
    Employee,
    EmployeeSalary,
    OvertimeEntry,
    PayrollLineItem,
    PayrollRun,
    RunError,
    RunProgress,
    TimeOffRequest,
)
from paie_engine.services.orchestrator import PayrollRunOrchestrator
from paie_engine.services.payroll_run_service import PayrollRunService
from paie_engine.services.state_machine import InvalidTransitionError
from paie_engine.services.task_runner import BackgroundTaskRunner, DeferredTaskRunner


async def load_run(session_factory, run_id) -> PayrollRun:
    async with session_factory() as session:
        return await session.get(PayrollRun, run_id)


async def load_items(session_factory, run_id) -> list[PayrollLineItem]:
    async with session_factory() as session:
        result = await session.execute(
            select(PayrollLineItem)
            .where(PayrollLineItem.payroll_run_id == run_id)
            .order_by(PayrollLineItem.employee_number)
        )
        return list(result.scalars().all())


async def load_progress(session_factory, run_id) -> RunProgress:
    async with session_factory() as session:
        return await session.get(RunProgress, run_id)


class TestCalculation:
    """Happy path: chunks, totals and events."""

    async def test_single_employee(
        self, orchestrator, task_runner, session_factory, tenant, employee, march_run
    ):
        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        run = await load_run(session_factory, march_run.id)
        assert run.status == "calculated"
        assert run.completion_status == "completed"
        assert run.employee_count == 1
        assert run.total_gross == Decimal("300000")
        assert run.total_net == Decimal("241100")
        assert run.total_employer_cost == Decimal("329550")
        assert run.policy_snapshot["country_code"] == "CI"

        (item,) = await load_items(session_factory, march_run.id)
        assert item.employee_id == employee.id
        assert item.net_salary == Decimal("241100")
        assert item.total_deductions == Decimal("58900")
        assert len(item.calculation_hash) == 64

    async def test_chunked_roster(
        self, orchestrator, task_runner, emitter, session_factory, tenant, employees, march_run
    ):
        events = []
        emitter.on_all(events.append)

        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        progress = await load_progress(session_factory, march_run.id)
        assert progress.status == "completed"
        assert progress.total_chunks == 3
        assert progress.current_chunk == 3
        assert progress.processed_count == 5
        assert progress.success_count == 5

        items = await load_items(session_factory, march_run.id)
        run = await load_run(session_factory, march_run.id)
        assert [i.employee_number for i in items] == ["E001", "E002", "E003", "E004", "E005"]
        assert run.total_net == sum(i.net_salary for i in items)
        assert run.total_gross == sum(i.gross_salary for i in items)

        assert [type(e) for e in events] == [
            PayrollRunStarted,
            PayrollRunChunkCompleted,
            PayrollRunChunkCompleted,
            PayrollRunChunkCompleted,
            PayrollRunCompleted,
        ]
        assert events[0].total_employees == 5

    async def test_approved_overtime_included(
        self, orchestrator, task_runner, session_factory, tenant, employee, march_run
    ):
        async with session_factory() as session:
            session.add(
                OvertimeEntry(
                    employee_id=employee.id,
                    work_date=date(2024, 3, 10),
                    hours=Decimal("10"),
                    period_types=["sunday"],
                )
            )
            session.add(
                OvertimeEntry(
                    employee_id=employee.id,
                    work_date=date(2024, 3, 17),
                    hours=Decimal("4"),
                    period_types=["sunday"],
                    status="pending",
                )
            )
            await session.commit()

        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        (item,) = await load_items(session_factory, march_run.id)
        assert item.overtime_pay == Decimal("30289")
        assert item.gross_salary == Decimal("330289")

    async def test_empty_roster(
        self, orchestrator, task_runner, session_factory, tenant, march_run
    ):
        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        run = await load_run(session_factory, march_run.id)
        assert run.status == "calculated"
        assert run.employee_count == 0

        async with session_factory() as session:
            with pytest.raises(InvalidTransitionError, match="no calculated employees"):
                await PayrollRunService(session).approve_run(tenant.id, march_run.id)

    async def test_terminated_before_period_excluded(
        self, orchestrator, task_runner, session_factory, tenant, employee, march_run
    ):
        await add_employee(
            session_factory,
            tenant,
            "E009",
            termination_date=date(2024, 2, 15),
            status="terminated",
        )

        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        items = await load_items(session_factory, march_run.id)
        assert [i.employee_number for i in items] == ["E001"]


class TestPartialFailure:
    """Per-employee errors are logged and the run completes."""

    async def test_missing_compensation_record(
        self, orchestrator, task_runner, session_factory, tenant, employees, march_run
    ):
        broken = await add_employee(session_factory, tenant, "E006", base=None)

        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        run = await load_run(session_factory, march_run.id)
        assert run.status == "calculated"
        assert run.completion_status == "completed_with_errors"
        assert run.employee_count == 5

        progress = await load_progress(session_factory, march_run.id)
        assert progress.processed_count == 6
        assert progress.error_count == 1

        async with session_factory() as session:
            result = await session.execute(
                select(RunError).where(RunError.payroll_run_id == march_run.id)
            )
            (error,) = result.scalars().all()
        assert error.employee_id == broken.id
        assert error.error_code == "VALIDATION_ERROR"
        assert error.chunk_index == 2

    async def test_negative_net_recorded(
        self, orchestrator, task_runner, session_factory, tenant, employee, march_run
    ):
        await add_employee(session_factory, tenant, "E002", base="500")

        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        items = await load_items(session_factory, march_run.id)
        assert [i.employee_number for i in items] == ["E001"]
        run = await load_run(session_factory, march_run.id)
        assert run.completion_status == "completed_with_errors"

    async def test_fixed_employee_included_on_recalculation(
        self, orchestrator, task_runner, session_factory, tenant, employee, march_run
    ):
        broken = await add_employee(session_factory, tenant, "E002", base=None)
        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        async with session_factory() as session:
            session.add(
                EmployeeSalary(
                    employee_id=broken.id,
                    effective_from=date(2023, 1, 15),
                    components=salary_components("300000"),
                )
            )
            await session.commit()
        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        run = await load_run(session_factory, march_run.id)
        assert run.completion_status == "completed"
        assert run.employee_count == 2
        assert run.attempt == 2


class TestRecalculation:
    """Recalculating with unchanged inputs is idempotent."""

    async def test_same_hashes(
        self, orchestrator, task_runner, session_factory, tenant, employees, march_run
    ):
        await calculate(orchestrator, task_runner, tenant.id, march_run.id)
        first = {
            i.employee_id: i.calculation_hash
            for i in await load_items(session_factory, march_run.id)
        }

        await calculate(orchestrator, task_runner, tenant.id, march_run.id)
        second = {
            i.employee_id: i.calculation_hash
            for i in await load_items(session_factory, march_run.id)
        }

        assert first == second
        run = await load_run(session_factory, march_run.id)
        assert run.attempt == 2
        assert run.employee_count == 5

    async def test_recalculate_single_employee(
        self, orchestrator, task_runner, session_factory, tenant, employee, march_run
    ):
        await calculate(orchestrator, task_runner, tenant.id, march_run.id)
        async with session_factory() as session:
            salary = (
                await session.execute(
                    select(EmployeeSalary).where(EmployeeSalary.employee_id == employee.id)
                )
            ).scalar_one()
            salary.components = salary_components("350000")
            await session.commit()

        outcome = await orchestrator.recalculate_employee(tenant.id, march_run.id, employee.id)

        assert outcome.previous_net == Decimal("241100")
        assert outcome.changed
        run = await load_run(session_factory, march_run.id)
        assert run.total_net == outcome.net_salary
        assert run.total_gross == Decimal("350000")

    async def test_recalculate_employee_requires_calculated_run(
        self, orchestrator, tenant, employee, march_run
    ):
        with pytest.raises(InvalidTransitionError):
            await orchestrator.recalculate_employee(tenant.id, march_run.id, employee.id)


class TestPauseResume:
    async def test_pause_at_chunk_boundary_then_resume(
        self, orchestrator, task_runner, emitter, session_factory, tenant, employees, march_run
    ):
        async def pause_after_first_chunk(event):
            if event.chunk_index == 0:
                await orchestrator.request_pause(tenant.id, event.payroll_run_id)

        paused = []
        emitter.on(PayrollRunChunkCompleted, pause_after_first_chunk)
        emitter.on(PayrollRunPaused, paused.append)

        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        run = await load_run(session_factory, march_run.id)
        progress = await load_progress(session_factory, march_run.id)
        assert run.status == "paused"
        assert progress.status == "paused"
        assert progress.current_chunk == 1
        assert progress.processed_count == 2
        assert len(await load_items(session_factory, march_run.id)) == 2
        assert paused[0].completed_chunks == 1

        await orchestrator.resume(tenant.id, march_run.id)
        await task_runner.drain()

        run = await load_run(session_factory, march_run.id)
        progress = await load_progress(session_factory, march_run.id)
        assert run.status == "calculated"
        assert progress.processed_count == 5
        assert progress.current_chunk == 3
        assert len(await load_items(session_factory, march_run.id)) == 5

    async def test_resume_after_roster_change(
        self, orchestrator, task_runner, emitter, session_factory, tenant, employees, march_run
    ):
        """Employees hired or let go while paused are picked up or dropped."""

        async def pause_after_first_chunk(event):
            if event.chunk_index == 0:
                await orchestrator.request_pause(tenant.id, event.payroll_run_id)

        emitter.on(PayrollRunChunkCompleted, pause_after_first_chunk)
        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        # E000 sorts ahead of the chunk already done; E001 was in it
        await add_employee(session_factory, tenant, "E000")
        async with session_factory() as session:
            leaver = await session.get(Employee, employees[0].id)
            leaver.status = "terminated"
            leaver.termination_date = date(2024, 2, 15)
            await session.commit()

        await orchestrator.resume(tenant.id, march_run.id)
        await task_runner.drain()

        run = await load_run(session_factory, march_run.id)
        progress = await load_progress(session_factory, march_run.id)
        items = await load_items(session_factory, march_run.id)
        assert run.status == "calculated"
        assert run.completion_status == "completed"
        assert [i.employee_number for i in items] == ["E000", "E002", "E003", "E004", "E005"]
        assert run.employee_count == 5
        assert progress.success_count == 5
        assert progress.processed_count == 5
        assert progress.total_employees == 5
        assert progress.error_count == 0

    async def test_resume_while_paused_task_is_finishing(
        self, session_factory, emitter, settings, tenant, employees, march_run
    ):
        runner = BackgroundTaskRunner()
        orchestrator = PayrollRunOrchestrator(
            session_factory, runner, emitter=emitter, settings=settings
        )
        paused = asyncio.Event()
        release = asyncio.Event()

        async def pause_after_first_chunk(event):
            if event.chunk_index == 0:
                await orchestrator.request_pause(tenant.id, event.payroll_run_id)

        async def slow_pause_handler(event):
            paused.set()
            await release.wait()

        emitter.on(PayrollRunChunkCompleted, pause_after_first_chunk)
        emitter.on(PayrollRunPaused, slow_pause_handler)

        await orchestrator.start_calculation(tenant.id, march_run.id)
        await asyncio.wait_for(paused.wait(), timeout=10)

        # The paused execution is still delivering its event
        assert runner.is_running(str(march_run.id))
        state = await orchestrator.resume(tenant.id, march_run.id)
        assert state.run_status == "calculating"

        release.set()
        await asyncio.wait_for(runner.drain(), timeout=10)

        run = await load_run(session_factory, march_run.id)
        assert run.status == "calculated"
        assert run.employee_count == 5
        assert len(await load_items(session_factory, march_run.id)) == 5

    async def test_cannot_pause_draft(self, orchestrator, tenant, march_run):
        with pytest.raises(InvalidTransitionError):
            await orchestrator.request_pause(tenant.id, march_run.id)

    async def test_cannot_resume_unpaused(
        self, orchestrator, task_runner, tenant, employee, march_run
    ):
        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.resume(tenant.id, march_run.id)


class TestConcurrency:
    """Conflicting triggers and overlapping periods."""

    async def test_duplicate_period(self, session_factory, tenant, march_run):
        with pytest.raises(ConcurrencyConflictError):
            await create_run(session_factory, tenant.id)

    async def test_start_twice(self, orchestrator, tenant, employee, march_run):
        await orchestrator.start_calculation(tenant.id, march_run.id)

        with pytest.raises(ConcurrencyConflictError):
            await orchestrator.start_calculation(tenant.id, march_run.id)

    async def test_recover_interrupted_run(
        self, orchestrator, session_factory, emitter, settings, tenant, employees, march_run
    ):
        # Submitted but never executed: the process died
        await orchestrator.start_calculation(tenant.id, march_run.id)

        runner = DeferredTaskRunner()
        restarted = PayrollRunOrchestrator(
            session_factory, runner, emitter=emitter, settings=settings
        )
        assert await restarted.recover_interrupted_runs() == 1
        await runner.drain()

        run = await load_run(session_factory, march_run.id)
        assert run.status == "calculated"
        assert run.employee_count == 5


class TestFailures:
    async def test_missing_country_configuration(
        self, orchestrator, emitter, session_factory, tenant
    ):
        failed = []
        emitter.on(PayrollRunFailed, failed.append)
        async with session_factory() as session:
            run = PayrollRun(
                tenant_id=tenant.id,
                run_number="PAY-2024-03",
                country_code="SN",
                period_start=MARCH_START,
                period_end=MARCH_END,
                payment_date=date(2024, 3, 29),
            )
            session.add(run)
            await session.commit()

        with pytest.raises(ConfigurationError):
            await orchestrator.start_calculation(tenant.id, run.id)

        stored = await load_run(session_factory, run.id)
        assert stored.status == "failed"
        assert "SN" in stored.failure_reason
        assert failed[0].error_code == "CONFIGURATION_ERROR"

    async def test_transient_failure_retried(
        self, orchestrator, task_runner, session_factory, tenant, employees, march_run, monkeypatch
    ):
        original = orchestrator._process_chunk
        calls = {"count": 0}

        async def flaky(*args, **kwargs):
            calls["count"] += 1
            if calls["count"] == 2:
                raise RuntimeError("connection reset")
            return await original(*args, **kwargs)

        monkeypatch.setattr(orchestrator, "_process_chunk", flaky)

        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        run = await load_run(session_factory, march_run.id)
        assert run.status == "calculated"
        assert run.employee_count == 5
        # Chunk 0 checkpointed before the failure, so chunk 1 is retried alone
        assert calls["count"] == 4

    async def test_retries_exhausted(
        self, orchestrator, task_runner, session_factory, tenant, employees, march_run, monkeypatch
    ):
        async def broken(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(orchestrator, "_process_chunk", broken)

        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        run = await load_run(session_factory, march_run.id)
        assert run.status == "failed"
        assert run.failure_reason == "database unavailable"

        # Failed runs can be retried
        monkeypatch.undo()
        await calculate(orchestrator, task_runner, tenant.id, march_run.id)
        run = await load_run(session_factory, march_run.id)
        assert run.status == "calculated"


class TestPaidRun:
    """Approval, payment, ACP recording and immutability."""

    async def pay(self, session_factory, emitter, tenant, run_id):
        async with session_factory() as session:
            service = PayrollRunService(session, emitter)
            await service.approve_run(tenant.id, run_id, actor_id="rh-001")
            await session.commit()
        async with session_factory() as session:
            service = PayrollRunService(session, emitter)
            await service.mark_paid(tenant.id, run_id, actor_id="rh-001")
            await session.commit()

    async def test_acp_paid_through_run(
        self, orchestrator, task_runner, emitter, session_factory, tenant, march_run
    ):
        employee = await add_employee(
            session_factory,
            tenant,
            "E010",
            hire_date=date(2019, 3, 1),
            acp_payment_date=date(2024, 3, 15),
            acp_payment_active=True,
        )
        async with session_factory() as session:
            session.add(
                TimeOffRequest(
                    tenant_id=tenant.id,
                    employee_id=employee.id,
                    start_date=date(2024, 2, 5),
                    end_date=date(2024, 2, 16),
                    total_days=Decimal("10"),
                    status="approved",
                )
            )
            await session.commit()

        await calculate(orchestrator, task_runner, tenant.id, march_run.id)

        (item,) = await load_items(session_factory, march_run.id)
        # 10 leave days + 1 seniority day at 300,000 / 30
        assert item.acp_amount == Decimal("110000")
        components = {c["code"]: Decimal(c["amount"]) for c in item.components}
        assert components["21"] == Decimal("15000")
        assert components["ACP"] == Decimal("110000")
        assert item.gross_salary == Decimal("425000")
        assert item.acp_detail["seniority_bonus_days"] == 1

        await self.pay(session_factory, emitter, tenant, march_run.id)

        async with session_factory() as session:
            record = (
                await session.execute(
                    select(AcpPaymentRecord).where(AcpPaymentRecord.employee_id == employee.id)
                )
            ).scalar_one()
            stored = await session.get(Employee, employee.id)
        assert record.acp_amount == Decimal("110000")
        assert record.payment_date == date(2024, 3, 15)
        assert record.seniority_bonus_days == 1
        assert stored.acp_payment_active is False
        assert stored.acp_payment_date is None
        assert stored.acp_last_paid_at == date(2024, 3, 15)

    async def test_paid_results_are_immutable(
        self, orchestrator, task_runner, emitter, session_factory, tenant, employee, march_run
    ):
        await calculate(orchestrator, task_runner, tenant.id, march_run.id)
        await self.pay(session_factory, emitter, tenant, march_run.id)

        async with session_factory() as session:
            item = (
                await session.execute(
                    select(PayrollLineItem).where(PayrollLineItem.payroll_run_id == march_run.id)
                )
            ).scalar_one()
            await session.get(PayrollRun, march_run.id)
            item.net_salary = Decimal("1")
            with pytest.raises(ImmutabilityViolationError):
                await session.flush()
            await session.rollback()

        with pytest.raises(ImmutabilityViolationError):
            await orchestrator.start_calculation(tenant.id, march_run.id)
        with pytest.raises(ImmutabilityViolationError):
            await orchestrator.recalculate_employee(tenant.id, march_run.id, employee.id)
        async with session_factory() as session:
            with pytest.raises(ImmutabilityViolationError):
                await PayrollRunService(session).mark_paid(tenant.id, march_run.id)

    async def test_approved_run_cannot_be_recalculated(
        self, orchestrator, task_runner, session_factory, tenant, employee, march_run
    ):
        await calculate(orchestrator, task_runner, tenant.id, march_run.id)
        async with session_factory() as session:
            await PayrollRunService(session).approve_run(tenant.id, march_run.id)
            await session.commit()

        with pytest.raises(InvalidTransitionError):
            await orchestrator.start_calculation(tenant.id, march_run.id)
