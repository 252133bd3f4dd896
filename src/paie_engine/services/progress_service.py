"""Progress reporting for payroll run calculations.

Reads are side-effect free. If the progress row of a run is missing (lost
or never written), the state is rebuilt from persisted line items and the
error log instead of failing the read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from paie_engine.exceptions import NotFoundError
from paie_engine.models import PayrollLineItem, PayrollRun, RunError, RunProgress
from paie_engine.services.state_machine import PayrollRunStatus, ProgressStatus

_STATUS_BY_RUN = {
    PayrollRunStatus.DRAFT.value: ProgressStatus.PENDING.value,
    PayrollRunStatus.CALCULATING.value: ProgressStatus.PROCESSING.value,
    PayrollRunStatus.PAUSED.value: ProgressStatus.PAUSED.value,
    PayrollRunStatus.CALCULATED.value: ProgressStatus.COMPLETED.value,
    PayrollRunStatus.APPROVED.value: ProgressStatus.COMPLETED.value,
    PayrollRunStatus.PAID.value: ProgressStatus.COMPLETED.value,
    PayrollRunStatus.FAILED.value: ProgressStatus.FAILED.value,
}


@dataclass(frozen=True)
class RunErrorEntry:
    employee_id: UUID | None
    employee_number: str | None
    error_code: str
    message: str
    chunk_index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "employee_id": str(self.employee_id) if self.employee_id else None,
            "employee_number": self.employee_number,
            "error_code": self.error_code,
            "message": self.message,
            "chunk_index": self.chunk_index,
        }


@dataclass
class RunProgressState:
    """What a poller sees for one run."""

    payroll_run_id: UUID
    run_status: str
    status: str
    attempt: int
    total_employees: int
    processed_count: int
    success_count: int
    error_count: int
    current_chunk: int
    total_chunks: int
    completion_status: str | None = None
    failure_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    errors: list[RunErrorEntry] = field(default_factory=list)

    @property
    def percent_complete(self) -> Decimal:
        if self.total_employees == 0:
            return Decimal("100") if self.status == ProgressStatus.COMPLETED.value else Decimal("0")
        return (Decimal(self.processed_count) * 100 / Decimal(self.total_employees)).quantize(
            Decimal("0.1")
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (ProgressStatus.COMPLETED.value, ProgressStatus.FAILED.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payroll_run_id": str(self.payroll_run_id),
            "run_status": self.run_status,
            "status": self.status,
            "attempt": self.attempt,
            "total_employees": self.total_employees,
            "processed_count": self.processed_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "current_chunk": self.current_chunk,
            "total_chunks": self.total_chunks,
            "percent_complete": str(self.percent_complete),
            "completion_status": self.completion_status,
            "failure_reason": self.failure_reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "errors": [e.to_dict() for e in self.errors],
        }


class ProgressService:
    """Read-only view of run progress."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_progress(self, tenant_id: UUID, run_id: UUID) -> RunProgressState:
        run = await self.session.get(PayrollRun, run_id)
        if run is None or run.tenant_id != tenant_id:
            raise NotFoundError("PayrollRun", run_id)

        progress = await self.session.get(RunProgress, run_id)
        errors = await self._errors(run_id, run.attempt)
        if progress is None:
            return await self._rebuild(run, errors)

        return RunProgressState(
            payroll_run_id=run.id,
            run_status=run.status,
            status=progress.status,
            attempt=progress.attempt,
            total_employees=progress.total_employees,
            processed_count=progress.processed_count,
            success_count=progress.success_count,
            error_count=progress.error_count,
            current_chunk=progress.current_chunk,
            total_chunks=progress.total_chunks,
            completion_status=run.completion_status,
            failure_reason=run.failure_reason,
            started_at=progress.started_at,
            completed_at=progress.completed_at,
            updated_at=progress.updated_at,
            errors=errors,
        )

    async def _rebuild(self, run: PayrollRun, errors: list[RunErrorEntry]) -> RunProgressState:
        result = await self.session.execute(
            select(func.count())
            .select_from(PayrollLineItem)
            .where(PayrollLineItem.payroll_run_id == run.id)
        )
        success = result.scalar_one()
        processed = success + len(errors)
        return RunProgressState(
            payroll_run_id=run.id,
            run_status=run.status,
            status=_STATUS_BY_RUN.get(run.status, ProgressStatus.PENDING.value),
            attempt=run.attempt,
            total_employees=max(run.employee_count + len(errors), processed),
            processed_count=processed,
            success_count=success,
            error_count=len(errors),
            current_chunk=0,
            total_chunks=0,
            completion_status=run.completion_status,
            failure_reason=run.failure_reason,
            updated_at=run.updated_at,
            errors=errors,
        )

    async def _errors(self, run_id: UUID, attempt: int) -> list[RunErrorEntry]:
        result = await self.session.execute(
            select(RunError)
            .where(RunError.payroll_run_id == run_id, RunError.attempt == attempt)
            .order_by(RunError.chunk_index, RunError.employee_number)
        )
        return [
            RunErrorEntry(
                employee_id=e.employee_id,
                employee_number=e.employee_number,
                error_code=e.error_code,
                message=e.message,
                chunk_index=e.chunk_index,
            )
            for e in result.scalars().all()
        ]
