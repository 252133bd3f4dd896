"""Payroll run API endpoints."""

from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from paie_engine.api.dependencies import Caller, DbSession, Emitter, Orchestrator, TenantId
from paie_engine.api.schemas import (
    ErrorResponse,
    LineItemListResponse,
    LineItemResponse,
    PayrollRunCreate,
    PayrollRunListResponse,
    PayrollRunResponse,
    ProgressResponse,
    RecalculationResponse,
)
from paie_engine.services.payroll_run_service import PayrollRunService
from paie_engine.services.progress_service import ProgressService, RunProgressState

router = APIRouter(prefix="/payroll-runs", tags=["payroll-runs"])

RunId = Path(description="Payroll run ID")


def _progress(state: RunProgressState) -> ProgressResponse:
    return ProgressResponse.model_validate(state.to_dict())


# ============================================================================
# Payroll run CRUD
# ============================================================================


@router.post(
    "",
    response_model=PayrollRunResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def create_payroll_run(
    db: DbSession,
    tenant_id: TenantId,
    caller: Caller,
    payload: PayrollRunCreate,
) -> PayrollRunResponse:
    """Create a new payroll run in draft status."""
    run = await PayrollRunService(db).create_run(
        tenant_id,
        period_start=payload.period_start,
        period_end=payload.period_end,
        payment_date=payload.payment_date,
        country_code=payload.country_code,
        actor_id=caller.actor_id,
    )
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.get("", response_model=PayrollRunListResponse)
async def list_payroll_runs(
    db: DbSession,
    tenant_id: TenantId,
    status_filter: str | None = Query(default=None, alias="status"),
) -> PayrollRunListResponse:
    runs = await PayrollRunService(db).list_runs(tenant_id, status=status_filter)
    return PayrollRunListResponse(
        items=[PayrollRunResponse.model_validate(r) for r in runs],
        total=len(runs),
    )


@router.get(
    "/{run_id}",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_payroll_run(
    db: DbSession,
    tenant_id: TenantId,
    run_id: UUID = RunId,
) -> PayrollRunResponse:
    run = await PayrollRunService(db).get_run(tenant_id, run_id)
    return PayrollRunResponse.model_validate(run)


# ============================================================================
# Calculation
# ============================================================================


@router.post(
    "/{run_id}/calculate",
    response_model=ProgressResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def calculate_payroll_run(
    tenant_id: TenantId,
    caller: Caller,
    orchestrator: Orchestrator,
    run_id: UUID = RunId,
) -> ProgressResponse:
    """Start calculation in the background; poll progress for the outcome."""
    state = await orchestrator.start_calculation(tenant_id, run_id, actor_id=caller.actor_id)
    return _progress(state)


@router.get(
    "/{run_id}/progress",
    response_model=ProgressResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_progress(
    db: DbSession,
    tenant_id: TenantId,
    run_id: UUID = RunId,
) -> ProgressResponse:
    state = await ProgressService(db).get_progress(tenant_id, run_id)
    return _progress(state)


@router.post("/{run_id}/pause", response_model=ProgressResponse)
async def pause_payroll_run(
    tenant_id: TenantId,
    orchestrator: Orchestrator,
    run_id: UUID = RunId,
) -> ProgressResponse:
    state = await orchestrator.request_pause(tenant_id, run_id)
    return _progress(state)


@router.post(
    "/{run_id}/resume",
    response_model=ProgressResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def resume_payroll_run(
    tenant_id: TenantId,
    caller: Caller,
    orchestrator: Orchestrator,
    run_id: UUID = RunId,
) -> ProgressResponse:
    state = await orchestrator.resume(tenant_id, run_id, actor_id=caller.actor_id)
    return _progress(state)


@router.post(
    "/{run_id}/employees/{employee_id}/recalculate",
    response_model=RecalculationResponse,
)
async def recalculate_employee(
    tenant_id: TenantId,
    orchestrator: Orchestrator,
    employee_id: UUID,
    run_id: UUID = RunId,
) -> RecalculationResponse:
    result = await orchestrator.recalculate_employee(tenant_id, run_id, employee_id)
    return RecalculationResponse.model_validate(result.to_dict())


# ============================================================================
# Approval and payment
# ============================================================================


@router.post("/{run_id}/approve", response_model=PayrollRunResponse)
async def approve_payroll_run(
    db: DbSession,
    tenant_id: TenantId,
    caller: Caller,
    emitter: Emitter,
    run_id: UUID = RunId,
) -> PayrollRunResponse:
    run = await PayrollRunService(db, emitter).approve_run(
        tenant_id, run_id, actor_id=caller.actor_id
    )
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.post("/{run_id}/mark-paid", response_model=PayrollRunResponse)
async def mark_payroll_run_paid(
    db: DbSession,
    tenant_id: TenantId,
    caller: Caller,
    emitter: Emitter,
    run_id: UUID = RunId,
) -> PayrollRunResponse:
    run = await PayrollRunService(db, emitter).mark_paid(
        tenant_id, run_id, actor_id=caller.actor_id
    )
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.get(
    "/{run_id}/line-items",
    response_model=LineItemListResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def list_line_items(
    db: DbSession,
    tenant_id: TenantId,
    run_id: UUID = RunId,
) -> LineItemListResponse:
    """Line items ordered by employee number, for payslip rendering."""
    items = await PayrollRunService(db).list_line_items(tenant_id, run_id)
    return LineItemListResponse(
        items=[LineItemResponse.model_validate(i) for i in items],
        total=len(items),
    )
