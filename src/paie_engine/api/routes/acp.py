"""ACP (paid-leave indemnity) API endpoints."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from paie_engine.api.dependencies import Caller, DbSession, Emitter, TenantId
from paie_engine.api.schemas import (
    AcpPaymentUpdate,
    AcpPreviewResponse,
    EmployeeAcpResponse,
    ErrorResponse,
    LeaveApprovalNotice,
)
from paie_engine.events.types import EventMetadata, LeaveRequestApproved
from paie_engine.services.acp_service import AcpService

router = APIRouter(tags=["acp"])


@router.get(
    "/employees/{employee_id}/acp-preview",
    response_model=AcpPreviewResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def preview_acp(
    db: DbSession,
    tenant_id: TenantId,
    employee_id: UUID,
    as_of: date = Query(description="Planned ACP payment date"),
) -> AcpPreviewResponse:
    """Read-only ACP computation; nothing is persisted."""
    preview = await AcpService(db).preview(tenant_id, employee_id, as_of)
    return AcpPreviewResponse.model_validate(preview.to_dict())


@router.put(
    "/employees/{employee_id}/acp-payment",
    response_model=EmployeeAcpResponse,
    responses={404: {"model": ErrorResponse}},
)
async def set_acp_payment(
    db: DbSession,
    tenant_id: TenantId,
    employee_id: UUID,
    payload: AcpPaymentUpdate,
) -> EmployeeAcpResponse:
    employee = await AcpService(db).set_payment_date(
        tenant_id,
        employee_id,
        payment_date=payload.payment_date,
        active=payload.active,
        notes=payload.notes,
    )
    await db.commit()
    return EmployeeAcpResponse.model_validate(employee)


@router.get("/acp/scheduled", response_model=list[EmployeeAcpResponse])
async def list_scheduled_acp(db: DbSession, tenant_id: TenantId) -> list[EmployeeAcpResponse]:
    employees = await AcpService(db).list_scheduled(tenant_id)
    return [EmployeeAcpResponse.model_validate(e) for e in employees]


@router.post(
    "/leave-requests/{request_id}/approved",
    status_code=status.HTTP_202_ACCEPTED,
)
async def leave_request_approved(
    tenant_id: TenantId,
    caller: Caller,
    emitter: Emitter,
    request_id: UUID,
    payload: LeaveApprovalNotice,
) -> dict[str, str]:
    """Entry point for the time-off workflow; triggers an ACP preview."""
    await emitter.emit(
        LeaveRequestApproved(
            metadata=EventMetadata.create(
                tenant_id=tenant_id,
                actor_id=caller.actor_id,
                actor_type="user" if caller.actor_id else "system",
                source_service="time_off",
            ),
            time_off_request_id=request_id,
            employee_id=payload.employee_id,
            start_date=payload.start_date,
            end_date=payload.end_date,
        )
    )
    return {"status": "accepted"}
