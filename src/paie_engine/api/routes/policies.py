"""Policy table endpoints: overtime rates and contribution definitions."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query

from paie_engine.api.dependencies import DbSession
from paie_engine.api.schemas import (
    ErrorResponse,
    OvertimeRateResponse,
    OvertimeRateUpdate,
    RateDefinitionResponse,
)
from paie_engine.calculators.policy_provider import PolicyProvider

router = APIRouter(prefix="/policies", tags=["policies"])


@router.get("/{country_code}/overtime-rates", response_model=list[OvertimeRateResponse])
async def list_overtime_rates(
    db: DbSession,
    country_code: str,
    as_of: date | None = Query(default=None),
) -> list[OvertimeRateResponse]:
    rates = await PolicyProvider(db).list_overtime_rates(
        country_code.upper(), as_of or date.today()
    )
    return [OvertimeRateResponse.model_validate(r) for r in rates]


@router.patch(
    "/overtime-rates/{rate_id}",
    response_model=OvertimeRateResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def update_overtime_rate(
    db: DbSession,
    rate_id: UUID,
    payload: OvertimeRateUpdate,
) -> OvertimeRateResponse:
    """Change a tenant-editable multiplier. Locked rates are refused."""
    rate = await PolicyProvider(db).update_overtime_rate(rate_id, payload.rate_multiplier)
    await db.commit()
    return OvertimeRateResponse.model_validate(rate)


@router.get("/{country_code}/rate-definitions", response_model=list[RateDefinitionResponse])
async def list_rate_definitions(
    db: DbSession,
    country_code: str,
    as_of: date | None = Query(default=None),
) -> list[RateDefinitionResponse]:
    definitions = await PolicyProvider(db).get_rate_definitions(
        country_code.upper(), as_of or date.today()
    )
    return [RateDefinitionResponse.model_validate(d) for d in definitions]
