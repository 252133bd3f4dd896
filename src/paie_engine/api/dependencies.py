"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from paie_engine.events.emitter import AsyncEventEmitter
from paie_engine.services.orchestrator import PayrollRunOrchestrator


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_tenant_id(x_tenant_id: Annotated[str | None, Header()] = None) -> UUID:
    """Extract tenant ID from header."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    try:
        return UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Tenant-ID format",
        )


@dataclass(frozen=True)
class CallerContext:
    """Opaque caller identity forwarded by the gateway."""

    actor_id: str | None
    role: str | None


async def get_caller(
    x_actor_id: Annotated[str | None, Header()] = None,
    x_actor_role: Annotated[str | None, Header()] = None,
) -> CallerContext:
    return CallerContext(actor_id=x_actor_id, role=x_actor_role)


def get_orchestrator(request: Request) -> PayrollRunOrchestrator:
    return request.app.state.orchestrator


def get_emitter(request: Request) -> AsyncEventEmitter:
    return request.app.state.emitter


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
TenantId = Annotated[UUID, Depends(get_tenant_id)]
Caller = Annotated[CallerContext, Depends(get_caller)]
Orchestrator = Annotated[PayrollRunOrchestrator, Depends(get_orchestrator)]
Emitter = Annotated[AsyncEventEmitter, Depends(get_emitter)]
