"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paie_engine.api.routes import acp_router, health_router, payroll_runs_router, policies_router
from paie_engine.config import Settings, get_settings
from paie_engine.database import dispose_db, init_db
from paie_engine.events.emitter import AsyncEventEmitter
from paie_engine.events.types import LeaveRequestApproved
from paie_engine.exceptions import PayrollEngineError
from paie_engine.services.acp_service import AcpLeaveApprovalHandler
from paie_engine.services.orchestrator import PayrollRunOrchestrator
from paie_engine.services.task_runner import BackgroundTaskRunner, TaskRunner

logger = logging.getLogger(__name__)

# Error code → HTTP status
STATUS_BY_CODE = {
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "CONCURRENCY_CONFLICT": status.HTTP_409_CONFLICT,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "IMMUTABILITY_VIOLATION": status.HTTP_409_CONFLICT,
    "POLICY_VIOLATION": status.HTTP_409_CONFLICT,
    "VALIDATION_ERROR": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "CONFIGURATION_ERROR": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup: pick up runs interrupted by a previous process
    recovered = await app.state.orchestrator.recover_interrupted_runs()
    if recovered:
        logger.info("payroll_runs_recovered", extra={"count": recovered})
    yield
    # Shutdown
    runner = app.state.task_runner
    if isinstance(runner, BackgroundTaskRunner):
        await runner.shutdown()
    if app.state.owns_database:
        await dispose_db()


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    task_runner: TaskRunner | None = None,
    emitter: AsyncEventEmitter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    app = FastAPI(
        title="Paie Engine API",
        description="Payroll calculation and run orchestration for Côte d'Ivoire",
        version=settings.engine_version,
        lifespan=lifespan,
    )

    owns_database = session_factory is None
    if session_factory is None:
        _, session_factory = init_db()
    emitter = emitter or AsyncEventEmitter()
    task_runner = task_runner or BackgroundTaskRunner()
    emitter.on(LeaveRequestApproved, AcpLeaveApprovalHandler(session_factory, emitter))

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.owns_database = owns_database
    app.state.emitter = emitter
    app.state.task_runner = task_runner
    app.state.orchestrator = PayrollRunOrchestrator(
        session_factory, task_runner, emitter=emitter, settings=settings
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(PayrollEngineError)
    async def engine_error_handler(request: Request, exc: PayrollEngineError) -> JSONResponse:
        """Map engine errors to HTTP statuses by their stable code."""
        return JSONResponse(
            status_code=STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST),
            content={"code": exc.code, "detail": exc.message},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payroll_runs_router, prefix="/api/v1")
    app.include_router(acp_router, prefix="/api/v1")
    app.include_router(policies_router, prefix="/api/v1")

    return app
