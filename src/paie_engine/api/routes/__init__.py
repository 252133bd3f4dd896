"""API routes."""

from paie_engine.api.routes.acp import router as acp_router
from paie_engine.api.routes.health import router as health_router
from paie_engine.api.routes.payroll_runs import router as payroll_runs_router
from paie_engine.api.routes.policies import router as policies_router

__all__ = ["acp_router", "health_router", "payroll_runs_router", "policies_router"]
