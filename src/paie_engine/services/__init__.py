"""Business logic services."""

from paie_engine.services.acp_service import AcpLeaveApprovalHandler, AcpService
from paie_engine.services.orchestrator import EmployeeRecalculation, PayrollRunOrchestrator
from paie_engine.services.payroll_run_service import PayrollRunService
from paie_engine.services.progress_service import ProgressService, RunProgressState
from paie_engine.services.state_machine import (
    CompletionStatus,
    InvalidTransitionError,
    PayrollRunStateMachine,
    PayrollRunStatus,
    ProgressStatus,
)
from paie_engine.services.task_runner import BackgroundTaskRunner, DeferredTaskRunner

__all__ = [
    "AcpLeaveApprovalHandler",
    "AcpService",
    "BackgroundTaskRunner",
    "CompletionStatus",
    "DeferredTaskRunner",
    "EmployeeRecalculation",
    "InvalidTransitionError",
    "PayrollRunOrchestrator",
    "PayrollRunService",
    "PayrollRunStateMachine",
    "PayrollRunStatus",
    "ProgressService",
    "ProgressStatus",
    "RunProgressState",
]
