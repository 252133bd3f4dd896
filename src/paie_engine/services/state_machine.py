"""Payroll run state machine with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from paie_engine.exceptions import PayrollEngineError

if TYPE_CHECKING:
    from paie_engine.models import PayrollRun


class PayrollRunStatus(str, Enum):
    """Payroll run status values."""

    DRAFT = "draft"
    CALCULATING = "calculating"
    PAUSED = "paused"
    CALCULATED = "calculated"
    APPROVED = "approved"
    PAID = "paid"
    FAILED = "failed"


class CompletionStatus(str, Enum):
    """Sub-status of a calculated run."""

    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"


class ProgressStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class InvalidTransitionError(PayrollEngineError):
    """Raised when an invalid state transition is attempted."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PayrollRunStateMachine:
    """State machine for payroll run status transitions.

    Allowed transitions:
    - draft → calculating
    - calculating → calculated | failed | paused
    - paused → calculating (resume)
    - calculated → calculating (recalculate) | approved
    - failed → calculating (retry)
    - approved → paid
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayrollRunStatus.DRAFT: [PayrollRunStatus.CALCULATING],
        PayrollRunStatus.CALCULATING: [
            PayrollRunStatus.CALCULATED,
            PayrollRunStatus.FAILED,
            PayrollRunStatus.PAUSED,
        ],
        PayrollRunStatus.PAUSED: [PayrollRunStatus.CALCULATING],
        PayrollRunStatus.CALCULATED: [
            PayrollRunStatus.CALCULATING,
            PayrollRunStatus.APPROVED,
        ],
        PayrollRunStatus.FAILED: [PayrollRunStatus.CALCULATING],
        PayrollRunStatus.APPROVED: [PayrollRunStatus.PAID],
        PayrollRunStatus.PAID: [],  # Terminal state
    }

    # Statuses from which a fresh calculation attempt may start
    CALCULATION_ALLOWED = {
        PayrollRunStatus.DRAFT,
        PayrollRunStatus.CALCULATED,
        PayrollRunStatus.FAILED,
    }

    # Statuses that already hold a result for the period
    OCCUPIES_PERIOD = {
        PayrollRunStatus.CALCULATING,
        PayrollRunStatus.PAUSED,
        PayrollRunStatus.CALCULATED,
        PayrollRunStatus.APPROVED,
        PayrollRunStatus.PAID,
    }

    # Statuses where line items can be listed for payslips
    LINE_ITEMS_READABLE = {
        PayrollRunStatus.CALCULATED,
        PayrollRunStatus.APPROVED,
        PayrollRunStatus.PAID,
    }

    RESULTS_IMMUTABLE = {PayrollRunStatus.PAID}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_calculate(cls, status: str) -> bool:
        return status in cls.CALCULATION_ALLOWED

    @classmethod
    def are_results_immutable(cls, status: str) -> bool:
        return status in cls.RESULTS_IMMUTABLE

    @classmethod
    def can_list_line_items(cls, status: str) -> bool:
        return status in cls.LINE_ITEMS_READABLE

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def validate_run_for_transition(cls, run: PayrollRun, to_status: str) -> list[str]:
        """Validate a run for a specific transition, returning any errors."""
        errors: list[str] = []
        if not cls.can_transition(run.status, to_status):
            errors.append(f"Cannot transition from '{run.status}' to '{to_status}'")
            return errors

        if to_status == PayrollRunStatus.APPROVED and run.employee_count == 0:
            errors.append("Payroll run has no calculated employees")

        return errors
