"""Exception hierarchy for the payroll engine.

Every error carries a stable ``code`` so callers (API handlers, progress
error logs, event consumers) can branch on it without parsing messages.

Run-level errors (configuration, concurrency) abort or reject a run.
Per-employee errors (validation) are recorded and the run continues.
Eligibility issues are not errors at all; see ``EligibilityWarning``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any
from uuid import UUID


class PayrollEngineError(Exception):
    """Base exception for all payroll engine errors."""

    code: str = "PAYROLL_ENGINE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ConfigurationError(PayrollEngineError):
    """Missing or inactive rate table or policy for a country and date."""

    code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        detail: str,
        country_code: str | None = None,
        as_of: date | None = None,
    ):
        self.country_code = country_code
        self.as_of = as_of
        msg = detail
        if country_code:
            msg += f" (country={country_code}"
            if as_of:
                msg += f", as_of={as_of.isoformat()}"
            msg += ")"
        super().__init__(msg)


class ValidationError(PayrollEngineError):
    """Malformed employee compensation or attendance data."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, employee_id: UUID | None = None):
        self.employee_id = employee_id
        super().__init__(message)


class NotFoundError(PayrollEngineError):
    """Requested entity does not exist for this tenant."""

    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class ConcurrencyConflictError(PayrollEngineError):
    """A run collides with another one for the same tenant and period."""

    code = "CONCURRENCY_CONFLICT"

    def __init__(self, message: str, conflicting_run_id: UUID | None = None):
        self.conflicting_run_id = conflicting_run_id
        super().__init__(message)


class ImmutabilityViolationError(PayrollEngineError):
    """Attempt to mutate a record that is frozen."""

    code = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: Any, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"{entity_type} {entity_id} is immutable: {reason}")


class PolicyViolationError(ImmutabilityViolationError):
    """Override of a rate governed by a collective agreement or legal minimum."""

    code = "POLICY_VIOLATION"


@dataclass(frozen=True)
class EligibilityWarning:
    """Non-blocking warning attached to a calculation result."""

    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}
