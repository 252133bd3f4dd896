"""Domain event types for payroll runs and leave.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Traceable via metadata
- Serializable for notification collaborators
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    PAYROLL_RUN = "payroll_run"
    LEAVE = "leave"
    ACP = "acp"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    tenant_id: UUID
    correlation_id: UUID  # Links related events
    actor_id: str | None  # Opaque caller identity
    actor_type: str  # 'user', 'system', 'scheduler'
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        tenant_id: UUID,
        correlation_id: UUID | None = None,
        actor_id: str | None = None,
        actor_type: str = "system",
        source_service: str = "paie_engine",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            tenant_id=tenant_id,
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            actor_type=actor_type,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = _serialize(asdict(self))
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def _serialize(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_serialize(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Payroll Run Events
# =============================================================================


@dataclass(frozen=True)
class PayrollRunStarted(DomainEvent):
    """Calculation of a run was triggered."""

    payroll_run_id: UUID
    attempt: int
    total_employees: int
    policy_fingerprint: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYROLL_RUN


@dataclass(frozen=True)
class PayrollRunChunkCompleted(DomainEvent):
    """A chunk was processed and checkpointed."""

    payroll_run_id: UUID
    chunk_index: int
    total_chunks: int
    processed_count: int
    error_count: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYROLL_RUN


@dataclass(frozen=True)
class PayrollRunCompleted(DomainEvent):
    """All employees were processed."""

    payroll_run_id: UUID
    completion_status: str  # 'completed' or 'completed_with_errors'
    success_count: int
    error_count: int
    total_net: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYROLL_RUN


@dataclass(frozen=True)
class PayrollRunFailed(DomainEvent):
    """The run aborted on a run-level error."""

    payroll_run_id: UUID
    error_code: str
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYROLL_RUN


@dataclass(frozen=True)
class PayrollRunPaused(DomainEvent):
    payroll_run_id: UUID
    completed_chunks: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYROLL_RUN


@dataclass(frozen=True)
class PayrollRunApproved(DomainEvent):
    payroll_run_id: UUID
    approved_by: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYROLL_RUN


@dataclass(frozen=True)
class PayrollRunPaid(DomainEvent):
    payroll_run_id: UUID
    acp_payments: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYROLL_RUN


# =============================================================================
# Leave / ACP Events
# =============================================================================


@dataclass(frozen=True)
class LeaveRequestApproved(DomainEvent):
    """Published by the time-off workflow when a leave request is approved."""

    time_off_request_id: UUID
    employee_id: UUID
    start_date: date
    end_date: date

    @property
    def category(self) -> EventCategory:
        return EventCategory.LEAVE


@dataclass(frozen=True)
class AcpPreviewComputed(DomainEvent):
    """An ACP preview is available for an approved leave."""

    employee_id: UUID
    time_off_request_id: UUID | None
    payment_date: date
    acp_amount: Decimal
    warnings: tuple[str, ...]

    @property
    def category(self) -> EventCategory:
        return EventCategory.ACP
