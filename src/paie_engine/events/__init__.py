"""Domain events and the emitter notification collaborators subscribe to."""

from paie_engine.events.emitter import AsyncEventEmitter
from paie_engine.events.types import (
    AcpPreviewComputed,
    DomainEvent,
    EventCategory,
    EventMetadata,
    LeaveRequestApproved,
    PayrollRunApproved,
    PayrollRunChunkCompleted,
    PayrollRunCompleted,
    PayrollRunFailed,
    PayrollRunPaid,
    PayrollRunPaused,
    PayrollRunStarted,
)

__all__ = [
    "AcpPreviewComputed",
    "AsyncEventEmitter",
    "DomainEvent",
    "EventCategory",
    "EventMetadata",
    "LeaveRequestApproved",
    "PayrollRunApproved",
    "PayrollRunChunkCompleted",
    "PayrollRunCompleted",
    "PayrollRunFailed",
    "PayrollRunPaid",
    "PayrollRunPaused",
    "PayrollRunStarted",
]
