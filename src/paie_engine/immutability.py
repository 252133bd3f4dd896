"""ORM-level immutability enforcement.

A ``before_flush`` listener rejects, before any SQL is emitted:

- any insert, update or delete of a line item whose run was already paid;
- any update of a paid run;
- any change to a locked overtime rate;
- any change to a rate definition a run has referenced, except closing its
  open-ended validity (setting ``effective_to`` once).

The check looks at the status the run had before the current flush, so the
``approved -> paid`` transition itself (which also stamps line items) goes
through.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from paie_engine.exceptions import ImmutabilityViolationError, PolicyViolationError
from paie_engine.models import OvertimeRate, PayrollLineItem, PayrollRun, RateDefinition

logger = logging.getLogger(__name__)

PAID = "paid"
_AUDIT_FIELDS = {"updated_at"}


def _previous_value(target: Any, key: str) -> Any:
    history = inspect(target).attrs[key].history
    if history.deleted:
        return history.deleted[0]
    return getattr(target, key)


def _changed_fields(target: Any) -> list[str]:
    insp = inspect(target)
    return [
        attr.key
        for attr in insp.attrs
        if attr.key not in _AUDIT_FIELDS and attr.history.has_changes()
    ]


def _run_was_paid(session: Session, run_id: UUID) -> bool:
    run = session.get(PayrollRun, run_id)
    if run is None:
        return False
    return _previous_value(run, "status") == PAID


def _blocked(entity_type: str, entity_id: Any, reason: str) -> ImmutabilityViolationError:
    logger.error(
        "immutability_violation_blocked",
        extra={"entity_type": entity_type, "entity_id": str(entity_id), "reason": reason},
    )
    return ImmutabilityViolationError(entity_type, entity_id, reason)


def check_immutability(session: Session, flush_context: Any, instances: Any) -> None:
    for target in list(session.new):
        if isinstance(target, PayrollLineItem) and _run_was_paid(session, target.payroll_run_id):
            raise _blocked("PayrollLineItem", target.employee_id, "run is paid")

    for target in list(session.dirty):
        if not session.is_modified(target):
            continue
        if isinstance(target, PayrollLineItem):
            if _run_was_paid(session, target.payroll_run_id):
                raise _blocked("PayrollLineItem", target.id, "run is paid")
        elif isinstance(target, PayrollRun):
            if _previous_value(target, "status") == PAID and _changed_fields(target):
                raise _blocked("PayrollRun", target.id, "run is paid")
        elif isinstance(target, OvertimeRate):
            if _previous_value(target, "locked") and _changed_fields(target):
                raise PolicyViolationError(
                    "OvertimeRate", target.id, "rate is locked by collective agreement"
                )
        elif isinstance(target, RateDefinition):
            _check_rate_definition(target)

    for target in list(session.deleted):
        if isinstance(target, PayrollLineItem) and _run_was_paid(session, target.payroll_run_id):
            raise _blocked("PayrollLineItem", target.id, "run is paid")
        if isinstance(target, OvertimeRate) and target.locked:
            raise PolicyViolationError(
                "OvertimeRate", target.id, "rate is locked by collective agreement"
            )
        if isinstance(target, RateDefinition) and target.referenced_at is not None:
            raise _blocked("RateDefinition", target.id, "referenced by a payroll run")


def _check_rate_definition(target: RateDefinition) -> None:
    if _previous_value(target, "referenced_at") is None:
        return
    changed = set(_changed_fields(target))
    if changed == {"effective_to"} and _previous_value(target, "effective_to") is None:
        return
    if changed:
        raise _blocked(
            "RateDefinition",
            target.id,
            f"referenced by a payroll run, cannot change {sorted(changed)}",
        )


def register_immutability_listeners() -> None:
    """Install the flush guard on every ORM session (idempotent)."""
    if not event.contains(Session, "before_flush", check_immutability):
        event.listen(Session, "before_flush", check_immutability)


def unregister_immutability_listeners() -> None:
    if event.contains(Session, "before_flush", check_immutability):
        event.remove(Session, "before_flush", check_immutability)
