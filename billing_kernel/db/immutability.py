"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Two kinds of rows in the billing store are facts, not state:

  ChangeRecord   - who changed which customer fact, when, and through which
                   channel.  A legal/financial record.
  PaymentEvent   - money that arrived (or failed to).  Waterfall allocation
                   is recomputed from these on every read.

Neither may ever be updated or deleted.  Payment milestones are never edited
in place either: a schedule is replaced wholesale by regeneration, which the
ScheduleService only permits while no money is allocated to it.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners below intercept them and raise
ImmutabilityViolationError, which aborts the flush:

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_*_delete() --------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
USAGE
===============================================================================

    from billing_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY - e.g. simulating tampering):

    unregister_immutability_listeners()
    ...
    register_immutability_listeners()
"""

from sqlalchemy import event

from billing_kernel.exceptions import ImmutabilityViolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_change_record_immutability(mapper, connection, target):
    """Change records are immutable once written."""
    _block(
        "ChangeRecord", target, "UPDATE",
        "Change records are immutable and cannot be modified",
    )


def _check_change_record_delete(mapper, connection, target):
    _block("ChangeRecord", target, "DELETE", "Change records cannot be deleted")


def _check_payment_event_immutability(mapper, connection, target):
    """Payment events are append-only facts."""
    _block(
        "PaymentEvent", target, "UPDATE",
        "Payment events are append-only and cannot be modified",
    )


def _check_payment_event_delete(mapper, connection, target):
    _block("PaymentEvent", target, "DELETE", "Payment events cannot be deleted")


def _check_milestone_immutability(mapper, connection, target):
    """Milestones are replaced by regeneration, never edited in place."""
    _block(
        "PaymentMilestone", target, "UPDATE",
        "Payment milestones cannot be edited; regenerate the schedule instead",
    )


def _listeners():
    from billing_kernel.models.change_record import ChangeRecord
    from billing_kernel.models.payment import PaymentEvent
    from billing_kernel.models.schedule import PaymentMilestone

    return (
        (ChangeRecord, "before_update", _check_change_record_immutability),
        (ChangeRecord, "before_delete", _check_change_record_delete),
        (PaymentEvent, "before_update", _check_payment_event_immutability),
        (PaymentEvent, "before_delete", _check_payment_event_delete),
        (PaymentMilestone, "before_update", _check_milestone_immutability),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call this after all models are imported but before any database
    operations begin.  Safe to call more than once.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
