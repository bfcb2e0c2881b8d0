"""
billing_services -- Package init and public API.

Responsibility:
    Stateful services that compose the pure billing engines with database
    sessions and the clock.  This is the only layer that holds sessions or
    reads wall-clock time.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        billing_services/ -> billing_engines/  (allowed)
        billing_services/ -> billing_kernel/   (allowed)
        billing_engines/  -> billing_services/ (FORBIDDEN)
        billing_kernel/   -> billing_services/ (FORBIDDEN)

Invariants enforced:
    - No service calls ``session.commit()``; callers wrap work in
      ``billing_kernel.db.session_scope()``.
"""

from billing_kernel.logging_config import get_logger

logger = get_logger("services")

from billing_services.change_audit_service import (
    ChangeAuditService,
    ChangeHistory,
    ChangeHistoryEntry,
    CustomerNote,
)
from billing_services.line_item_service import LineItemService
from billing_services.schedule_service import PaymentSummary, ScheduleService

__all__ = [
    "ChangeAuditService",
    "ChangeHistory",
    "ChangeHistoryEntry",
    "CustomerNote",
    "LineItemService",
    "PaymentSummary",
    "ScheduleService",
]
