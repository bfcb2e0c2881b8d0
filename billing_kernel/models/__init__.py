"""SQLAlchemy ORM models for the billing kernel."""

from billing_kernel.models.change_record import ChangeRecord
from billing_kernel.models.line_item import LineItem, LineItemCollection
from billing_kernel.models.payment import PaymentEvent, PaymentEventStatus
from billing_kernel.models.quote import EventQuote
from billing_kernel.models.schedule import PaymentMilestone, PaymentSchedule

__all__ = [
    "ChangeRecord",
    "EventQuote",
    "LineItem",
    "LineItemCollection",
    "PaymentEvent",
    "PaymentEventStatus",
    "PaymentMilestone",
    "PaymentSchedule",
]
