"""
Module: billing_kernel.models.payment
Responsibility: ORM persistence for payment events.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: payment events are never updated or deleted
      (db/immutability.py).  A refund or failure is a new event.
    - amount_cents > 0 (CHECK constraint).
    - Only COMPLETED events participate in waterfall allocation.

Audit relevance:
    ``milestone_id`` records the milestone a payment was earmarked for by the
    payment processor or operator.  It is reported alongside the milestone
    but does not change how the aggregate paid total is allocated.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base, UUIDString


class PaymentEventStatus(str, Enum):
    """Processing status reported for a payment."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentEvent(Base):
    """A single payment fact for a billing document."""

    __tablename__ = "payment_events"

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payment_event_positive"),
        Index("idx_payment_event_document", "document_id"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    amount_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    status: Mapped[PaymentEventStatus] = mapped_column(
        String(20),
        nullable=False,
    )

    milestone_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    # Processor or check reference; informational only
    reference: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
    )

    @property
    def is_completed(self) -> bool:
        return PaymentEventStatus(self.status) == PaymentEventStatus.COMPLETED

    def __repr__(self) -> str:
        return f"<PaymentEvent {self.amount_cents}c {self.status}>"
