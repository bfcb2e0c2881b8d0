"""
Module: billing_kernel.models.schedule
Responsibility: ORM persistence for payment schedules and their milestones.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One schedule per billing document (UNIQUE document_id).
    - sum(milestone.amount_cents) == schedule.total_payable_cents.  Checked
      by the scheduler before anything is written; ``is_reconciled`` is the
      read-side assertion.
    - sequence_index is unique per schedule and defines waterfall order.
    - Milestones are never updated in place (see db/immutability.py).
      Regeneration deletes and re-inserts the whole set and bumps
      ``version``.
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import Base, UUIDString


class PaymentSchedule(Base):
    """
    The milestone plan for paying one billing document.

    Contract:
        ``tax_exempt`` is propagated from an exempt contract classification;
        tax computation itself happens outside the kernel.
    """

    __tablename__ = "payment_schedules"

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
        unique=True,
    )

    total_payable_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    # Named tier that produced the milestones (RUSH, SHORT, MID, STANDARD, NET_TERM)
    tier_label: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
    )

    is_exempt: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    tax_exempt: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    days_until_due: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    milestones: Mapped[list["PaymentMilestone"]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="PaymentMilestone.sequence_index",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_reconciled(self) -> bool:
        return sum(m.amount_cents for m in self.milestones) == self.total_payable_cents

    def __repr__(self) -> str:
        return f"<PaymentSchedule {self.tier_label} {self.total_payable_cents}c>"


class PaymentMilestone(Base):
    """One scheduled partial obligation of a schedule's total."""

    __tablename__ = "payment_milestones"

    __table_args__ = (
        UniqueConstraint("schedule_id", "sequence_index", name="uq_milestone_sequence"),
    )

    schedule_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("payment_schedules.id"),
        nullable=False,
    )

    # deposit | progress | balance | net-term
    milestone_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    percentage: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    amount_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    # NULL means due immediately
    due_date: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
    )

    sequence_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    description: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
    )

    schedule: Mapped[PaymentSchedule] = relationship(back_populates="milestones")

    @property
    def is_due_now(self) -> bool:
        return self.due_date is None

    def __repr__(self) -> str:
        return f"<PaymentMilestone #{self.sequence_index} {self.milestone_type} {self.amount_cents}c>"
