"""
Module: billing_kernel.models.quote
Responsibility: ORM persistence for the customer's event quote, the mutable
    record whose billable facts are tracked by the change audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - ``version`` is the SQLAlchemy version_id_col; an edit committed over a
      stale read fails with StaleDataError instead of overwriting.
    - Multi-valued fields (dietary restrictions, appetizers, desserts) are
      stored as JSON lists.  Whether their order matters is decided by the
      tracked-field registry in billing_engines.change_detection, not here.
"""

from datetime import date

from sqlalchemy import JSON, Date, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base


class EventQuote(Base):
    """A catering quote request for one event."""

    __tablename__ = "event_quotes"

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    event_name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )

    event_date: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
    )

    # "HH:MM", local to the venue
    start_time: Mapped[str | None] = mapped_column(
        String(5),
        nullable=True,
    )

    guest_count: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    location: Mapped[str | None] = mapped_column(
        String(300),
        nullable=True,
    )

    service_type: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )

    dietary_restrictions: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    appetizers: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    desserts: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    special_requests: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    contact_phone: Mapped[str | None] = mapped_column(
        String(40),
        nullable=True,
    )

    email: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<EventQuote {self.event_name!r} v{self.version}>"
