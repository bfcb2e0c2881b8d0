"""
Module: billing_kernel.models.line_item
Responsibility: ORM persistence for ordered billable line items and the
    collection row that versions their ordering.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - order_key is unique within a collection (UNIQUE constraint).  It is an
      ordering device only and never exposed as business data.
    - total_cents == quantity * unit_price_cents, recomputed by
      ``recompute_total()`` on every quantity/price mutation.
    - Every write that touches ordering bumps the collection ``version``
      (SQLAlchemy version_id_col), so two concurrent reorders of the same
      collection serialize: the loser's UPDATE matches zero rows and
      surfaces as StaleDataError.

Failure modes:
    - IntegrityError on duplicate order_key within a collection.
    - StaleDataError when the collection version moved underneath a writer.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import Base, UUIDString


class LineItemCollection(Base):
    """
    The ordered set of line items that belongs to one billing document.

    Contract:
        ``version`` increases by one on every ordering write.  Callers that
        read the collection can pass the version back as
        ``expected_version`` to refuse writes over newer state.
    """

    __tablename__ = "line_item_collections"

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
        unique=True,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Touched by every ordering write so the versioned UPDATE is emitted
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    items: Mapped[list["LineItem"]] = relationship(
        back_populates="collection",
        cascade="all, delete-orphan",
        order_by="LineItem.order_key",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<LineItemCollection {self.id} v{self.version}>"


class LineItem(Base):
    """A billable line on an estimate or invoice."""

    __tablename__ = "line_items"

    __table_args__ = (
        UniqueConstraint("collection_id", "order_key", name="uq_line_item_order_key"),
        Index("idx_line_item_collection", "collection_id"),
    )

    collection_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("line_item_collections.id"),
        nullable=False,
    )

    # Dense ordering key; only ever compared, never displayed
    order_key: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    title: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )

    description: Mapped[str | None] = mapped_column(
        String(1000),
        nullable=True,
    )

    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    unit_price_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    total_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    collection: Mapped[LineItemCollection] = relationship(back_populates="items")

    def recompute_total(self) -> int:
        """Set and return ``total_cents`` from quantity and unit price."""
        self.total_cents = self.quantity * self.unit_price_cents
        return self.total_cents

    def __repr__(self) -> str:
        return f"<LineItem {self.title!r} key={self.order_key}>"
