"""
Module: billing_kernel.models.change_record
Responsibility: ORM persistence for the attributed, tamper-evident trail of
    field-level changes to tracked customer records.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (db/immutability.py).
    - Hash chain: hash = H(entity_type | entity_id | field_name |
      payload_hash | prev_hash).  Validated by ChangeAuditService.
    - seq is monotonically increasing, allocated by SequenceService.
    - Records committed together share one batch_id, one timestamp and one
      attribution context.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a hash mismatch.

Audit relevance:
    ChangeRecord IS the legal record of who changed which billable fact,
    when, and through which channel.  old_value/new_value hold the
    canonical serialization used for comparison, so two records can be
    compared without knowing the field's type.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base, UUIDString


class ChangeRecord(Base):
    """
    One field-level change with its attribution context.

    Contract:
        Rows are append-only.  Each row's hash includes the previous row's
        hash, so a retroactive edit anywhere in the trail is detectable.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - prev_hash is None only for the genesis record.

    Non-goals:
        - This model does NOT compute hashes; ChangeAuditService does.
    """

    __tablename__ = "change_records"

    __table_args__ = (
        Index("idx_change_entity", "entity_type", "entity_id"),
        Index("idx_change_document", "document_id"),
        Index("idx_change_batch", "batch_id"),
    )

    seq: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
    )

    # All records from one commit share a batch
    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    # Type of the changed record (e.g. "EventQuote")
    entity_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    entity_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    # Related billing document, if any
    document_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    field_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    old_value: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    new_value: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Operator initials, stored upper-cased
    attribution: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    # phone | email | portal_change_request | in_person | admin_adjustment
    source: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
    )

    contact_info: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
    )

    internal_note: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    customer_summary: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    include_in_customer_notes: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    payload_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    prev_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ChangeRecord #{self.seq} {self.entity_type}.{self.field_name}>"
