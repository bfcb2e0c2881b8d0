"""
ChangeAuditService -- attributed, hash-chained change records for tracked
customer records.

Responsibility:
    Commit an EditSession: append one immutable ChangeRecord per detected
    field change, then apply the underlying mutation, all inside one
    SAVEPOINT.  Also validates the hash chain and serves per-entity
    history and customer-visible notes.

Architecture position:
    Services -- stateful orchestration over billing_engines.change_detection
    and the kernel's SequenceService.

Invariants enforced:
    - Append-then-mutate is atomic.  If the mutation fails, the appended
      records are rolled back with it and AuditMutationFailedError is
      raised (logged CRITICAL).  A mutation can never land without its
      audit records.
    - Records of one commit share batch_id, timestamp and context.
    - hash = H(entity_type | entity_id | field_name | payload_hash |
      prev_hash), with seq from the locked change_record counter.
    - An edit with no tracked-field changes commits without records.

Failure modes:
    - ValidationError subclasses from the session's context (empty
      attribution, unknown source), raised before anything is written.
    - OptimisticLockError when the mutated record's version moved.
    - AuditMutationFailedError when the mutation raises.
    - AuditChainBrokenError from ``validate_chain()``.
    - EditSessionStateError when the session already ended.

Audit relevance:
    This IS the change trail for billable customer facts.  post_commit
    hooks (e.g. regenerating derived line items) run only after the
    records and the mutation are both flushed.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing_engines.change_detection import (
    ChangeCandidate,
    ChangeContext,
    ChangeSource,
    EditSession,
    apply_changes,
    format_serialized_value,
    humanize_field_name,
)
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    AuditChainBrokenError,
    AuditMutationFailedError,
    OptimisticLockError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.change_record import ChangeRecord
from billing_kernel.services.sequence_service import SequenceService
from billing_kernel.utils.hashing import hash_change_record, hash_payload

logger = get_logger("services.change_audit")

PostCommitHook = Callable[[tuple[ChangeRecord, ...]], None]


def _timestamp_key(ts: datetime) -> str:
    """UTC wall-clock ISO string; stable across backends that drop tzinfo."""
    if ts.tzinfo is not None:
        ts = ts.astimezone(UTC).replace(tzinfo=None)
    return ts.isoformat()


def _record_payload(record: ChangeRecord) -> dict[str, Any]:
    return {
        "seq": record.seq,
        "batch_id": str(record.batch_id),
        "document_id": str(record.document_id) if record.document_id else None,
        "field_name": record.field_name,
        "old_value": record.old_value,
        "new_value": record.new_value,
        "timestamp": _timestamp_key(record.timestamp),
        "attribution": record.attribution,
        "source": record.source,
        "contact_info": record.contact_info,
        "internal_note": record.internal_note,
        "customer_summary": record.customer_summary,
        "include_in_customer_notes": bool(record.include_in_customer_notes),
    }


@dataclass(frozen=True)
class ChangeHistoryEntry:
    """One change, formatted for the history view."""

    seq: int
    batch_id: UUID
    field_name: str
    field_label: str
    old_display: str
    new_display: str
    timestamp: datetime
    attribution: str
    source: ChangeSource
    contact_info: str | None
    internal_note: str | None
    customer_summary: str | None

    @property
    def source_label(self) -> str:
        return self.source.label


@dataclass(frozen=True)
class ChangeHistory:
    """All changes to one entity, oldest first."""

    entity_type: str
    entity_id: UUID
    entries: tuple[ChangeHistoryEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    def for_field(self, field_name: str) -> tuple[ChangeHistoryEntry, ...]:
        return tuple(e for e in self.entries if e.field_name == field_name)


@dataclass(frozen=True)
class CustomerNote:
    """A customer-visible summary of one committed batch."""

    batch_id: UUID
    timestamp: datetime
    summary: str


class ChangeAuditService:
    """
    Service for committing and reading the change trail.

    Contract:
        ``commit()`` takes a detected EditSession and a ``mutate`` callable
        that applies the candidates to the stored record.

    Guarantees:
        - Sequence numbers come from SequenceService, never max(seq) + 1.
        - Records are append-only (ORM listeners in db/immutability.py).

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT decide which fields are tracked; the EditSession does.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    # Commit

    def commit(
        self,
        edit_session: EditSession,
        entity_type: str,
        entity_id: UUID,
        mutate: Callable[[tuple[ChangeCandidate, ...]], Any],
        document_id: UUID | None = None,
        post_commit: PostCommitHook | None = None,
    ) -> tuple[ChangeRecord, ...]:
        """
        Append change records for the session, then apply ``mutate``.

        Returns the appended records (empty when nothing tracked changed).
        """
        candidates = edit_session.candidates
        context = edit_session.build_context()

        with LogContext.bind(entity_id=str(entity_id), document_id=document_id):
            if context is None:
                self._mutate_untracked(edit_session, entity_type, entity_id, mutate)
                return ()

            batch_id = uuid4()
            savepoint = self._session.begin_nested()
            try:
                records = self._append_batch(
                    entity_type, entity_id, document_id, candidates, context, batch_id,
                )
            except Exception:
                savepoint.rollback()
                raise

            try:
                mutate(candidates)
                self._session.flush()
            except StaleDataError as exc:
                savepoint.rollback()
                logger.warning(
                    "change_commit_conflict",
                    extra={"entity_type": entity_type, "batch_id": str(batch_id)},
                )
                raise OptimisticLockError(entity_type, str(entity_id)) from exc
            except ValidationError:
                savepoint.rollback()
                logger.warning(
                    "change_commit_rejected",
                    extra={"entity_type": entity_type, "batch_id": str(batch_id)},
                    exc_info=True,
                )
                raise
            except Exception as exc:
                savepoint.rollback()
                error = AuditMutationFailedError(
                    entity_type, str(entity_id), str(batch_id), reason=str(exc),
                )
                logger.critical(
                    "audit_mutation_failed",
                    extra={"entity_type": entity_type, "record_count": len(records)},
                    exc_info=(type(error), error, exc.__traceback__),
                )
                raise error from exc

            savepoint.commit()
            edit_session.mark_committed()

            logger.info(
                "change_records_appended",
                extra={
                    "entity_type": entity_type,
                    "batch_id": str(batch_id),
                    "record_count": len(records),
                    "source": context.source.value,
                    "attribution": context.attribution,
                },
            )

        if post_commit is not None:
            post_commit(records)
        return records

    def commit_to_entity(
        self,
        edit_session: EditSession,
        entity: Any,
        document_id: UUID | None = None,
        post_commit: PostCommitHook | None = None,
    ) -> tuple[ChangeRecord, ...]:
        """Commit by writing the candidates' new values onto an ORM entity."""
        return self.commit(
            edit_session,
            entity_type=type(entity).__name__,
            entity_id=entity.id,
            mutate=lambda candidates: apply_changes(entity, candidates),
            document_id=document_id,
            post_commit=post_commit,
        )

    def _mutate_untracked(
        self,
        edit_session: EditSession,
        entity_type: str,
        entity_id: UUID,
        mutate: Callable[[tuple[ChangeCandidate, ...]], Any],
    ) -> None:
        try:
            with self._session.begin_nested():
                mutate(())
                self._session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError(entity_type, str(entity_id)) from exc
        edit_session.mark_committed()
        logger.info("change_commit_untracked", extra={"entity_type": entity_type})

    def _append_batch(
        self,
        entity_type: str,
        entity_id: UUID,
        document_id: UUID | None,
        candidates: Sequence[ChangeCandidate],
        context: ChangeContext,
        batch_id: UUID,
    ) -> tuple[ChangeRecord, ...]:
        timestamp = self._clock.now()
        prev_hash: str | None = None
        records: list[ChangeRecord] = []

        for candidate in candidates:
            # next_value locks the counter row; the tail is read under it
            seq = self._sequence_service.next_value(SequenceService.CHANGE_RECORD)
            if not records:
                prev_hash = self._get_last_hash()
            record = ChangeRecord(
                seq=seq,
                batch_id=batch_id,
                entity_type=entity_type,
                entity_id=entity_id,
                document_id=document_id,
                field_name=candidate.field_name,
                old_value=candidate.old_value,
                new_value=candidate.new_value,
                timestamp=timestamp,
                attribution=context.attribution,
                source=context.source.value,
                contact_info=context.contact_info,
                internal_note=context.internal_note,
                customer_summary=context.customer_summary,
                include_in_customer_notes=context.include_in_customer_notes,
            )
            record.payload_hash = hash_payload(_record_payload(record))
            record.prev_hash = prev_hash
            record.hash = hash_change_record(
                entity_type=entity_type,
                entity_id=str(entity_id),
                field_name=candidate.field_name,
                payload_hash=record.payload_hash,
                prev_hash=prev_hash,
            )
            self._session.add(record)
            self._session.flush()
            prev_hash = record.hash
            records.append(record)

        return tuple(records)

    def _get_last_hash(self) -> str | None:
        last = self._session.execute(
            select(ChangeRecord).order_by(ChangeRecord.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last.hash if last else None

    # Validation

    def validate_chain(self) -> bool:
        """
        Validate the entire change trail.

        Returns True only if every record's payload hash and chain hash
        match their recomputed values and every prev_hash links to the
        predecessor.

        Raises:
            AuditChainBrokenError: At the first record that fails.
        """
        records = self._session.execute(
            select(ChangeRecord).order_by(ChangeRecord.seq)
        ).scalars().all()

        previous: str | None = None
        for record in records:
            if record.prev_hash != previous:
                self._chain_broken(record, previous or "None", record.prev_hash or "None")

            payload_hash = hash_payload(_record_payload(record))
            if payload_hash != record.payload_hash:
                self._chain_broken(record, payload_hash, record.payload_hash)

            expected = hash_change_record(
                entity_type=record.entity_type,
                entity_id=str(record.entity_id),
                field_name=record.field_name,
                payload_hash=payload_hash,
                prev_hash=record.prev_hash,
            )
            if expected != record.hash:
                self._chain_broken(record, expected, record.hash)
            previous = record.hash

        logger.info("change_chain_valid", extra={"record_count": len(records)})
        return True

    @staticmethod
    def _chain_broken(record: ChangeRecord, expected: str, actual: str) -> None:
        error = AuditChainBrokenError(str(record.id), expected, actual)
        logger.critical(
            "change_chain_broken",
            extra={"seq": record.seq},
            exc_info=(type(error), error, None),
        )
        raise error

    # Reads

    def get_history(self, entity_type: str, entity_id: UUID) -> ChangeHistory:
        records = self._records_for(entity_type, entity_id)
        entries = tuple(
            ChangeHistoryEntry(
                seq=r.seq,
                batch_id=r.batch_id,
                field_name=r.field_name,
                field_label=humanize_field_name(r.field_name),
                old_display=format_serialized_value(r.old_value),
                new_display=format_serialized_value(r.new_value),
                timestamp=r.timestamp,
                attribution=r.attribution,
                source=ChangeSource(r.source),
                contact_info=r.contact_info,
                internal_note=r.internal_note,
                customer_summary=r.customer_summary,
            )
            for r in records
        )
        return ChangeHistory(entity_type=entity_type, entity_id=entity_id, entries=entries)

    def customer_notes(self, entity_type: str, entity_id: UUID) -> tuple[CustomerNote, ...]:
        """One note per committed batch flagged for the customer, oldest first."""
        notes: list[CustomerNote] = []
        seen: set[UUID] = set()
        for r in self._records_for(entity_type, entity_id):
            if not r.include_in_customer_notes or not r.customer_summary:
                continue
            if r.batch_id in seen:
                continue
            seen.add(r.batch_id)
            notes.append(CustomerNote(batch_id=r.batch_id, timestamp=r.timestamp, summary=r.customer_summary))
        return tuple(notes)

    def _records_for(self, entity_type: str, entity_id: UUID) -> list[ChangeRecord]:
        return list(
            self._session.execute(
                select(ChangeRecord)
                .where(
                    ChangeRecord.entity_type == entity_type,
                    ChangeRecord.entity_id == entity_id,
                )
                .order_by(ChangeRecord.seq)
            ).scalars()
        )
