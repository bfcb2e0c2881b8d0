"""
Module: billing_engines.change_detection
Responsibility:
    Field-level change detection for tracked customer records, the
    attribution context a change must carry, and the per-edit session that
    moves from detection to commit.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    ChangeAuditService persists what this module computes; nothing here
    touches the database or the clock.

Invariants enforced:
    - "Changed" is decided per field by a declared canonical form, never by
      object identity: unordered multi-value fields compare as sorted sets,
      ordered ones as sequences, blank strings equal None.
    - detect_changes(X, X, fields) is empty.
    - apply_changes(old, detect_changes(old, new, fields)) equals ``new`` on
      ``fields`` under canonical comparison.
    - A context requires a non-empty attribution and a source from the
      closed ChangeSource set.  Contact info is kept only for phone and
      email sources.
    - The default customer summary follows attribution/source edits until a
      human edits the summary text.  That is tracked by a dirty flag, never
      by comparing against the last generated text.

Edit session lifecycle:

    DETECTING --detect() finds changes--> AWAITING_CONTEXT
        |                                        |
        | (no changes: commit directly)          | context complete
        v                                        v
    COMMITTED  <------------------------------ commit
    ABANDONED  <-- abandon() from any non-terminal state; nothing written

Failure modes:
    - UnknownTrackedFieldError for a field name outside the registry.
    - EmptyAttributionError / UnknownChangeSourceError when building a
      context.
    - EditSessionStateError when a session is used after it ended.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from billing_engines.tracer import traced_engine
from billing_kernel.exceptions import (
    EditSessionStateError,
    EmptyAttributionError,
    UnknownChangeSourceError,
    UnknownTrackedFieldError,
)
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.change_detection")


# ---------------------------------------------------------------------------
# Tracked fields
# ---------------------------------------------------------------------------


class FieldKind(str, Enum):
    """How a tracked field's values are compared."""

    SCALAR = "scalar"
    UNORDERED = "unordered"  # multi-value, compared as a set
    ORDERED = "ordered"  # multi-value, order is significant


def _canonical_scalar(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    # Compared as stored: 140 and "140" are the same value
    return str(value)


def humanize_field_name(field_name: str) -> str:
    """``guest_count`` -> ``Guest Count``."""
    return " ".join(part.capitalize() for part in field_name.split("_") if part)


@dataclass(frozen=True)
class TrackedField:
    """
    Declaration of one audited field.

    Contract:
        ``canonical()`` returns the textual form of a value (a string, None,
        or a tuple of strings); two values are the same change-wise iff
        their canonical forms are equal.  ``serialize()`` is the string
        persisted in ChangeRecord, so equal canonical forms always store
        equal strings.
    """

    name: str
    label: str = ""
    kind: FieldKind = FieldKind.SCALAR

    @property
    def display_label(self) -> str:
        return self.label or humanize_field_name(self.name)

    def canonical(self, value: Any) -> Any:
        if self.kind is FieldKind.SCALAR:
            return _canonical_scalar(value)
        items = [] if value is None else [_canonical_scalar(v) for v in value]
        items = [v for v in items if v is not None]
        if self.kind is FieldKind.UNORDERED:
            return tuple(sorted(set(items), key=str))
        return tuple(items)

    def serialize(self, value: Any) -> str | None:
        canonical = self.canonical(value)
        if self.kind is FieldKind.SCALAR:
            return None if canonical is None else str(canonical)
        return json.dumps(list(canonical), separators=(",", ":"), default=str)


QUOTE_TRACKED_FIELDS: tuple[TrackedField, ...] = (
    TrackedField("event_name", "Event Name"),
    TrackedField("event_date", "Event Date"),
    TrackedField("start_time", "Start Time"),
    TrackedField("guest_count", "Guest Count"),
    TrackedField("location", "Location"),
    TrackedField("service_type", "Service Type"),
    TrackedField("dietary_restrictions", "Dietary Restrictions", FieldKind.UNORDERED),
    TrackedField("appetizers", "Appetizers", FieldKind.UNORDERED),
    TrackedField("desserts", "Desserts", FieldKind.UNORDERED),
    TrackedField("special_requests", "Special Requests"),
    TrackedField("contact_phone", "Contact Phone"),
    TrackedField("email", "Email"),
)

_QUOTE_FIELDS_BY_NAME = {f.name: f for f in QUOTE_TRACKED_FIELDS}


def resolve_fields(
    fields: Iterable[TrackedField | str],
    registry: Mapping[str, TrackedField] = _QUOTE_FIELDS_BY_NAME,
) -> tuple[TrackedField, ...]:
    """Accept descriptors or registry names; reject anything untracked."""
    resolved: list[TrackedField] = []
    for f in fields:
        if isinstance(f, TrackedField):
            resolved.append(f)
        elif f in registry:
            resolved.append(registry[f])
        else:
            raise UnknownTrackedFieldError(str(f))
    return tuple(resolved)


def format_serialized_value(value: str | None) -> str:
    """Render a stored value for people: JSON arrays become ``A, B``."""
    if value is None or value == "":
        return "not set"
    if value.startswith("["):
        try:
            items = json.loads(value)
        except ValueError:
            return value
        if isinstance(items, list):
            return ", ".join(str(i) for i in items) if items else "none"
    return value


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeCandidate:
    """A detected difference in one tracked field."""

    field_name: str
    label: str
    old_value: str | None
    new_value: str | None
    new_raw: Any = field(default=None, compare=False)

    def describe(self) -> str:
        return (
            f"{self.label.lower()} changed from "
            f"{format_serialized_value(self.old_value)} to "
            f"{format_serialized_value(self.new_value)}"
        )


def _read(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


@traced_engine("change_detection", "1.0")
def detect_changes(
    old: Any,
    new: Any,
    fields: Iterable[TrackedField | str] = QUOTE_TRACKED_FIELDS,
) -> tuple[ChangeCandidate, ...]:
    """
    One candidate per tracked field whose canonical value differs.

    ``old`` and ``new`` may be mappings or attribute-bearing objects
    (e.g. an ORM row and a dict of submitted form values).
    """
    candidates: list[ChangeCandidate] = []
    for f in resolve_fields(fields):
        old_raw = _read(old, f.name)
        new_raw = _read(new, f.name)
        if f.canonical(old_raw) == f.canonical(new_raw):
            continue
        candidates.append(
            ChangeCandidate(
                field_name=f.name,
                label=f.display_label,
                old_value=f.serialize(old_raw),
                new_value=f.serialize(new_raw),
                new_raw=new_raw,
            )
        )
    return tuple(candidates)


def apply_changes(record: Any, candidates: Iterable[ChangeCandidate]) -> Any:
    """
    Apply candidates' new values to ``record``.

    Mappings are copied, never mutated.  Objects are updated in place and
    returned.
    """
    if isinstance(record, Mapping):
        updated = dict(record)
        for c in candidates:
            updated[c.field_name] = c.new_raw
        return updated
    for c in candidates:
        setattr(record, c.field_name, c.new_raw)
    return record


# ---------------------------------------------------------------------------
# Attribution context
# ---------------------------------------------------------------------------


class ChangeSource(str, Enum):
    """Channel through which a change was requested."""

    PHONE = "phone"
    EMAIL = "email"
    PORTAL_CHANGE_REQUEST = "portal_change_request"
    IN_PERSON = "in_person"
    ADMIN_ADJUSTMENT = "admin_adjustment"

    @property
    def label(self) -> str:
        return _SOURCE_LABELS[self]

    @property
    def accepts_contact_info(self) -> bool:
        return self in (ChangeSource.PHONE, ChangeSource.EMAIL)


_SOURCE_LABELS = {
    ChangeSource.PHONE: "phone call",
    ChangeSource.EMAIL: "email request",
    ChangeSource.PORTAL_CHANGE_REQUEST: "portal change request",
    ChangeSource.IN_PERSON: "in-person discussion",
    ChangeSource.ADMIN_ADJUSTMENT: "internal adjustment",
}


def parse_source(value: ChangeSource | str) -> ChangeSource:
    if isinstance(value, ChangeSource):
        return value
    try:
        return ChangeSource(value)
    except ValueError:
        raise UnknownChangeSourceError(value) from None


def normalize_attribution(value: str | None, min_length: int = 1) -> str:
    """Strip and upper-case operator initials; enforce a minimum length."""
    normalized = (value or "").strip().upper()
    if len(normalized) < max(min_length, 1):
        raise EmptyAttributionError(min_length=max(min_length, 1))
    return normalized


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


@dataclass(frozen=True)
class ChangeContext:
    """
    Who made a change, through which channel, and what the customer sees.

    Guarantees:
        - ``attribution`` is non-empty and upper-cased.
        - ``contact_info`` is None unless ``source`` is phone or email.
    """

    attribution: str
    source: ChangeSource
    contact_info: str | None = None
    internal_note: str | None = None
    customer_summary: str | None = None
    include_in_customer_notes: bool = False

    @classmethod
    def build(
        cls,
        attribution: str | None,
        source: ChangeSource | str,
        contact_info: str | None = None,
        internal_note: str | None = None,
        customer_summary: str | None = None,
        include_in_customer_notes: bool = False,
        min_attribution_length: int = 1,
    ) -> ChangeContext:
        parsed = parse_source(source)
        return cls(
            attribution=normalize_attribution(attribution, min_attribution_length),
            source=parsed,
            contact_info=_blank_to_none(contact_info) if parsed.accepts_contact_info else None,
            internal_note=_blank_to_none(internal_note),
            customer_summary=_blank_to_none(customer_summary),
            include_in_customer_notes=include_in_customer_notes,
        )


def generate_customer_summary(
    candidates: Sequence[ChangeCandidate],
    attribution: str | None,
    source: ChangeSource | None,
) -> str:
    """
    Default customer-facing sentence, e.g.
    ``Updated by JD via phone call: guest count changed from 120 to 140``.
    """
    prefix = "Updated"
    initials = (attribution or "").strip().upper()
    if initials:
        prefix += f" by {initials}"
    if source is not None:
        prefix += f" via {source.label}"
    if not candidates:
        return prefix
    return f"{prefix}: " + "; ".join(c.describe() for c in candidates)


# ---------------------------------------------------------------------------
# Edit session
# ---------------------------------------------------------------------------


class EditSessionState(str, Enum):
    DETECTING = "detecting"
    AWAITING_CONTEXT = "awaiting_context"
    COMMITTED = "committed"
    ABANDONED = "abandoned"


_TERMINAL = (EditSessionState.COMMITTED, EditSessionState.ABANDONED)


class EditSession:
    """
    One operator edit of a tracked record, from diff to commit.

    Contract:
        Holds the candidate list and the context being assembled.  It never
        writes anything; ChangeAuditService.commit() consumes it and calls
        ``mark_committed()``.

    Guarantees:
        - While ``summary_is_manual`` is False, ``customer_summary`` is
          regenerated on every attribution or source change.
        - Once the summary is edited by hand it is left alone until
          ``reset_summary()``.

    Non-goals:
        - Minimum attribution length beyond non-empty is the caller's
          policy, passed as ``min_attribution_length``.
    """

    def __init__(
        self,
        old: Any,
        new: Any,
        fields: Iterable[TrackedField | str] = QUOTE_TRACKED_FIELDS,
        min_attribution_length: int = 1,
        summary_builder: Callable[..., str] = generate_customer_summary,
    ):
        self.old = old
        self.new = new
        self.fields = resolve_fields(fields)
        self.min_attribution_length = min_attribution_length
        self._summary_builder = summary_builder

        self.state = EditSessionState.DETECTING
        self._candidates: tuple[ChangeCandidate, ...] | None = None

        self.attribution: str = ""
        self.source: ChangeSource | None = None
        self.contact_info: str | None = None
        self.internal_note: str | None = None
        self.include_in_customer_notes: bool = False
        self._customer_summary: str = ""
        self._summary_dirty = False

    # -- detection ---------------------------------------------------------

    def detect(self) -> tuple[ChangeCandidate, ...]:
        """Compute candidates; move to AWAITING_CONTEXT if there are any."""
        self._require_open("detect")
        self._candidates = detect_changes(old=self.old, new=self.new, fields=self.fields)
        if self._candidates:
            self.state = EditSessionState.AWAITING_CONTEXT
        self._refresh_summary()
        logger.debug(
            "edit_session_detected",
            extra={"candidate_count": len(self._candidates)},
        )
        return self._candidates

    @property
    def detected(self) -> bool:
        return self._candidates is not None

    @property
    def candidates(self) -> tuple[ChangeCandidate, ...]:
        if self._candidates is None:
            return self.detect()
        return self._candidates

    @property
    def has_changes(self) -> bool:
        return bool(self.candidates)

    # -- context -----------------------------------------------------------

    def set_attribution(self, attribution: str) -> None:
        self._require_open("set attribution")
        self.attribution = attribution
        self._refresh_summary()

    def set_source(self, source: ChangeSource | str) -> None:
        self._require_open("set source")
        self.source = parse_source(source)
        if not self.source.accepts_contact_info:
            self.contact_info = None
        self._refresh_summary()

    def set_contact_info(self, contact_info: str | None) -> None:
        self._require_open("set contact info")
        self.contact_info = contact_info

    def set_internal_note(self, note: str | None) -> None:
        self._require_open("set internal note")
        self.internal_note = note

    def set_include_in_customer_notes(self, include: bool) -> None:
        self._require_open("set customer notes flag")
        self.include_in_customer_notes = include

    @property
    def customer_summary(self) -> str:
        return self._customer_summary

    @property
    def summary_is_manual(self) -> bool:
        return self._summary_dirty

    def edit_summary(self, text: str) -> None:
        """Hand-edit the summary; auto-regeneration stops from here on."""
        self._require_open("edit summary")
        self._customer_summary = text
        self._summary_dirty = True

    def reset_summary(self) -> None:
        """Discard the hand edit and resume auto-generation."""
        self._require_open("reset summary")
        self._summary_dirty = False
        self._refresh_summary()

    def _refresh_summary(self) -> None:
        if self._summary_dirty:
            return
        self._customer_summary = self._summary_builder(
            self._candidates or (), self.attribution, self.source,
        )

    # -- completion --------------------------------------------------------

    def build_context(self) -> ChangeContext | None:
        """
        Validated context for commit, or None when nothing tracked changed.

        Raises EmptyAttributionError / UnknownChangeSourceError when changes
        exist but the context is incomplete.
        """
        self._require_open("commit")
        if not self.candidates:
            return None
        if self.source is None:
            raise UnknownChangeSourceError(None)
        return ChangeContext.build(
            attribution=self.attribution,
            source=self.source,
            contact_info=self.contact_info,
            internal_note=self.internal_note,
            customer_summary=self._customer_summary,
            include_in_customer_notes=self.include_in_customer_notes,
            min_attribution_length=self.min_attribution_length,
        )

    def mark_committed(self) -> None:
        self._require_open("mark committed")
        self.state = EditSessionState.COMMITTED

    def abandon(self) -> None:
        self._require_open("abandon")
        self.state = EditSessionState.ABANDONED
        logger.info(
            "edit_session_abandoned",
            extra={"candidate_count": len(self._candidates or ())},
        )

    def _require_open(self, operation: str) -> None:
        if self.state in _TERMINAL:
            raise EditSessionStateError(operation, self.state.value)
