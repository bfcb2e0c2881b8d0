"""
Module: billing_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    billing calculation engines.  This is the import surface for
    billing_services and billing_config.bridges.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May import billing_kernel.exceptions and billing_kernel.logging_config.
    MUST NOT import billing_services or billing_config.

Invariants enforced:
    - Purity: engines never call ``datetime.now()`` or ``date.today()``.
      Generation dates are passed in by the caller.
    - Integer-cent arithmetic; Decimal only for rounding shares.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Every engine entrypoint is traced via ``@traced_engine``, emitting
    BILLING_ENGINE_TRACE records with a deterministic input fingerprint.
"""

from billing_engines.change_detection import (
    QUOTE_TRACKED_FIELDS,
    ChangeCandidate,
    ChangeContext,
    ChangeSource,
    EditSession,
    EditSessionState,
    FieldKind,
    TrackedField,
    apply_changes,
    detect_changes,
    format_serialized_value,
    generate_customer_summary,
    humanize_field_name,
)
from billing_engines.milestones import (
    DEFAULT_TIERS,
    DueRule,
    ExemptTerms,
    MilestoneRule,
    MilestoneSchedule,
    MilestoneScheduler,
    MilestoneType,
    PlannedMilestone,
    ScheduleTier,
)
from billing_engines.sequencer import DEFAULT_GAP, OrderKeySequencer, ReorderResult
from billing_engines.tracer import compute_input_fingerprint, traced_engine
from billing_engines.waterfall import (
    AllocatedMilestone,
    MilestoneStatus,
    WaterfallAllocator,
    WaterfallMilestone,
    WaterfallResult,
    total_completed_cents,
)

__all__ = [
    # Change detection
    "QUOTE_TRACKED_FIELDS",
    "ChangeCandidate",
    "ChangeContext",
    "ChangeSource",
    "EditSession",
    "EditSessionState",
    "FieldKind",
    "TrackedField",
    "apply_changes",
    "detect_changes",
    "format_serialized_value",
    "generate_customer_summary",
    "humanize_field_name",
    # Milestones
    "DEFAULT_TIERS",
    "DueRule",
    "ExemptTerms",
    "MilestoneRule",
    "MilestoneSchedule",
    "MilestoneScheduler",
    "MilestoneType",
    "PlannedMilestone",
    "ScheduleTier",
    # Sequencer
    "DEFAULT_GAP",
    "OrderKeySequencer",
    "ReorderResult",
    # Tracer
    "compute_input_fingerprint",
    "traced_engine",
    # Waterfall
    "AllocatedMilestone",
    "MilestoneStatus",
    "WaterfallAllocator",
    "WaterfallMilestone",
    "WaterfallResult",
    "total_completed_cents",
]
