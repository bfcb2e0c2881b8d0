"""
Billing configuration schema.

Frozen dataclasses for the human-authored, reviewable billing policy:
how far apart order keys are spaced, which milestone tiers apply at which
lead times, and what the change trail requires of an operator.  YAML is
parsed into these types by the loader; bridges turn them into engines.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Sequencing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SequencingPolicy:
    """Spacing between consecutive line item order keys."""

    gap: int = 10


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MilestoneDef:
    """One milestone row of a tier."""

    milestone_type: str  # deposit, progress, balance, net-term
    percentage: int
    due: str = "now"  # now, before_event, midpoint, after_generation
    days: int = 0
    description: str | None = None


@dataclass(frozen=True)
class ScheduleTierDef:
    """A named lead-time band.  ``max_days`` None means open-ended."""

    label: str
    max_days: int | None
    milestones: tuple[MilestoneDef, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ExemptPolicy:
    """Terms for government/institutional (exempt) contracts."""

    net_term_days: int = 30
    label: str = "NET_TERM"
    description: str = "Net 30 payment"


@dataclass(frozen=True)
class SchedulingPolicy:
    tiers: tuple[ScheduleTierDef, ...] = field(default_factory=tuple)
    exempt: ExemptPolicy = field(default_factory=ExemptPolicy)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditPolicy:
    """Operator input requirements for committing tracked changes."""

    min_attribution_length: int = 1


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BillingConfiguration:
    """
    The complete billing configuration.

    ``checksum`` is the SHA-256 of the source document and identifies this
    exact configuration in logs.
    """

    config_id: str
    version: int
    sequencing: SequencingPolicy = field(default_factory=SequencingPolicy)
    scheduling: SchedulingPolicy = field(default_factory=SchedulingPolicy)
    audit: AuditPolicy = field(default_factory=AuditPolicy)
    checksum: str = ""
