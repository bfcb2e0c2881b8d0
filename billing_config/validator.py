"""
Configuration Validator (``billing_config.validator``).

Responsibility
--------------
Validates a ``BillingConfiguration`` before any engine is built from it.

Invariants enforced
-------------------
* Order key gap is at least 2, so a midpoint always exists between fresh
  neighbours.
* Tiers have strictly ascending ``max_days`` and end with exactly one
  open-ended tier.
* Each tier's milestone percentages are positive and sum to 100.
* Milestone types and due rules belong to the closed sets the scheduler
  understands.  Day offsets and net-term days are non-negative.
* Minimum attribution length is at least 1.

Failure modes
-------------
* Validation errors (``ConfigValidationResult.errors``)  -> the
  configuration MUST NOT be used.
* Validation warnings  -> usable, but should be reviewed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from billing_config.schema import BillingConfiguration, ScheduleTierDef

_MILESTONE_TYPES = frozenset({"deposit", "progress", "balance", "net-term"})
_DUE_RULES = frozenset({"now", "before_event", "midpoint", "after_generation"})


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    Contract
    --------
    * ``is_valid`` returns ``True`` only when ``errors`` is empty.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: BillingConfiguration) -> ConfigValidationResult:
    """Validate a parsed configuration; never raises."""
    result = ConfigValidationResult()

    _validate_sequencing(config, result)
    _validate_tier_order(config, result)
    for tier in config.scheduling.tiers:
        _validate_tier_milestones(tier, result)
    _validate_exempt(config, result)
    _validate_audit(config, result)

    return result


def _validate_sequencing(config: BillingConfiguration, result: ConfigValidationResult) -> None:
    if config.sequencing.gap < 2:
        result.add_error(f"sequencing.gap must be at least 2, got {config.sequencing.gap}")
    elif config.sequencing.gap < 8:
        result.add_warning(
            f"sequencing.gap {config.sequencing.gap} leaves little room before renumbering"
        )


def _validate_tier_order(config: BillingConfiguration, result: ConfigValidationResult) -> None:
    tiers = config.scheduling.tiers
    if not tiers:
        result.add_error("scheduling.tiers must define at least one tier")
        return

    labels = [t.label for t in tiers]
    for label in sorted({lbl for lbl in labels if labels.count(lbl) > 1}):
        result.add_error(f"Duplicate tier label: {label}")

    previous: int | None = None
    for position, tier in enumerate(tiers):
        is_last = position == len(tiers) - 1
        if tier.max_days is None:
            if not is_last:
                result.add_error(f"Tier {tier.label}: only the last tier may be open-ended")
            continue
        if is_last:
            result.add_error(f"Tier {tier.label}: the last tier must be open-ended")
        if tier.max_days < 0:
            result.add_error(f"Tier {tier.label}: max_days must be non-negative")
        if previous is not None and tier.max_days <= previous:
            result.add_error(
                f"Tier {tier.label}: max_days {tier.max_days} is not greater than {previous}"
            )
        previous = tier.max_days


def _validate_tier_milestones(tier: ScheduleTierDef, result: ConfigValidationResult) -> None:
    if not tier.milestones:
        result.add_error(f"Tier {tier.label}: no milestones")
        return

    for m in tier.milestones:
        if m.milestone_type not in _MILESTONE_TYPES:
            result.add_error(f"Tier {tier.label}: unknown milestone type {m.milestone_type!r}")
        if m.due not in _DUE_RULES:
            result.add_error(f"Tier {tier.label}: unknown due rule {m.due!r}")
        if m.percentage <= 0:
            result.add_error(f"Tier {tier.label}: percentage must be positive, got {m.percentage}")
        if m.days < 0:
            result.add_error(f"Tier {tier.label}: days must be non-negative, got {m.days}")

    total = sum(m.percentage for m in tier.milestones)
    if total != 100:
        result.add_error(f"Tier {tier.label}: percentages sum to {total}, expected 100")


def _validate_exempt(config: BillingConfiguration, result: ConfigValidationResult) -> None:
    if config.scheduling.exempt.net_term_days < 0:
        result.add_error("scheduling.exempt.net_term_days must be non-negative")


def _validate_audit(config: BillingConfiguration, result: ConfigValidationResult) -> None:
    if config.audit.min_attribution_length < 1:
        result.add_error("audit.min_attribution_length must be at least 1")
