"""
Module: billing_engines.milestones
Responsibility:
    Turn a total payable amount, a lead time and a contract classification
    into an ordered payment milestone plan (percentage, cents, due date).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Tier definitions arrive by injection (billing_config.bridges builds them
    from YAML); DEFAULT_TIERS mirrors the shipped configuration.

Invariants enforced:
    - sum(amount_cents) == total_payable_cents exactly.  Each amount is the
      ROUND_HALF_UP share of its percentage; the last milestone in sequence
      order absorbs the residual.
    - Percentages per tier are positive integers summing to 100.
    - Tiers are selected by lead time against strictly ascending
      ``max_days`` thresholds, the last tier open-ended.
    - No clock access: the generation date is passed in as ``as_of``.

Failure modes:
    - InvalidAmountError for a negative or non-integer total.
    - InvalidScheduleInputError for a negative lead time or a malformed
      tier table.
    - ScheduleReconciliationError (logged CRITICAL) if the plan does not
      sum to the total after residual absorption.  This is a bug, never
      bad input.

Audit relevance:
    The tier label is persisted with the schedule so any plan can be
    explained later from (total, lead time, tier table).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from billing_engines.tracer import traced_engine
from billing_kernel.exceptions import (
    InvalidAmountError,
    InvalidScheduleInputError,
    ScheduleReconciliationError,
)
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.milestones")


class MilestoneType(str, Enum):
    """Closed set of milestone kinds."""

    DEPOSIT = "deposit"
    PROGRESS = "progress"
    BALANCE = "balance"
    NET_TERM = "net-term"


class DueRule(str, Enum):
    """How a milestone's due date is derived."""

    NOW = "now"  # due immediately
    BEFORE_EVENT = "before_event"  # event date minus N days
    MIDPOINT = "midpoint"  # halfway between generation and event
    AFTER_GENERATION = "after_generation"  # generation date plus N days


@dataclass(frozen=True)
class MilestoneRule:
    """One row of a tier: which share is due, and when."""

    milestone_type: MilestoneType
    percentage: int
    due: DueRule = DueRule.NOW
    days: int = 0
    description: str | None = None

    def describe(self) -> str:
        if self.description:
            return self.description
        return f"{self.percentage}% {self.milestone_type.value.replace('-', ' ')}"


@dataclass(frozen=True)
class ScheduleTier:
    """
    A named lead-time band.

    Contract:
        Applies when ``days_until_due <= max_days``.  ``max_days`` None
        means open-ended and is only valid for the last tier.
    """

    label: str
    max_days: int | None
    rules: tuple[MilestoneRule, ...]

    def covers(self, days_until_due: int) -> bool:
        return self.max_days is None or days_until_due <= self.max_days


@dataclass(frozen=True)
class ExemptTerms:
    """Single net-term milestone for exempt (government/institutional) contracts."""

    net_term_days: int = 30
    label: str = "NET_TERM"
    description: str = "Net 30 payment"


DEFAULT_TIERS: tuple[ScheduleTier, ...] = (
    ScheduleTier(
        label="RUSH",
        max_days=7,
        rules=(
            MilestoneRule(MilestoneType.BALANCE, 100, DueRule.NOW,
                          description="Full payment due now"),
        ),
    ),
    ScheduleTier(
        label="SHORT",
        max_days=30,
        rules=(
            MilestoneRule(MilestoneType.DEPOSIT, 60, DueRule.NOW,
                          description="60% booking deposit due now"),
            MilestoneRule(MilestoneType.BALANCE, 40, DueRule.BEFORE_EVENT, 7,
                          description="40% final balance due 7 days before event"),
        ),
    ),
    ScheduleTier(
        label="MID",
        max_days=44,
        rules=(
            MilestoneRule(MilestoneType.DEPOSIT, 10, DueRule.NOW,
                          description="10% booking deposit due now"),
            MilestoneRule(MilestoneType.PROGRESS, 40, DueRule.MIDPOINT,
                          description="40% progress payment due at midpoint"),
            MilestoneRule(MilestoneType.BALANCE, 50, DueRule.BEFORE_EVENT, 7,
                          description="50% final balance due 7 days before event"),
        ),
    ),
    ScheduleTier(
        label="STANDARD",
        max_days=None,
        rules=(
            MilestoneRule(MilestoneType.DEPOSIT, 10, DueRule.NOW,
                          description="10% booking deposit due now"),
            MilestoneRule(MilestoneType.PROGRESS, 40, DueRule.BEFORE_EVENT, 30,
                          description="40% progress payment due 30 days before event"),
            MilestoneRule(MilestoneType.BALANCE, 50, DueRule.BEFORE_EVENT, 14,
                          description="50% final balance due 14 days before event"),
        ),
    ),
)


@dataclass(frozen=True)
class PlannedMilestone:
    """A computed milestone, ready to persist."""

    milestone_type: MilestoneType
    percentage: int
    amount_cents: int
    due_date: date | None
    sequence_index: int
    description: str

    @property
    def is_due_now(self) -> bool:
        return self.due_date is None


@dataclass(frozen=True)
class MilestoneSchedule:
    """
    A complete plan for one document.

    Guarantees:
        - ``sum(m.amount_cents for m in milestones) == total_payable_cents``.
        - ``milestones`` are in ascending ``sequence_index`` order from 0.
    """

    tier_label: str
    total_payable_cents: int
    is_exempt: bool
    tax_exempt: bool
    milestones: tuple[PlannedMilestone, ...]

    @property
    def total_scheduled_cents(self) -> int:
        return sum(m.amount_cents for m in self.milestones)


def validate_tiers(tiers: Sequence[ScheduleTier]) -> None:
    """Raise InvalidScheduleInputError unless the tier table is usable."""
    if not tiers:
        raise InvalidScheduleInputError("tiers", tiers, "at least one tier is required")

    previous: int | None = None
    for position, tier in enumerate(tiers):
        is_last = position == len(tiers) - 1
        if tier.max_days is None and not is_last:
            raise InvalidScheduleInputError(
                "tiers", tier.label, "only the last tier may be open-ended",
            )
        if is_last and tier.max_days is not None:
            raise InvalidScheduleInputError(
                "tiers", tier.label, "the last tier must be open-ended",
            )
        if tier.max_days is not None:
            if previous is not None and tier.max_days <= previous:
                raise InvalidScheduleInputError(
                    "tiers", tier.label, "max_days must be strictly ascending",
                )
            previous = tier.max_days
        if not tier.rules:
            raise InvalidScheduleInputError("tiers", tier.label, "tier has no milestones")
        if any(r.percentage <= 0 for r in tier.rules):
            raise InvalidScheduleInputError(
                "tiers", tier.label, "milestone percentages must be positive",
            )
        total = sum(r.percentage for r in tier.rules)
        if total != 100:
            raise InvalidScheduleInputError(
                "tiers", tier.label, f"percentages sum to {total}, expected 100",
            )


class MilestoneScheduler:
    """
    Generate milestone plans from a tier table.

    Contract:
        Pure function of (total, lead time, exempt flag, generation date).
        No I/O, no database access.

    Guarantees:
        - Rounding Strategy:
            * Each milestone's share is total * percentage / 100, rounded
              ROUND_HALF_UP to whole cents.
            * The last milestone takes ``total - sum(earlier)``.
        - A computed due date on or before ``as_of`` becomes None (due now).

    Non-goals:
        - Does not decide whether regeneration is allowed; ScheduleService
          checks allocations first.
        - Does not compute tax.  ``tax_exempt`` is only propagated.
    """

    def __init__(
        self,
        tiers: Sequence[ScheduleTier] = DEFAULT_TIERS,
        exempt: ExemptTerms | None = None,
    ):
        validate_tiers(tiers)
        self.tiers = tuple(tiers)
        self.exempt = exempt or ExemptTerms()
        if self.exempt.net_term_days < 0:
            raise InvalidScheduleInputError(
                "net_term_days", self.exempt.net_term_days, "must be non-negative",
            )

    def select_tier(self, days_until_due: int) -> ScheduleTier:
        """First tier whose threshold covers the lead time."""
        for tier in self.tiers:
            if tier.covers(days_until_due):
                return tier
        # validate_tiers guarantees an open-ended last tier
        return self.tiers[-1]

    @traced_engine(
        "milestones", "1.0",
        fingerprint_fields=("total_payable_cents", "days_until_due", "is_exempt", "as_of"),
    )
    def generate(
        self,
        total_payable_cents: int,
        days_until_due: int,
        is_exempt: bool,
        as_of: date,
    ) -> MilestoneSchedule:
        """
        Build the milestone plan.

        Args:
            total_payable_cents: Authoritative total (computed externally).
            days_until_due: Lead time from ``as_of`` to the event/due date.
            is_exempt: Government/institutional contract classification.
            as_of: Generation date.

        Returns:
            MilestoneSchedule whose amounts reconcile to the cent.
        """
        if (
            isinstance(total_payable_cents, bool)
            or not isinstance(total_payable_cents, int)
            or total_payable_cents < 0
        ):
            raise InvalidAmountError("total_payable_cents", total_payable_cents)
        if isinstance(days_until_due, bool) or not isinstance(days_until_due, int):
            raise InvalidScheduleInputError(
                "days_until_due", days_until_due, "must be an integer",
            )
        if days_until_due < 0:
            raise InvalidScheduleInputError(
                "days_until_due", days_until_due, "must be non-negative",
            )

        if is_exempt:
            label = self.exempt.label
            rules: tuple[MilestoneRule, ...] = (
                MilestoneRule(
                    MilestoneType.NET_TERM,
                    100,
                    DueRule.AFTER_GENERATION,
                    self.exempt.net_term_days,
                    description=self.exempt.description,
                ),
            )
        else:
            tier = self.select_tier(days_until_due)
            label = tier.label
            rules = tier.rules

        amounts = self._split(total_payable_cents, [r.percentage for r in rules])
        milestones = tuple(
            PlannedMilestone(
                milestone_type=rule.milestone_type,
                percentage=rule.percentage,
                amount_cents=amount,
                due_date=self._due_date(rule, as_of, days_until_due),
                sequence_index=index,
                description=rule.describe(),
            )
            for index, (rule, amount) in enumerate(zip(rules, amounts))
        )

        schedule = MilestoneSchedule(
            tier_label=label,
            total_payable_cents=total_payable_cents,
            is_exempt=is_exempt,
            tax_exempt=is_exempt,
            milestones=milestones,
        )
        self._assert_reconciled(schedule, amounts)

        logger.info(
            "schedule_generated",
            extra={
                "tier": label,
                "total_payable_cents": total_payable_cents,
                "days_until_due": days_until_due,
                "milestone_count": len(milestones),
            },
        )
        return schedule

    @staticmethod
    def _split(total_cents: int, percentages: Sequence[int]) -> list[int]:
        total = Decimal(total_cents)
        amounts: list[int] = []
        for pct in percentages[:-1]:
            share = (total * Decimal(pct) / Decimal(100)).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP,
            )
            amounts.append(int(share))
        # Last milestone absorbs the residual
        amounts.append(total_cents - sum(amounts))
        return amounts

    @staticmethod
    def _due_date(rule: MilestoneRule, as_of: date, days_until_due: int) -> date | None:
        match rule.due:
            case DueRule.NOW:
                return None
            case DueRule.BEFORE_EVENT:
                due = as_of + timedelta(days=days_until_due - rule.days)
            case DueRule.MIDPOINT:
                due = as_of + timedelta(days=days_until_due // 2)
            case DueRule.AFTER_GENERATION:
                return as_of + timedelta(days=rule.days)
            case _:
                raise InvalidScheduleInputError("due", rule.due, "unknown due rule")
        return due if due > as_of else None

    @staticmethod
    def _assert_reconciled(schedule: MilestoneSchedule, amounts: Sequence[int]) -> None:
        scheduled = schedule.total_scheduled_cents
        if scheduled == schedule.total_payable_cents and amounts[-1] >= 0:
            return
        error = ScheduleReconciliationError(
            total_payable_cents=schedule.total_payable_cents,
            milestone_sum_cents=scheduled,
            tier=schedule.tier_label,
        )
        logger.critical(
            "schedule_reconciliation_failed",
            extra={"amounts": list(amounts)},
            exc_info=(type(error), error, None),
        )
        raise error
