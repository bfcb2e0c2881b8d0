"""
Module: billing_engines.waterfall
Responsibility:
    Distribute an aggregate paid total across an ordered milestone plan,
    filling earlier milestones completely before later ones receive funds.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Read-mostly: services call it every time payment state is displayed or
    reconciled.  Safe to run concurrently and repeatedly.

Invariants enforced:
    - Milestones are processed strictly by ``sequence_index``; input order
      and payment timestamps are irrelevant.
    - Conservation: sum(applied_cents) == min(total_paid, sum(amount_cents)).
    - Overpayment is never dropped: the excess is reported as
      ``unallocated_credit_cents`` and logged.
    - Same inputs, byte-identical output.

Failure modes:
    - InvalidAmountError for a negative or non-integer paid total or
      milestone amount.
    - ValidationError for duplicate sequence indexes.

Audit relevance:
    Allocation is recomputed from append-only payment events on every read,
    so there is no stored allocation that could drift from the facts.
"""

from __future__ import annotations

from collections.abc import Hashable, Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from billing_engines.tracer import traced_engine
from billing_kernel.exceptions import InvalidAmountError, ValidationError
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.waterfall")

COMPLETED_STATUS = "completed"


class MilestoneStatus(str, Enum):
    """Display status of a milestone after allocation."""

    PAID = "paid"
    PARTIAL = "partial"
    PENDING = "pending"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class WaterfallMilestone:
    """Allocation input: the parts of a milestone the waterfall reads."""

    milestone_id: Hashable | None
    sequence_index: int
    amount_cents: int
    due_date: date | None = None
    milestone_type: str | None = None
    description: str | None = None

    @classmethod
    def from_milestone(cls, milestone: Any) -> WaterfallMilestone:
        """Adapt any milestone-shaped object (ORM row or planned milestone)."""
        milestone_type = getattr(milestone, "milestone_type", None)
        return cls(
            milestone_id=getattr(milestone, "id", None),
            sequence_index=milestone.sequence_index,
            amount_cents=milestone.amount_cents,
            due_date=getattr(milestone, "due_date", None),
            milestone_type=getattr(milestone_type, "value", milestone_type),
            description=getattr(milestone, "description", None),
        )


@dataclass(frozen=True)
class AllocatedMilestone:
    """
    One milestone after allocation.

    Guarantees:
        - ``applied_cents + remaining_cents == amount_cents``.
        - ``remaining_cents >= 0``.
    """

    milestone_id: Hashable | None
    sequence_index: int
    milestone_type: str | None
    description: str | None
    amount_cents: int
    applied_cents: int
    remaining_cents: int
    due_date: date | None
    status: MilestoneStatus

    @property
    def is_satisfied(self) -> bool:
        return self.remaining_cents == 0

    @property
    def is_partial(self) -> bool:
        return 0 < self.applied_cents < self.amount_cents

    @property
    def is_due_now(self) -> bool:
        return self.due_date is None


@dataclass(frozen=True)
class WaterfallResult:
    """
    Complete allocation of a paid total.

    Guarantees:
        - ``total_applied_cents + unallocated_credit_cents == total_paid_cents``.
        - ``total_applied_cents + balance_remaining_cents == total_due_cents``.
    """

    lines: tuple[AllocatedMilestone, ...]
    total_due_cents: int
    total_paid_cents: int
    total_applied_cents: int
    balance_remaining_cents: int
    unallocated_credit_cents: int

    @property
    def is_fully_paid(self) -> bool:
        return self.balance_remaining_cents == 0

    @property
    def percent_paid(self) -> Decimal:
        """Applied share of the total due, two decimal places."""
        if self.total_due_cents == 0:
            return Decimal("100.00")
        pct = Decimal(self.total_applied_cents) * 100 / Decimal(self.total_due_cents)
        return pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @property
    def next_due(self) -> AllocatedMilestone | None:
        """Earliest milestone in sequence with money still owed."""
        for line in self.lines:
            if line.remaining_cents > 0:
                return line
        return None

    def line_for(self, milestone_id: Hashable) -> AllocatedMilestone | None:
        for line in self.lines:
            if line.milestone_id == milestone_id:
                return line
        return None


def total_completed_cents(events: Iterable[Any]) -> int:
    """Sum ``amount_cents`` over events whose status is completed."""
    return sum(e.amount_cents for e in events if e.status == COMPLETED_STATUS)


def _check_cents(field: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidAmountError(field, value)


class WaterfallAllocator:
    """
    Waterfall allocation of an aggregate paid total.

    Contract:
        Pure function of (milestones, total_paid_cents, as_of).
        ``as_of`` only affects the OVERDUE status, never the cents.

    Non-goals:
        - Does not honour per-payment milestone earmarks.  Earmarks are
          reported by ScheduleService, allocation stays aggregate.
    """

    @traced_engine("waterfall", "1.0", fingerprint_fields=("total_paid_cents", "as_of"))
    def allocate(
        self,
        milestones: Sequence[Any],
        total_paid_cents: int,
        as_of: date | None = None,
    ) -> WaterfallResult:
        """
        Allocate ``total_paid_cents`` across ``milestones``.

        Args:
            milestones: WaterfallMilestone instances, or any objects with
                ``sequence_index`` and ``amount_cents`` (adapted via
                ``WaterfallMilestone.from_milestone``).
            total_paid_cents: Sum of completed payments.
            as_of: Date used to flag unpaid past-due milestones OVERDUE.
        """
        _check_cents("total_paid_cents", total_paid_cents)

        inputs = [
            m if isinstance(m, WaterfallMilestone) else WaterfallMilestone.from_milestone(m)
            for m in milestones
        ]
        seen: set[int] = set()
        for m in inputs:
            _check_cents("amount_cents", m.amount_cents)
            if m.sequence_index in seen:
                raise ValidationError(
                    f"Duplicate milestone sequence_index {m.sequence_index}"
                )
            seen.add(m.sequence_index)

        pool = total_paid_cents
        lines: list[AllocatedMilestone] = []
        for m in sorted(inputs, key=lambda m: m.sequence_index):
            applied = min(pool, m.amount_cents)
            pool -= applied
            remaining = m.amount_cents - applied
            lines.append(
                AllocatedMilestone(
                    milestone_id=m.milestone_id,
                    sequence_index=m.sequence_index,
                    milestone_type=m.milestone_type,
                    description=m.description,
                    amount_cents=m.amount_cents,
                    applied_cents=applied,
                    remaining_cents=remaining,
                    due_date=m.due_date,
                    status=self._status(applied, remaining, m.due_date, as_of),
                )
            )

        total_due = sum(line.amount_cents for line in lines)
        total_applied = sum(line.applied_cents for line in lines)

        if pool > 0:
            logger.warning(
                "waterfall_overpayment",
                extra={
                    "total_due_cents": total_due,
                    "total_paid_cents": total_paid_cents,
                    "unallocated_credit_cents": pool,
                },
            )

        return WaterfallResult(
            lines=tuple(lines),
            total_due_cents=total_due,
            total_paid_cents=total_paid_cents,
            total_applied_cents=total_applied,
            balance_remaining_cents=total_due - total_applied,
            unallocated_credit_cents=pool,
        )

    @staticmethod
    def _status(
        applied: int,
        remaining: int,
        due_date: date | None,
        as_of: date | None,
    ) -> MilestoneStatus:
        if remaining == 0:
            return MilestoneStatus.PAID
        if as_of is not None and due_date is not None and due_date < as_of:
            return MilestoneStatus.OVERDUE
        if applied > 0:
            return MilestoneStatus.PARTIAL
        return MilestoneStatus.PENDING
