"""
ScheduleService -- payment schedules, payment events and waterfall reads.

Responsibility:
    Persist MilestoneScheduler plans, replace them atomically on explicit
    regeneration, record append-only payment events, and compute the
    waterfall allocation of completed payments on every read.

Architecture position:
    Services -- stateful orchestration over billing_engines + billing_kernel.
    The only layer that reads the wall clock for schedules (via Clock).

Invariants enforced:
    - One schedule per document.
    - Regeneration is refused with ScheduleAlreadyReconciledError as soon as
      any completed payment is allocated to the current schedule.  Otherwise
      the old milestones are deleted and the new ones inserted inside one
      SAVEPOINT, and the schedule version is bumped.
    - Regeneration and completed payments lock the schedule row, and a
      completed payment bumps the schedule version.  A regeneration that
      checked allocations before a payment landed fails with
      OptimisticLockError; it never replaces paid milestones.
    - Allocation is never stored; it is recomputed from payment events.

Failure modes:
    - ScheduleNotFoundError, ScheduleAlreadyExistsError.
    - ScheduleAlreadyReconciledError (reportable conflict, never retried).
    - OptimisticLockError on version mismatch.
    - InvalidAmountError for non-positive payment amounts.
    - EntityNotFoundError for an earmark naming a milestone of another
      document's schedule.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from billing_engines.milestones import MilestoneSchedule, MilestoneScheduler
from billing_engines.waterfall import (
    AllocatedMilestone,
    WaterfallAllocator,
    WaterfallResult,
    total_completed_cents,
)
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    EntityNotFoundError,
    InvalidAmountError,
    OptimisticLockError,
    ScheduleAlreadyExistsError,
    ScheduleAlreadyReconciledError,
    ScheduleNotFoundError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.payment import PaymentEvent, PaymentEventStatus
from billing_kernel.models.schedule import PaymentMilestone, PaymentSchedule

logger = get_logger("services.schedule")


@dataclass(frozen=True)
class PaymentSummary:
    """
    Payment state of one document as shown to operators and customers.

    ``earmarked`` groups completed payments by the milestone they were
    labelled for.  It is informational; ``allocation`` is what counts.
    """

    document_id: UUID
    tier_label: str
    tax_exempt: bool
    allocation: WaterfallResult
    completed_event_count: int
    earmarked: dict[UUID, tuple[PaymentEvent, ...]] = field(default_factory=dict)

    @property
    def lines(self) -> tuple[AllocatedMilestone, ...]:
        return self.allocation.lines

    @property
    def total_due_cents(self) -> int:
        return self.allocation.total_due_cents

    @property
    def total_paid_cents(self) -> int:
        return self.allocation.total_paid_cents

    @property
    def balance_remaining_cents(self) -> int:
        return self.allocation.balance_remaining_cents

    @property
    def unallocated_credit_cents(self) -> int:
        return self.allocation.unallocated_credit_cents


class ScheduleService:
    """
    Schedules and payments for billing documents.

    Contract:
        Generation and regeneration run the scheduler with today's date from
        the injected clock.  Payment summaries are pure reads.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT capture card payments; events arrive already processed.
    """

    def __init__(
        self,
        session: Session,
        scheduler: MilestoneScheduler | None = None,
        allocator: WaterfallAllocator | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._scheduler = scheduler or MilestoneScheduler()
        self._allocator = allocator or WaterfallAllocator()
        self._clock = clock or SystemClock()

    # Schedules

    def get_schedule(self, document_id: UUID, for_update: bool = False) -> PaymentSchedule:
        schedule = self._find_schedule(document_id, for_update=for_update)
        if schedule is None:
            raise ScheduleNotFoundError(str(document_id))
        return schedule

    def generate_schedule(
        self,
        document_id: UUID,
        total_payable_cents: int,
        days_until_due: int,
        is_exempt: bool = False,
    ) -> PaymentSchedule:
        """Create the document's first schedule."""
        existing = self._find_schedule(document_id)
        if existing is not None:
            raise ScheduleAlreadyExistsError(str(document_id), str(existing.id))

        plan = self._plan(total_payable_cents, days_until_due, is_exempt)

        savepoint = self._session.begin_nested()
        try:
            schedule = PaymentSchedule(
                document_id=document_id,
                total_payable_cents=plan.total_payable_cents,
                tier_label=plan.tier_label,
                is_exempt=plan.is_exempt,
                tax_exempt=plan.tax_exempt,
                days_until_due=days_until_due,
                generated_at=self._clock.now(),
                milestones=self._milestone_rows(plan),
            )
            self._session.add(schedule)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            winner = self._find_schedule(document_id)
            if winner is None:
                raise
            raise ScheduleAlreadyExistsError(str(document_id), str(winner.id)) from None

        logger.info(
            "payment_schedule_created",
            extra={
                "document_id": str(document_id),
                "schedule_id": str(schedule.id),
                "tier": plan.tier_label,
                "total_payable_cents": plan.total_payable_cents,
            },
        )
        return schedule

    def regenerate_schedule(
        self,
        document_id: UUID,
        total_payable_cents: int,
        days_until_due: int,
        is_exempt: bool = False,
        expected_version: int | None = None,
    ) -> PaymentSchedule:
        """
        Atomically replace an unpaid schedule.

        Raises:
            ScheduleAlreadyReconciledError: Completed payments are already
                applied to one or more current milestones.
        """
        # Serializes with record_payment: the allocation check below sees
        # every payment committed before this lock was granted
        schedule = self.get_schedule(document_id, for_update=True)
        if expected_version is not None and schedule.version != expected_version:
            raise OptimisticLockError(
                "PaymentSchedule",
                str(schedule.id),
                expected_version=expected_version,
                actual_version=schedule.version,
            )

        current = self._allocate(schedule, self._completed_events(document_id))
        allocated = [line for line in current.lines if line.applied_cents > 0]
        if allocated:
            error = ScheduleAlreadyReconciledError(
                str(document_id),
                allocated_cents=sum(line.applied_cents for line in allocated),
                milestone_ids=[str(line.milestone_id) for line in allocated],
            )
            logger.warning(
                "schedule_regeneration_refused",
                extra={"document_id": str(document_id)},
                exc_info=(type(error), error, None),
            )
            raise error

        plan = self._plan(total_payable_cents, days_until_due, is_exempt)
        previous_tier = schedule.tier_label

        try:
            with self._session.begin_nested():
                # Old rows must be gone before the new sequence indexes land
                schedule.milestones.clear()
                self._session.flush()
                schedule.milestones.extend(self._milestone_rows(plan))
                schedule.total_payable_cents = plan.total_payable_cents
                schedule.tier_label = plan.tier_label
                schedule.is_exempt = plan.is_exempt
                schedule.tax_exempt = plan.tax_exempt
                schedule.days_until_due = days_until_due
                schedule.generated_at = self._clock.now()
                # Replacing milestones alone would not bump the version
                flag_modified(schedule, "generated_at")
                self._session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError("PaymentSchedule", str(schedule.id)) from exc

        logger.info(
            "payment_schedule_regenerated",
            extra={
                "document_id": str(document_id),
                "schedule_id": str(schedule.id),
                "previous_tier": previous_tier,
                "tier": plan.tier_label,
                "version": schedule.version,
            },
        )
        return schedule

    # Payments

    def record_payment(
        self,
        document_id: UUID,
        amount_cents: int,
        occurred_at: datetime | None = None,
        status: PaymentEventStatus = PaymentEventStatus.COMPLETED,
        milestone_id: UUID | None = None,
        reference: str | None = None,
    ) -> PaymentEvent:
        """Append a payment fact.  Never updates an existing event."""
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise InvalidAmountError("amount_cents", amount_cents, "must be a positive integer")

        if milestone_id is not None:
            milestone = self._session.get(PaymentMilestone, milestone_id)
            if milestone is None or milestone.schedule.document_id != document_id:
                raise EntityNotFoundError("PaymentMilestone", str(milestone_id))

        event = PaymentEvent(
            document_id=document_id,
            amount_cents=amount_cents,
            occurred_at=occurred_at or self._clock.now(),
            status=PaymentEventStatus(status).value,
            milestone_id=milestone_id,
            reference=reference,
        )

        schedule = None
        if event.is_completed:
            schedule = self._find_schedule(document_id, for_update=True)

        try:
            with self._session.begin_nested():
                self._session.add(event)
                if schedule is not None:
                    # A regeneration that read the schedule before this
                    # payment must fail its versioned UPDATE
                    flag_modified(schedule, "generated_at")
                self._session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError("PaymentSchedule", str(schedule.id)) from exc

        logger.info(
            "payment_recorded",
            extra={
                "document_id": str(document_id),
                "payment_event_id": str(event.id),
                "amount_cents": amount_cents,
                "status": event.status,
                "earmarked": milestone_id is not None,
            },
        )
        return event

    def list_payments(self, document_id: UUID) -> list[PaymentEvent]:
        return list(
            self._session.execute(
                select(PaymentEvent)
                .where(PaymentEvent.document_id == document_id)
                .order_by(PaymentEvent.occurred_at, PaymentEvent.id)
            ).scalars()
        )

    def payment_summary(self, document_id: UUID, as_of: date | None = None) -> PaymentSummary:
        """Waterfall allocation of completed payments, plus earmark grouping."""
        schedule = self.get_schedule(document_id)
        completed = self._completed_events(document_id)

        earmarked: dict[UUID, list[PaymentEvent]] = {}
        for event in completed:
            if event.milestone_id is not None:
                earmarked.setdefault(event.milestone_id, []).append(event)

        return PaymentSummary(
            document_id=document_id,
            tier_label=schedule.tier_label,
            tax_exempt=schedule.tax_exempt,
            allocation=self._allocate(schedule, completed, as_of or self._clock.today()),
            completed_event_count=len(completed),
            earmarked={k: tuple(v) for k, v in earmarked.items()},
        )

    # Internals

    def _find_schedule(
        self, document_id: UUID, for_update: bool = False,
    ) -> PaymentSchedule | None:
        stmt = select(PaymentSchedule).where(PaymentSchedule.document_id == document_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalar_one_or_none()

    def _completed_events(self, document_id: UUID) -> list[PaymentEvent]:
        return [e for e in self.list_payments(document_id) if e.is_completed]

    def _plan(
        self,
        total_payable_cents: int,
        days_until_due: int,
        is_exempt: bool,
    ) -> MilestoneSchedule:
        return self._scheduler.generate(
            total_payable_cents=total_payable_cents,
            days_until_due=days_until_due,
            is_exempt=is_exempt,
            as_of=self._clock.today(),
        )

    def _allocate(
        self,
        schedule: PaymentSchedule,
        completed: list[PaymentEvent],
        as_of: date | None = None,
    ) -> WaterfallResult:
        return self._allocator.allocate(
            milestones=schedule.milestones,
            total_paid_cents=total_completed_cents(completed),
            as_of=as_of,
        )

    @staticmethod
    def _milestone_rows(plan: MilestoneSchedule) -> list[PaymentMilestone]:
        return [
            PaymentMilestone(
                milestone_type=m.milestone_type.value,
                percentage=m.percentage,
                amount_cents=m.amount_cents,
                due_date=m.due_date,
                sequence_index=m.sequence_index,
                description=m.description,
            )
            for m in plan.milestones
        ]
