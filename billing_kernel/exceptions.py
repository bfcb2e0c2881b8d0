"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Billing errors end up in front of two very different audiences: an operator
who typed a bad value, and an engineer who has to explain a wrong dollar
amount.  Callers therefore catch by TYPE and read structured attributes,
never parse messages.

Every exception:
  1. Has a class-level ``code`` (machine-readable, API-safe)
  2. Carries its context as attributes (not only in the message)
  3. Belongs to exactly one of the categories below

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- ValidationError            malformed input, never retried
    |   +-- InvalidAmountError
    |   +-- InvalidQuantityError
    |   +-- InvalidPositionError
    |   +-- EmptyAttributionError
    |   +-- UnknownChangeSourceError
    |   +-- UnknownTrackedFieldError
    |   +-- InvalidScheduleInputError
    |   +-- EditSessionStateError
    |
    +-- NotFoundError
    |   +-- CollectionNotFoundError
    |   +-- LineItemNotFoundError
    |   +-- ScheduleNotFoundError
    |   +-- EntityNotFoundError
    |
    +-- ConflictError              reportable; the caller may refresh and retry
    |   +-- OptimisticLockError
    |   +-- ScheduleAlreadyExistsError
    |   +-- ScheduleAlreadyReconciledError
    |
    +-- ConsistencyFailure         a bug, not bad input; fatal for the operation
    |   +-- ScheduleReconciliationError
    |   +-- AuditMutationFailedError
    |   +-- AuditChainBrokenError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | When Raised
-------------|-------------------------------|------------------------------------
Validation   | INVALID_AMOUNT                | Negative / non-integer cents
             | INVALID_QUANTITY              | Quantity not a positive integer
             | INVALID_POSITION              | Index outside the displayed list
             | EMPTY_ATTRIBUTION             | Operator identity missing
             | UNKNOWN_CHANGE_SOURCE         | Source not in the closed set
             | UNKNOWN_TRACKED_FIELD         | Field not in the tracked registry
             | INVALID_SCHEDULE_INPUT        | Bad lead time / tier definition
             | EDIT_SESSION_STATE            | Edit session used out of order
-------------|-------------------------------|------------------------------------
Not found    | COLLECTION_NOT_FOUND          | No line item collection
             | LINE_ITEM_NOT_FOUND           | No line item with that id
             | SCHEDULE_NOT_FOUND            | No schedule for the document
             | ENTITY_NOT_FOUND              | Audited entity missing
-------------|-------------------------------|------------------------------------
Conflict     | OPTIMISTIC_LOCK_CONFLICT      | Collection/schedule version moved
             | SCHEDULE_ALREADY_EXISTS       | Generate called twice
             | SCHEDULE_ALREADY_RECONCILED   | Regenerate over allocated money
-------------|-------------------------------|------------------------------------
Consistency  | SCHEDULE_RECONCILIATION_FAILED| Milestone sum != total payable
             | AUDIT_MUTATION_FAILED         | Audit appended, mutation failed
             | AUDIT_CHAIN_BROKEN            | Hash chain validation failed
-------------|-------------------------------|------------------------------------
Immutability | IMMUTABILITY_VIOLATION        | UPDATE/DELETE of append-only row

===============================================================================
HANDLING PATTERNS
===============================================================================

    try:
        service.regenerate_schedule(...)
    except ScheduleAlreadyReconciledError as e:
        # Reportable conflict: money is already applied to the schedule.
        show_conflict(e.document_id, e.allocated_cents)
    except ConsistencyFailure:
        # Never swallow: this is a bug.
        raise

The engine itself never retries.  Only the caller knows whether re-reading
fresh state is safe.
"""


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a ``code`` class attribute for
    machine-readable error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Validation errors


class ValidationError(BillingKernelError):
    """Malformed input.  Surfaced to the caller, never retried."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """A cent amount is negative, fractional, or otherwise unusable."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, field: str, value: object, reason: str = "must be a non-negative integer"):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid amount for {field}: {value!r} ({reason})")


class InvalidQuantityError(ValidationError):
    """Line item quantity must be a positive integer."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Quantity must be a positive integer, got {value!r}")


class InvalidPositionError(ValidationError):
    """A source or destination index is outside the displayed ordering."""

    code: str = "INVALID_POSITION"

    def __init__(self, index: int, size: int, role: str = "destination"):
        self.index = index
        self.size = size
        self.role = role
        super().__init__(
            f"Invalid {role} index {index} for ordering of {size} items"
        )


class EmptyAttributionError(ValidationError):
    """A change cannot be committed without an operator identity."""

    code: str = "EMPTY_ATTRIBUTION"

    def __init__(self, min_length: int = 1):
        self.min_length = min_length
        super().__init__(
            f"Attribution is required (minimum {min_length} character(s))"
        )


class UnknownChangeSourceError(ValidationError):
    """The change source is not one of the supported channels."""

    code: str = "UNKNOWN_CHANGE_SOURCE"

    def __init__(self, source: object):
        self.source = source
        super().__init__(f"Unknown change source: {source!r}")


class UnknownTrackedFieldError(ValidationError):
    """A field name is not part of the tracked field registry."""

    code: str = "UNKNOWN_TRACKED_FIELD"

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"Field is not tracked: {field_name}")


class InvalidScheduleInputError(ValidationError):
    """Schedule generation input (lead time, tier definition) is invalid."""

    code: str = "INVALID_SCHEDULE_INPUT"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid schedule input {field}={value!r}: {reason}")


class EditSessionStateError(ValidationError):
    """An edit session operation was called in the wrong state."""

    code: str = "EDIT_SESSION_STATE"

    def __init__(self, operation: str, state: str):
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} while edit session is {state}")


# Not-found errors


class NotFoundError(BillingKernelError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class CollectionNotFoundError(NotFoundError):
    code: str = "COLLECTION_NOT_FOUND"

    def __init__(self, collection_id: str):
        self.collection_id = collection_id
        super().__init__(f"Line item collection not found: {collection_id}")


class LineItemNotFoundError(NotFoundError):
    code: str = "LINE_ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Line item not found: {item_id}")


class ScheduleNotFoundError(NotFoundError):
    code: str = "SCHEDULE_NOT_FOUND"

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"No payment schedule for document: {document_id}")


class EntityNotFoundError(NotFoundError):
    code: str = "ENTITY_NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


# Conflict errors


class ConflictError(BillingKernelError):
    """
    Base exception for reportable conflicts.

    The caller decides whether to refresh state and retry.
    """

    code: str = "CONFLICT"


class OptimisticLockError(ConflictError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


class ScheduleAlreadyExistsError(ConflictError):
    """A schedule already exists; regeneration must be explicit."""

    code: str = "SCHEDULE_ALREADY_EXISTS"

    def __init__(self, document_id: str, schedule_id: str):
        self.document_id = document_id
        self.schedule_id = schedule_id
        super().__init__(
            f"Payment schedule {schedule_id} already exists for document "
            f"{document_id}; use regenerate_schedule"
        )


class ScheduleAlreadyReconciledError(ConflictError):
    """
    Regeneration refused: payments are already allocated to the schedule.
    """

    code: str = "SCHEDULE_ALREADY_RECONCILED"

    def __init__(self, document_id: str, allocated_cents: int, milestone_ids: list[str]):
        self.document_id = document_id
        self.allocated_cents = allocated_cents
        self.milestone_ids = milestone_ids
        super().__init__(
            f"Cannot regenerate schedule for document {document_id}: "
            f"{allocated_cents} cents already allocated to "
            f"{len(milestone_ids)} milestone(s)"
        )


# Consistency failures


class ConsistencyFailure(BillingKernelError):
    """
    Base exception for internal consistency failures.

    These indicate a bug rather than bad input.  They are logged at
    CRITICAL and must never be swallowed.
    """

    code: str = "CONSISTENCY_FAILURE"


class ScheduleReconciliationError(ConsistencyFailure):
    """Milestone amounts do not sum to the total payable amount."""

    code: str = "SCHEDULE_RECONCILIATION_FAILED"

    def __init__(self, total_payable_cents: int, milestone_sum_cents: int, tier: str):
        self.total_payable_cents = total_payable_cents
        self.milestone_sum_cents = milestone_sum_cents
        self.tier = tier
        super().__init__(
            f"Schedule tier {tier} does not reconcile: milestones sum to "
            f"{milestone_sum_cents}, total payable is {total_payable_cents}"
        )


class AuditMutationFailedError(ConsistencyFailure):
    """The audit append succeeded but the described mutation failed."""

    code: str = "AUDIT_MUTATION_FAILED"

    def __init__(self, entity_type: str, entity_id: str, batch_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.batch_id = batch_id
        self.reason = reason
        super().__init__(
            f"Mutation of {entity_type} {entity_id} failed after audit "
            f"batch {batch_id} was appended: {reason}"
        )


class AuditChainBrokenError(ConsistencyFailure):
    """Change record hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, record_id: str, expected_hash: str, actual_hash: str):
        self.record_id = record_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {record_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Immutability


class ImmutabilityViolationError(BillingKernelError):
    """
    Attempted to modify or delete an append-only record.

    ChangeRecord and PaymentEvent rows are immutable from creation.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
