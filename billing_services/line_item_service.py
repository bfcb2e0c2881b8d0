"""
LineItemService -- ordered line item persistence over the sequencer engine.

Responsibility:
    Read a collection's current ordering, ask OrderKeySequencer for the
    key(s) to write, and persist them as one atomic, version-checked write.
    Also owns the quantity x unit price invariant on every pricing change.

Architecture position:
    Services -- stateful orchestration over billing_engines + billing_kernel.

Invariants enforced:
    - Every ordering write (add, move, remove, reprice) bumps the
      collection version inside a SAVEPOINT.  A writer holding a stale read
      gets OptimisticLockError and never blind-writes a key computed from
      old state.
    - A renumber rewrites keys in two passes through a temporary band above
      every live key, so the UNIQUE(collection_id, order_key) constraint
      holds after every statement.
    - total_cents == quantity * unit_price_cents after every pricing write.

Failure modes:
    - CollectionNotFoundError / LineItemNotFoundError.
    - InvalidQuantityError / InvalidAmountError / InvalidPositionError.
    - OptimisticLockError on ``expected_version`` mismatch or a concurrent
      version bump detected at flush.

Audit relevance:
    Order keys are presentation data, so reorders are logged but not added
    to the change trail.
"""

from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from billing_engines.sequencer import OrderKeySequencer, ReorderResult
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    CollectionNotFoundError,
    InvalidAmountError,
    InvalidQuantityError,
    LineItemNotFoundError,
    OptimisticLockError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.line_item import LineItem, LineItemCollection

logger = get_logger("services.line_items")


def _check_quantity(quantity: object) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantityError(quantity)
    return quantity


def _check_unit_price(unit_price_cents: object) -> int:
    if (
        isinstance(unit_price_cents, bool)
        or not isinstance(unit_price_cents, int)
        or unit_price_cents < 0
    ):
        raise InvalidAmountError("unit_price_cents", unit_price_cents)
    return unit_price_cents


class LineItemService:
    """
    Ordered line items for billing documents.

    Contract:
        Each public write is a single read-compute-write against one
        collection, wrapped in ``session.begin_nested()``.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT retry on conflict; the caller re-reads and decides.
    """

    def __init__(
        self,
        session: Session,
        sequencer: OrderKeySequencer | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._sequencer = sequencer or OrderKeySequencer()
        self._clock = clock or SystemClock()

    # Reads

    def get_or_create_collection(self, document_id: UUID) -> LineItemCollection:
        """The document's collection, created empty on first use."""
        collection = self._find_collection(document_id)
        if collection is not None:
            return collection

        savepoint = self._session.begin_nested()
        try:
            collection = LineItemCollection(
                document_id=document_id,
                updated_at=self._clock.now(),
            )
            self._session.add(collection)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            # Lost a creation race; the winner's row is the collection
            savepoint.rollback()
            collection = self._find_collection(document_id)
            if collection is None:
                raise
            return collection

        logger.info(
            "line_item_collection_created",
            extra={"document_id": str(document_id), "collection_id": str(collection.id)},
        )
        return collection

    def list_items(self, collection_id: UUID) -> list[LineItem]:
        """Items in visual order."""
        return list(
            self._session.execute(
                select(LineItem)
                .where(LineItem.collection_id == collection_id)
                .order_by(LineItem.order_key)
            ).scalars()
        )

    def get_item(self, item_id: UUID) -> LineItem:
        item = self._session.get(LineItem, item_id)
        if item is None:
            raise LineItemNotFoundError(str(item_id))
        return item

    # Writes

    def add_item(
        self,
        collection_id: UUID,
        title: str,
        quantity: int,
        unit_price_cents: int,
        description: str | None = None,
        position: int | None = None,
        expected_version: int | None = None,
    ) -> LineItem:
        """
        Create a line item, appended unless ``position`` is given.

        Postconditions:
            The new item's key is greater than every existing key when
            appended; otherwise it sorts at ``position``.
        """
        _check_quantity(quantity)
        _check_unit_price(unit_price_cents)
        collection = self._get_collection(collection_id, expected_version)
        items = self.list_items(collection_id)

        with self._session.begin_nested():
            if position is None:
                order_key = self._sequencer.key_for_append([i.order_key for i in items])
            else:
                result = self._sequencer.insert_at(
                    ordered=[(i.id, i.order_key) for i in items],
                    index=position,
                )
                if result.requires_renumber:
                    self._apply_renumber(collection, items, result.renumbered)
                order_key = result.order_key

            item = LineItem(
                collection_id=collection.id,
                order_key=order_key,
                title=title,
                description=description,
                quantity=quantity,
                unit_price_cents=unit_price_cents,
                total_cents=0,
                created_at=self._clock.now(),
            )
            item.recompute_total()
            self._session.add(item)
            self._touch_and_flush(collection)

        logger.info(
            "line_item_added",
            extra={
                "collection_id": str(collection.id),
                "item_id": str(item.id),
                "order_key": order_key,
                "total_cents": item.total_cents,
            },
        )
        return item

    def reorder(
        self,
        collection_id: UUID,
        item_id: UUID,
        destination_index: int,
        expected_version: int | None = None,
    ) -> ReorderResult:
        """
        Move ``item_id`` to ``destination_index`` of the visual ordering.

        Returns the sequencer's result; a no-op move writes nothing.
        """
        collection = self._get_collection(collection_id, expected_version)
        items = self.list_items(collection_id)
        source_index = next(
            (i for i, item in enumerate(items) if item.id == item_id), None,
        )
        if source_index is None:
            raise LineItemNotFoundError(str(item_id))

        result = self._sequencer.reorder(
            ordered=[(i.id, i.order_key) for i in items],
            source_index=source_index,
            destination_index=destination_index,
        )
        if result.noop:
            return result

        with self._session.begin_nested():
            if result.requires_renumber:
                self._apply_renumber(collection, items, result.renumbered)
            else:
                items[source_index].order_key = result.order_key
            self._touch_and_flush(collection)

        logger.info(
            "line_item_reordered",
            extra={
                "collection_id": str(collection.id),
                "item_id": str(item_id),
                "source_index": source_index,
                "destination_index": destination_index,
                "order_key": result.order_key,
                "renumbered": result.requires_renumber,
            },
        )
        return result

    def update_pricing(
        self,
        item_id: UUID,
        quantity: int | None = None,
        unit_price_cents: int | None = None,
        expected_version: int | None = None,
    ) -> LineItem:
        """Change quantity and/or unit price; total is always recomputed."""
        if quantity is not None:
            _check_quantity(quantity)
        if unit_price_cents is not None:
            _check_unit_price(unit_price_cents)

        item = self.get_item(item_id)
        collection = self._get_collection(item.collection_id, expected_version)

        with self._session.begin_nested():
            if quantity is not None:
                item.quantity = quantity
            if unit_price_cents is not None:
                item.unit_price_cents = unit_price_cents
            item.recompute_total()
            self._touch_and_flush(collection)

        logger.info(
            "line_item_repriced",
            extra={
                "item_id": str(item.id),
                "quantity": item.quantity,
                "unit_price_cents": item.unit_price_cents,
                "total_cents": item.total_cents,
            },
        )
        return item

    def remove_item(self, item_id: UUID, expected_version: int | None = None) -> None:
        item = self.get_item(item_id)
        collection = self._get_collection(item.collection_id, expected_version)

        with self._session.begin_nested():
            self._session.delete(item)
            self._touch_and_flush(collection)

        logger.info(
            "line_item_removed",
            extra={"collection_id": str(collection.id), "item_id": str(item_id)},
        )

    # Internals

    def _find_collection(self, document_id: UUID) -> LineItemCollection | None:
        return self._session.execute(
            select(LineItemCollection).where(LineItemCollection.document_id == document_id)
        ).scalar_one_or_none()

    def _get_collection(
        self,
        collection_id: UUID,
        expected_version: int | None,
    ) -> LineItemCollection:
        collection = self._session.get(LineItemCollection, collection_id)
        if collection is None:
            raise CollectionNotFoundError(str(collection_id))
        if expected_version is not None and collection.version != expected_version:
            logger.warning(
                "line_item_version_conflict",
                extra={
                    "collection_id": str(collection_id),
                    "expected_version": expected_version,
                    "actual_version": collection.version,
                },
            )
            raise OptimisticLockError(
                "LineItemCollection",
                str(collection_id),
                expected_version=expected_version,
                actual_version=collection.version,
            )
        return collection

    def _apply_renumber(
        self,
        collection: LineItemCollection,
        items: Sequence[LineItem],
        renumbered: dict,
    ) -> None:
        by_id = {item.id: item for item in items}
        ceiling = max(
            [item.order_key for item in items] + list(renumbered.values()),
        )
        # Pass 1: park every key above all live and final keys
        for offset, item_id in enumerate(renumbered, start=1):
            by_id[item_id].order_key = ceiling + offset
        self._session.flush()
        # Pass 2: final keys
        for item_id, key in renumbered.items():
            by_id[item_id].order_key = key
        self._session.flush()

        logger.info(
            "line_items_renumbered",
            extra={"collection_id": str(collection.id), "item_count": len(renumbered)},
        )

    def _touch_and_flush(self, collection: LineItemCollection) -> None:
        collection.updated_at = self._clock.now()
        # Force the versioned UPDATE even when the timestamp is unchanged
        flag_modified(collection, "updated_at")
        try:
            self._session.flush()
        except StaleDataError as exc:
            logger.warning(
                "line_item_concurrent_write",
                extra={"collection_id": str(collection.id)},
            )
            raise OptimisticLockError(
                "LineItemCollection",
                str(collection.id),
                expected_version=collection.version,
            ) from exc
