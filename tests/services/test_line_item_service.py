"""
Tests for LineItemService.

Covers:
- Collection creation (idempotent per document)
- Appending and positional inserts
- Reordering, including renumbering under the unique key constraint
- Pricing updates and the quantity x unit price invariant
- Removal
- Optimistic locking through the collection version
"""

from uuid import uuid4

import pytest
from sqlalchemy import update

from billing_kernel.exceptions import (
    CollectionNotFoundError,
    InvalidAmountError,
    InvalidPositionError,
    InvalidQuantityError,
    LineItemNotFoundError,
    OptimisticLockError,
)
from billing_kernel.models.line_item import LineItemCollection


def _titles(service, collection_id):
    return [item.title for item in service.list_items(collection_id)]


class TestCollections:
    """Tests for per-document collections."""

    def test_created_once_per_document(self, line_item_service):
        document_id = uuid4()

        first = line_item_service.get_or_create_collection(document_id)
        second = line_item_service.get_or_create_collection(document_id)

        assert first.id == second.id
        assert first.version == 1

    def test_missing_collection(self, line_item_service):
        with pytest.raises(CollectionNotFoundError):
            line_item_service.add_item(uuid4(), "Buffet", 1, 100)


class TestAddItem:
    """Tests for adding line items."""

    def test_append_assigns_gapped_keys(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        for title in ("Buffet", "Bar", "Staffing"):
            line_item_service.add_item(collection.id, title, 1, 1000)

        items = line_item_service.list_items(collection.id)

        assert [i.order_key for i in items] == [10, 20, 30]
        assert [i.title for i in items] == ["Buffet", "Bar", "Staffing"]

    def test_total_is_quantity_times_unit_price(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        item = line_item_service.add_item(collection.id, "Plated dinner", 120, 4550)

        assert item.total_cents == 546000

    def test_insert_at_position(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        line_item_service.add_item(collection.id, "Buffet", 1, 100)
        line_item_service.add_item(collection.id, "Staffing", 1, 100)

        item = line_item_service.add_item(collection.id, "Bar", 1, 100, position=1)

        assert item.order_key == 15
        assert _titles(line_item_service, collection.id) == ["Buffet", "Bar", "Staffing"]

    def test_insert_into_converged_gap_renumbers(self, line_item_service, session):
        collection = line_item_service.get_or_create_collection(uuid4())
        a = line_item_service.add_item(collection.id, "A", 1, 100)
        b = line_item_service.add_item(collection.id, "B", 1, 100)
        a.order_key, b.order_key = 10, 11
        session.flush()

        line_item_service.add_item(collection.id, "New", 1, 100, position=1)

        items = line_item_service.list_items(collection.id)
        assert [i.title for i in items] == ["A", "New", "B"]
        assert [i.order_key for i in items] == [10, 15, 20]

    def test_each_write_bumps_version(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        line_item_service.add_item(collection.id, "Buffet", 1, 100)
        line_item_service.add_item(collection.id, "Bar", 1, 100)

        assert collection.version == 3

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
    def test_bad_quantity_rejected(self, line_item_service, quantity):
        collection = line_item_service.get_or_create_collection(uuid4())
        with pytest.raises(InvalidQuantityError):
            line_item_service.add_item(collection.id, "Buffet", quantity, 100)

    def test_negative_unit_price_rejected(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        with pytest.raises(InvalidAmountError):
            line_item_service.add_item(collection.id, "Buffet", 1, -100)

    def test_zero_unit_price_allowed(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        item = line_item_service.add_item(collection.id, "Complimentary cake", 1, 0)

        assert item.total_cents == 0


class TestReorder:
    """Tests for moving items."""

    def setup_method(self):
        self.titles = ("Buffet", "Bar", "Staffing")

    def _collection(self, service):
        collection = service.get_or_create_collection(uuid4())
        items = [service.add_item(collection.id, t, 1, 100) for t in self.titles]
        return collection, items

    def test_move_last_to_first(self, line_item_service):
        collection, items = self._collection(line_item_service)

        result = line_item_service.reorder(collection.id, items[2].id, 0)

        assert result.order_key == 0
        assert _titles(line_item_service, collection.id) == ["Staffing", "Buffet", "Bar"]

    def test_single_row_write(self, line_item_service):
        collection, items = self._collection(line_item_service)

        line_item_service.reorder(collection.id, items[0].id, 1)

        keys = {i.title: i.order_key for i in line_item_service.list_items(collection.id)}
        assert keys == {"Buffet": 25, "Bar": 20, "Staffing": 30}

    def test_noop_move_writes_nothing(self, line_item_service):
        collection, items = self._collection(line_item_service)
        version = collection.version

        result = line_item_service.reorder(collection.id, items[1].id, 1)

        assert result.noop
        assert collection.version == version

    def test_repeated_moves_converge_and_renumber(self, line_item_service):
        """Repeatedly moving into the same gap eventually renumbers."""
        collection, items = self._collection(line_item_service)
        for _ in range(6):
            line_item_service.reorder(collection.id, items[2].id, 1)
            line_item_service.reorder(collection.id, items[1].id, 1)

        rows = line_item_service.list_items(collection.id)
        keys = [i.order_key for i in rows]
        assert keys == sorted(keys)
        assert len(set(keys)) == 3
        assert sorted(i.title for i in rows) == sorted(self.titles)

    def test_renumber_keeps_unique_keys(self, line_item_service, session):
        collection, items = self._collection(line_item_service)
        for item, key in zip(items, (10, 11, 12)):
            item.order_key = key
        session.flush()

        result = line_item_service.reorder(collection.id, items[2].id, 1)

        assert result.requires_renumber
        rows = line_item_service.list_items(collection.id)
        assert [i.title for i in rows] == ["Buffet", "Staffing", "Bar"]
        assert [i.order_key for i in rows] == [10, 15, 20]

    def test_unknown_item(self, line_item_service):
        collection, _ = self._collection(line_item_service)
        with pytest.raises(LineItemNotFoundError):
            line_item_service.reorder(collection.id, uuid4(), 0)

    def test_destination_out_of_range(self, line_item_service):
        collection, items = self._collection(line_item_service)
        with pytest.raises(InvalidPositionError):
            line_item_service.reorder(collection.id, items[0].id, 3)

    def test_reorder_logged(self, line_item_service, captured_logs):
        collection, items = self._collection(line_item_service)
        line_item_service.reorder(collection.id, items[2].id, 0)

        records = [r for r in captured_logs() if r["message"] == "line_item_reordered"]
        assert records[0]["destination_index"] == 0
        assert records[0]["renumbered"] is False


class TestPricing:
    """Tests for quantity and unit price updates."""

    def test_quantity_change_recomputes_total(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        item = line_item_service.add_item(collection.id, "Plated dinner", 100, 4500)

        line_item_service.update_pricing(item.id, quantity=140)

        assert item.total_cents == 630000

    def test_unit_price_change_recomputes_total(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        item = line_item_service.add_item(collection.id, "Plated dinner", 100, 4500)

        line_item_service.update_pricing(item.id, unit_price_cents=5000)

        assert item.total_cents == 500000

    def test_invalid_quantity_leaves_item_unchanged(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        item = line_item_service.add_item(collection.id, "Plated dinner", 100, 4500)

        with pytest.raises(InvalidQuantityError):
            line_item_service.update_pricing(item.id, quantity=0)

        assert item.quantity == 100
        assert item.total_cents == 450000


class TestRemove:
    """Tests for removing items."""

    def test_remove(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        buffet = line_item_service.add_item(collection.id, "Buffet", 1, 100)
        line_item_service.add_item(collection.id, "Bar", 1, 100)

        line_item_service.remove_item(buffet.id)

        assert _titles(line_item_service, collection.id) == ["Bar"]
        with pytest.raises(LineItemNotFoundError):
            line_item_service.get_item(buffet.id)

    def test_append_after_removal_stays_above_max(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        line_item_service.add_item(collection.id, "Buffet", 1, 100)
        bar = line_item_service.add_item(collection.id, "Bar", 1, 100)
        line_item_service.remove_item(bar.id)

        item = line_item_service.add_item(collection.id, "Staffing", 1, 100)

        assert item.order_key == 20


class TestOptimisticLocking:
    """Tests for version-checked writes."""

    def test_stale_expected_version_rejected(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        item = line_item_service.add_item(collection.id, "Buffet", 1, 100)
        stale = collection.version
        line_item_service.add_item(collection.id, "Bar", 1, 100)

        with pytest.raises(OptimisticLockError) as exc_info:
            line_item_service.reorder(collection.id, item.id, 1, expected_version=stale)

        assert exc_info.value.expected_version == stale
        assert exc_info.value.actual_version == stale + 1
        assert _titles(line_item_service, collection.id) == ["Buffet", "Bar"]

    def test_current_expected_version_accepted(self, line_item_service):
        collection = line_item_service.get_or_create_collection(uuid4())
        item = line_item_service.add_item(collection.id, "Buffet", 1, 100)
        line_item_service.add_item(collection.id, "Bar", 1, 100)

        line_item_service.reorder(
            collection.id, item.id, 1, expected_version=collection.version,
        )

        assert _titles(line_item_service, collection.id) == ["Bar", "Buffet"]

    def test_concurrent_version_bump_detected_at_flush(self, line_item_service, session):
        """Another writer bumped the version after this session read it."""
        collection = line_item_service.get_or_create_collection(uuid4())
        line_item_service.add_item(collection.id, "Buffet", 1, 100)

        session.execute(
            update(LineItemCollection)
            .where(LineItemCollection.id == collection.id)
            .values(version=LineItemCollection.version + 1)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(OptimisticLockError):
            line_item_service.add_item(collection.id, "Bar", 1, 100)
