"""
Module: billing_engines.sequencer
Responsibility:
    Assign and rebalance integer order keys for an ordered collection of
    line items, so that moving one item normally rewrites only that item's
    key.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Receives the collection's current (item_id, order_key) pairs in visual
    order and returns the key(s) to persist.  Persisting them, and refusing
    to persist over newer state, is LineItemService's job.

Invariants enforced:
    - Keys within a collection stay distinct and sort in visual order.
    - Only the moved item's key changes, except on convergence: when no
      integer remains between two neighbours, every key in the collection
      is rewritten as a multiple of ``gap`` in current visual order, then
      the requested placement is computed.  Relative order of the other
      items never changes.
    - Same inputs, same output.  A move to the item's current position is
      a no-op that returns the current key.

Failure modes:
    - InvalidPositionError for a source or destination index outside the
      ordering.
    - ValidationError if the supplied keys are not strictly ascending.

Audit relevance:
    Order keys are never business data.  They are logged only when a
    renumber happens, since that is the one write touching many rows.

Usage:
    from billing_engines.sequencer import OrderKeySequencer

    seq = OrderKeySequencer(gap=10)
    result = seq.reorder(
        ordered=[("a", 10), ("b", 20), ("c", 30)],
        source_index=2,
        destination_index=0,
    )
    result.order_key  # 0
"""

from __future__ import annotations

from collections.abc import Hashable, Sequence
from dataclasses import dataclass

from billing_engines.tracer import traced_engine
from billing_kernel.exceptions import InvalidPositionError, ValidationError
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.sequencer")

DEFAULT_GAP = 10


@dataclass(frozen=True)
class ReorderResult:
    """
    Outcome of placing one item.

    Contract:
        ``order_key`` is always the key the placed item must carry.
        ``renumbered`` is None for the common single-row case; on
        convergence it maps every existing item id (including the moved
        one) to its new key.
    """

    item_id: Hashable | None
    order_key: int
    renumbered: dict[Hashable, int] | None = None
    noop: bool = False

    @property
    def requires_renumber(self) -> bool:
        return self.renumbered is not None


class OrderKeySequencer:
    """
    Fractional (integer-gapped) ordering keys.

    Contract:
        Pure functions of (current ordered keys, source, destination).
        No I/O, no hidden state beyond the configured gap.

    Guarantees:
        - First position: ``min(keys) - gap``.
        - Last position: ``max(keys) + gap``.
        - Between ``lo`` and ``hi``: ``(lo + hi) // 2``, or a full renumber
          when that equals ``lo``.

    Non-goals:
        - Does not detect concurrent writers; the collection version does.
    """

    def __init__(self, gap: int = DEFAULT_GAP):
        if gap < 2:
            raise ValidationError(f"Sequencer gap must be at least 2, got {gap}")
        self.gap = gap

    def key_for_append(self, keys: Sequence[int]) -> int:
        """Key for a new item appended after every existing item."""
        if not keys:
            return self.gap
        return max(keys) + self.gap

    @traced_engine("sequencer", "1.0", fingerprint_fields=("ordered", "index"))
    def insert_at(
        self,
        ordered: Sequence[tuple[Hashable, int]],
        index: int,
    ) -> ReorderResult:
        """
        Key for a new item inserted at ``index`` of the visual ordering.

        ``index == len(ordered)`` appends.  The result's ``item_id`` is None
        because the new item has no identity yet; a renumber map only
        covers the existing items.
        """
        self._check_ascending(ordered)
        if not 0 <= index <= len(ordered):
            raise InvalidPositionError(index, len(ordered) + 1, role="insert")

        key, renumbered = self._place(ordered, index)
        if renumbered is not None:
            self._log_renumber(len(ordered), index)
        return ReorderResult(item_id=None, order_key=key, renumbered=renumbered)

    @traced_engine(
        "sequencer", "1.0",
        fingerprint_fields=("ordered", "source_index", "destination_index"),
    )
    def reorder(
        self,
        ordered: Sequence[tuple[Hashable, int]],
        source_index: int,
        destination_index: int,
    ) -> ReorderResult:
        """
        Move the item at ``source_index`` so it ends up at
        ``destination_index`` of the visual ordering.

        Args:
            ordered: (item_id, order_key) pairs in current visual order.
            source_index: Current position of the item being moved.
            destination_index: Position it should occupy after the move.
        """
        self._check_ascending(ordered)
        size = len(ordered)
        if not 0 <= source_index < size:
            raise InvalidPositionError(source_index, size, role="source")
        if not 0 <= destination_index < size:
            raise InvalidPositionError(destination_index, size, role="destination")

        item_id, current_key = ordered[source_index]
        if source_index == destination_index:
            return ReorderResult(item_id=item_id, order_key=current_key, noop=True)

        others = [pair for i, pair in enumerate(ordered) if i != source_index]
        key, renumbered = self._place(others, destination_index)

        if renumbered is not None:
            renumbered[item_id] = key
            self._log_renumber(size, destination_index)

        return ReorderResult(item_id=item_id, order_key=key, renumbered=renumbered)

    def renumber(self, ordered: Sequence[tuple[Hashable, int]]) -> dict[Hashable, int]:
        """Multiples of ``gap`` in visual order: first item gets ``gap``."""
        return {item_id: (i + 1) * self.gap for i, (item_id, _) in enumerate(ordered)}

    def _place(
        self,
        others: Sequence[tuple[Hashable, int]],
        index: int,
    ) -> tuple[int, dict[Hashable, int] | None]:
        if not others:
            return self.gap, None
        if index == 0:
            return others[0][1] - self.gap, None
        if index == len(others):
            return others[-1][1] + self.gap, None

        lo = others[index - 1][1]
        hi = others[index][1]
        mid = (lo + hi) // 2
        if mid != lo:
            return mid, None

        # Converged: no integer between the neighbours.
        renumbered = self.renumber(others)
        lo = index * self.gap
        hi = (index + 1) * self.gap
        return (lo + hi) // 2, renumbered

    @staticmethod
    def _check_ascending(ordered: Sequence[tuple[Hashable, int]]) -> None:
        for (_, prev), (item_id, key) in zip(ordered, ordered[1:]):
            if key <= prev:
                raise ValidationError(
                    f"Order keys must be strictly ascending; item {item_id} "
                    f"has key {key} after {prev}"
                )

    def _log_renumber(self, size: int, index: int) -> None:
        logger.info(
            "reorder_renumbered",
            extra={"collection_size": size, "destination_index": index, "gap": self.gap},
        )
