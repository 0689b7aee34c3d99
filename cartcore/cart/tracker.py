"""Dirty-id tracking between reconciliation passes."""
from typing import Iterable

from .models import normalize_id


class ChangeTracker:
    """Set of normalized ids awaiting reconciliation.

    Mutated only by the cart model, drained only by a reconciliation pass.
    ``drain`` swaps in a fresh set, so marks made while a pass is suspended
    land in the next pass instead of being lost.
    """

    def __init__(self) -> None:
        self._pending: set[str] = set()
        # Bumped on every mark; never reset by drain
        self.revision = 0

    def mark(self, item_id) -> None:
        key = normalize_id(item_id)
        if key:
            self._pending.add(key)
            self.revision += 1

    def mark_many(self, ids: Iterable) -> None:
        for item_id in ids:
            self.mark(item_id)

    def drain(self) -> frozenset:
        drained, self._pending = self._pending, set()
        return frozenset(drained)

    def pending(self) -> frozenset:
        return frozenset(self._pending)

    def __contains__(self, item_id) -> bool:
        return normalize_id(item_id) in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)
