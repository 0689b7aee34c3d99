"""
Cart Model

Ordered line items plus an id -> position index. All structural mutations go
through this class; it marks every touched id on the change tracker.

Index maintenance is incremental (shift on insert/remove). A lookup that
lands on a mismatching item rebuilds the whole index instead of failing.
"""
from decimal import Decimal
from typing import Iterable, Optional

from cartcore.logging import get_logger, sanitize_id_for_logging
from cartcore.services.models import ProductSnapshot
from .models import AddResult, AddStatus, LineItem, normalize_id
from .resolver import Deferred, Immediate, StockResolver
from .tracker import ChangeTracker

logger = get_logger(__name__)


def parse_quantity(value, default: int = 1) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(float(value)) if value is not None else default
    except (TypeError, ValueError, OverflowError):
        return None


class CartModel:
    """Authoritative in-memory cart."""

    def __init__(
        self,
        resolver: Optional[StockResolver] = None,
        tracker: Optional[ChangeTracker] = None,
    ):
        self.resolver = resolver if resolver is not None else StockResolver()
        self.tracker = tracker if tracker is not None else ChangeTracker()
        self._items: list[LineItem] = []
        self._index: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id) -> bool:
        return self.index_of(item_id) >= 0

    def ids(self) -> list[str]:
        return [item.id for item in self._items]

    def items(self) -> list[LineItem]:
        """Defensive copies, in cart order."""
        return [item.copy() for item in self._items]

    def get(self, item_id) -> Optional[LineItem]:
        pos = self.index_of(item_id)
        return self._items[pos] if pos >= 0 else None

    def quantity_of(self, item_id) -> int:
        item = self.get(item_id)
        return item.quantity if item else 0

    def index_of(self, item_id) -> int:
        """Position of the id, or -1. Repairs the index when it drifted."""
        key = normalize_id(item_id)
        if not key:
            return -1

        pos = self._index.get(key)
        if pos is not None:
            if 0 <= pos < len(self._items) and self._items[pos].id == key:
                return pos
            logger.warning(f"Cart index mismatch for {sanitize_id_for_logging(key)}, rebuilding")
            self.rebuild_index()
            return self._index.get(key, -1)

        if len(self._index) != len({item.id for item in self._items}):
            logger.warning("Cart index size drifted, rebuilding")
            self.rebuild_index()
            return self._index.get(key, -1)
        return -1

    def totals(self) -> tuple[int, Decimal]:
        """(count, sum) over included lines."""
        count = 0
        total = Decimal("0")
        for item in self._items:
            if not item.included:
                continue
            count += item.quantity
            total += item.line_total
        return count, total

    # ------------------------------------------------------------------
    # Index maintenance
    # ------------------------------------------------------------------

    def rebuild_index(self) -> None:
        self._index = {}
        for pos, item in enumerate(self._items):
            # first occurrence wins while duplicates await dedupe()
            self._index.setdefault(item.id, pos)

    def insert(self, item: LineItem, position: Optional[int] = None) -> int:
        """Insert a line and shift later index positions up by one."""
        pos = len(self._items) if position is None else max(0, min(position, len(self._items)))
        self._items.insert(pos, item)
        for key, existing in self._index.items():
            if existing >= pos:
                self._index[key] = existing + 1
        self._index.setdefault(item.id, pos)
        self.tracker.mark(item.id)
        return pos

    def _remove_at(self, pos: int) -> LineItem:
        item = self._items.pop(pos)
        self._index.pop(item.id, None)
        for key, existing in self._index.items():
            if existing > pos:
                self._index[key] = existing - 1
        return item

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, item_id, qty=1) -> AddResult:
        """Add a product, resolving stock first.

        Known stock <= 0 rejects the add; known stock below the requested
        quantity adds the clamped amount (PARTIAL). A merge into an existing
        line that would exceed stock is rejected as a whole.
        """
        key = normalize_id(item_id)
        quantity = parse_quantity(qty)
        if not key or quantity is None:
            return AddResult(AddStatus.INVALID, key)
        quantity = max(1, quantity)

        resolution = self.resolver.resolve(key)
        snapshot: Optional[ProductSnapshot] = None
        status = AddStatus.ADDED
        available: Optional[int] = None

        if isinstance(resolution, Immediate):
            snapshot = resolution.snapshot
        elif isinstance(resolution, Deferred):
            # corrected by the next refresh pass
            resolution.discard()
            status = AddStatus.DEFERRED

        pos = self.index_of(key)
        existing = self._items[pos] if pos >= 0 else None

        if snapshot is not None:
            stock = snapshot.stock_limit
            if stock <= 0:
                return AddResult(
                    AddStatus.OUT_OF_STOCK, key,
                    quantity=existing.quantity if existing else 0, available=0,
                )
            if quantity > stock:
                quantity = stock
                status = AddStatus.PARTIAL
                available = stock

        if existing is not None:
            proposed = existing.quantity + quantity
            max_allowed = max(existing.stock_limit, snapshot.stock_limit if snapshot else 0)
            if max_allowed > 0 and proposed > max_allowed:
                return AddResult(
                    AddStatus.LIMIT_REACHED, key,
                    quantity=existing.quantity, available=max_allowed,
                )
            if snapshot is not None:
                self.resolver.merge(existing, snapshot)
            existing.stock_limit = max_allowed
            existing.quantity = proposed
            self.tracker.mark(key)
            return AddResult(status, key, quantity=existing.quantity, available=available)

        item = LineItem(id=key, quantity=quantity)
        if snapshot is not None:
            self.resolver.merge(item, snapshot)
        self.insert(item)
        return AddResult(status, key, quantity=item.quantity, available=available)

    def remove(self, item_id) -> bool:
        key = normalize_id(item_id)
        pos = self.index_of(key)
        if pos < 0:
            return False
        self._remove_at(pos)
        self.tracker.mark(key)
        return True

    def change_qty(self, item_id, new_qty) -> bool:
        """Set a line quantity, clamped to >= 1 and to synchronously known stock."""
        key = normalize_id(item_id)
        pos = self.index_of(key)
        if pos < 0:
            return False

        quantity = parse_quantity(new_qty)
        quantity = max(1, quantity if quantity is not None else 1)

        item = self._items[pos]
        snapshot = self.resolver.resolve_now(key)
        stock = snapshot.stock_limit if snapshot is not None and snapshot.stock_limit > 0 else item.stock_limit
        if snapshot is not None and snapshot.stock_limit > 0:
            item.stock_limit = snapshot.stock_limit
        if stock > 0 and quantity > stock:
            quantity = stock

        item.quantity = quantity
        self.tracker.mark(key)
        return True

    def set_included(self, item_id, included: bool) -> bool:
        item = self.get(item_id)
        if item is None:
            return False
        if item.included != bool(included):
            item.included = bool(included)
            self.tracker.mark(item.id)
        return True

    def touch(self, item_id) -> bool:
        """Mark a present line dirty without changing it (e.g. favorite flag)."""
        item = self.get(item_id)
        if item is None:
            return False
        self.tracker.mark(item.id)
        return True

    def apply_snapshot(self, item_id, snapshot: ProductSnapshot) -> bool:
        """Merge a resolved snapshot into the current line, if it still exists."""
        item = self.get(item_id)
        if item is None:
            return False
        changed = self.resolver.merge(item, snapshot)
        if changed:
            self.tracker.mark(item.id)
        return changed

    def dedupe(self) -> bool:
        """Collapse lines sharing an id into the first one.

        Quantities are summed; the latest non-empty name/image wins, the
        latest price overwrites, specs are merged, and the merged quantity is
        clamped to the lowest known stock among the duplicates.
        """
        if len({item.id for item in self._items}) == len(self._items):
            return False

        merged: dict[str, LineItem] = {}
        lowest_stock: dict[str, int] = {}
        duplicates: set[str] = set()

        for item in self._items:
            key = item.id
            if item.stock_limit > 0:
                lowest_stock[key] = min(lowest_stock.get(key, item.stock_limit), item.stock_limit)
            if key not in merged:
                merged[key] = item.copy()
                continue
            target = merged[key]
            duplicates.add(key)
            target.quantity += item.quantity
            target.unit_price = item.unit_price
            if item.display_name:
                target.display_name = item.display_name
            if item.image_ref:
                target.image_ref = item.image_ref
            target.spec_attributes = {**target.spec_attributes, **item.spec_attributes}

        for key in duplicates:
            target = merged[key]
            stock = lowest_stock.get(key, 0)
            target.stock_limit = stock
            if stock > 0 and target.quantity > stock:
                target.quantity = max(1, stock)

        self._items = list(merged.values())
        self.rebuild_index()
        self.tracker.mark_many(duplicates)
        logger.debug(f"Deduplicated {len(duplicates)} cart lines")
        return True

    def clear(self) -> list[str]:
        """Empty the cart; every prior id becomes dirty."""
        previous = self.ids()
        self._items = []
        self.rebuild_index()
        self.tracker.mark_many(previous)
        return previous

    def load(self, items: Iterable[LineItem]) -> None:
        """Replace contents (used by storage loads and cross-context reloads)."""
        previous = self.ids()
        self._items = [item for item in items if item.id]
        self.rebuild_index()
        self.dedupe()
        self.tracker.mark_many(previous)
        self.tracker.mark_many(self.ids())
