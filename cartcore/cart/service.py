"""Cart manager facade: mutations, reconciliation passes, persistence, sync."""
import asyncio
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from cartcore.config import CartOptions
from cartcore.errors import (
    ERROR_EMPTY_ID,
    ERROR_INSUFFICIENT_STOCK_ADD,
    ERROR_INSUFFICIENT_STOCK_CHANGE,
    ERROR_INVALID_QUANTITY,
    ERROR_LIMIT_REACHED,
    ERROR_NO_STOCK,
    ERROR_ONLY_X_LEFT,
    ERROR_PRODUCT_OUT_OF_STOCK,
    MESSAGE_ADDED_TO_CART,
)
from cartcore.logging import get_logger, sanitize_id_for_logging
from cartcore.realtime import StorageEventRouter, emit_storage_changed
from cartcore.services.money import to_float
from .broadcaster import UpdateBroadcaster
from .included import IncludedStates
from .model import CartModel, parse_quantity
from .models import AddResult, AddStatus, CartUpdate, LineItem, normalize_id
from .persister import CartPersister
from .reconciler import ViewReconciler
from .resolver import RefreshStrategy, StockResolver
from .storage import CartStorage
from .tracker import ChangeTracker

logger = get_logger(__name__)


class CartAction(str, Enum):
    """Command types accepted by CartManager.dispatch."""
    ADD = "ADD"
    REMOVE = "REMOVE"
    QTY_SET = "QTY_SET"
    QTY_INC = "QTY_INC"
    QTY_DEC = "QTY_DEC"
    INCLUDE_SET = "INCLUDE_SET"
    INCLUDE_ALL = "INCLUDE_ALL"
    FAV_TOGGLE = "FAV_TOGGLE"


class CartManager:
    """
    Owns one cart and keeps its view, storage and observers in step.

    Features:
    - Synchronous mutations that schedule a coalesced reconciliation pass
    - Stock refresh through the product lookup on every pass
    - Debounced Redis persistence with a final write on close()
    - Cross-context reloads driven by storage.changed events
    """

    def __init__(
        self,
        owner_id: str = "local",
        lookup=None,
        storage: Optional[CartStorage] = None,
        favorites=None,
        notifier=None,
        row_builder=None,
        rows=None,
        frame_scheduler=None,
        options: Optional[CartOptions] = None,
        origin: Optional[str] = None,
        broadcast_storage: bool = True,
    ):
        self.owner_id = str(owner_id)
        self.options = options or CartOptions.from_env()
        self.notifier = notifier
        self.favorites = favorites
        self.broadcast_storage = broadcast_storage

        strategy = RefreshStrategy.CONCURRENT if self.options.parallel_product_fetch else RefreshStrategy.SEQUENTIAL
        self.tracker = ChangeTracker()
        self.resolver = StockResolver(lookup, lookup_timeout=self.options.lookup_timeout, strategy=strategy)
        self.model = CartModel(self.resolver, self.tracker)

        self.storage = storage if storage is not None else CartStorage(self.owner_id)
        self.persister = CartPersister(
            self.storage, self.model, self.options.save_debounce_ms, on_saved=self._on_saved,
        )
        self.included = IncludedStates(self.storage, self.options.included_save_debounce_ms)

        self.broadcaster = UpdateBroadcaster()
        self.reconciler = ViewReconciler(
            rows=rows,
            builder=row_builder,
            frame_scheduler=frame_scheduler,
            partial_patching=self.options.partial_patching,
            recheck_stock=self.options.recheck_stock_on_mount,
            is_favorite=favorites.is_favorite if favorites is not None else None,
            on_recheck_change=self._on_recheck_change,
        )

        self.router = StorageEventRouter(origin)
        self.router.register(self.storage.cart_key, self._reload_cart)
        self.router.register(self.storage.included_key, self._reload_included)
        self._unsubscribe_favorites: Optional[Callable[[], None]] = None
        if favorites is not None:
            if favorites.storage is not None:
                self.router.register(favorites.storage.favorites_key, self._reload_favorites)
            self._unsubscribe_favorites = favorites.subscribe(self._on_favorites_event)

        self._lock = asyncio.Lock()
        self._scheduled: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._next_reason = "update"
        self._next_target: Optional[str] = None
        self._next_full = False
        self._closed = False

    @property
    def origin(self) -> str:
        return self.router.origin

    @property
    def rows(self):
        return self.reconciler.rows

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self) -> CartUpdate:
        """One-time load from storage followed by a full pass."""
        items = await self.persister.load(self.resolver)
        self.model.load(items)
        self.persister.mark_synced()
        await self.included.load()
        if self.favorites is not None and not self.favorites.loaded:
            await self.favorites.load()
        return await self.reconcile(reason="load", force_full=True)

    async def wait_idle(self) -> None:
        """Wait until no pass or stock re-check is scheduled or running."""
        while True:
            tasks = [t for t in self._tasks if not t.done()]
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
                continue
            await self.reconciler.wait_rechecks()
            if not any(not t.done() for t in self._tasks):
                return

    def close(self) -> None:
        """Teardown: cancel timers and passes, then write everything synchronously."""
        if self._closed:
            return
        self._closed = True

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._scheduled = None

        self.reconciler.close()
        self.persister.flush_sync()
        self.included.close()
        if self._unsubscribe_favorites is not None:
            self._unsubscribe_favorites()
        self.broadcaster.clear()
        logger.debug(f"Closed cart manager for {sanitize_id_for_logging(self.owner_id)}")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, item_id, qty=1) -> AddResult:
        result = self.model.add(item_id, qty)
        self._signal_add(result)
        if result.accepted:
            self._schedule_pass(target_id=result.item_id)
        return result

    def remove(self, item_id) -> bool:
        removed = self.model.remove(item_id)
        if removed:
            self.included.prune(self.model.ids())
            self._schedule_pass(target_id=normalize_id(item_id))
        return removed

    def change_qty(self, item_id, qty) -> bool:
        requested = parse_quantity(qty)
        changed = self.model.change_qty(item_id, qty)
        if not changed:
            return False

        item = self.model.get(item_id)
        if item is not None and requested is not None and requested > item.quantity:
            self._notify(ERROR_INSUFFICIENT_STOCK_CHANGE.format(stock=item.stock_limit), "warning")
        self._schedule_pass(target_id=normalize_id(item_id))
        return True

    def increment(self, item_id) -> bool:
        item = self.model.get(item_id)
        if item is None:
            return False
        if item.stock_limit <= 0:
            self._notify(ERROR_NO_STOCK, "warning")
            return False
        if item.quantity >= item.stock_limit:
            self._notify(ERROR_LIMIT_REACHED, "warning")
            return False
        return self.change_qty(item.id, item.quantity + 1)

    def decrement(self, item_id) -> bool:
        item = self.model.get(item_id)
        if item is None or item.quantity <= 1:
            return False
        return self.change_qty(item.id, item.quantity - 1)

    def clear(self) -> bool:
        previous = self.model.clear()
        self.included.prune([])
        self._schedule_pass(reason="clear")
        return bool(previous)

    def set_included(self, item_id, included: bool) -> bool:
        if item_id not in self.model:
            return False
        self.included.set(item_id, included)
        self.model.set_included(item_id, included)
        self._schedule_pass(target_id=normalize_id(item_id))
        return True

    def set_all_included(self, included: bool) -> bool:
        ids = self.model.ids()
        if not ids:
            return False
        self.included.set_all(ids, included)
        for key in ids:
            self.model.set_included(key, included)
        self._schedule_pass()
        return True

    def toggle_favorite(self, item_id) -> Optional[bool]:
        if self.favorites is None or not normalize_id(item_id):
            return None
        # Row refresh happens through the favorites subscription
        return self.favorites.toggle(item_id)

    async def dispatch(self, action: Any) -> Optional[CartUpdate]:
        """Command entry point: run one action and return the settled update."""
        if not isinstance(action, Mapping):
            return None
        try:
            raw = action.get("type", "")
            kind = raw if isinstance(raw, CartAction) else CartAction(str(raw).upper())
        except ValueError:
            logger.warning(f"Unknown cart action {sanitize_id_for_logging(action.get('type'))}")
            return None

        item_id = action.get("id")
        if kind == CartAction.ADD:
            ok = bool(self.add(item_id, action.get("qty", 1)))
        elif kind == CartAction.REMOVE:
            ok = self.remove(item_id)
        elif kind == CartAction.QTY_SET:
            ok = self.change_qty(item_id, action.get("qty"))
        elif kind == CartAction.QTY_INC:
            ok = self.increment(item_id)
        elif kind == CartAction.QTY_DEC:
            ok = self.decrement(item_id)
        elif kind == CartAction.INCLUDE_SET:
            ok = self.set_included(item_id, bool(action.get("included", True)))
        elif kind == CartAction.INCLUDE_ALL:
            ok = self.set_all_included(bool(action.get("included", True)))
        else:
            ok = self.toggle_favorite(item_id) is not None

        if not ok:
            return None
        await self.wait_idle()
        return self.broadcaster.last

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _schedule_pass(self, reason: str = "update", target_id: Optional[str] = None, force_full: bool = False) -> None:
        if self._closed:
            return
        # First non-default reason in a batch wins
        if self._next_reason == "update":
            self._next_reason = reason
        if target_id:
            self._next_target = target_id
        self._next_full = self._next_full or force_full

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Dirty ids wait for the next awaited reconcile()
            return

        if self._scheduled is not None and not self._scheduled.done():
            return

        task = loop.create_task(self._run_scheduled())
        self._scheduled = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_scheduled(self) -> None:
        # Started: later mutations schedule a new pass
        self._scheduled = None
        reason, target, force_full = self._next_reason, self._next_target, self._next_full
        self._next_reason, self._next_target, self._next_full = "update", None, False
        await self.reconcile(target_id=target, reason=reason, force_full=force_full)

    async def reconcile(
        self,
        target_id: Optional[str] = None,
        reason: str = "update",
        force_full: bool = False,
    ) -> CartUpdate:
        """Run one reconciliation pass and publish its CartUpdate."""
        async with self._lock:
            return await self._pass(target_id, reason, force_full)

    async def _pass(self, target_id: Optional[str], reason: str, force_full: bool) -> CartUpdate:
        dirty = set(self.tracker.drain())

        try:
            await self.resolver.refresh(self.model)
        except Exception as e:
            logger.error(f"Stock refresh failed: {e}", exc_info=True)

        self.model.dedupe()
        for key in self.model.ids():
            self.model.set_included(key, self.included.is_included(key))

        dirty |= self.tracker.drain()
        if target_id:
            dirty.add(normalize_id(target_id))

        try:
            outcome = await self.reconciler.reconcile(self.model, dirty, force_full=force_full)
        except Exception as e:
            logger.error(f"Reconciliation pass failed: {e}", exc_info=True)
            outcome = await self.reconciler.rebuild(self.model, fallback=True)

        ids = self.model.ids()
        touched = dirty | set(outcome.removed_ids)
        changed = [key for key in ids if key in touched]
        changed += sorted(key for key in touched if key not in set(ids))

        count, total = self.model.totals()
        update = CartUpdate(
            items=tuple(self.model.items()),
            total_count=count,
            total_sum=total,
            changed_ids=tuple(changed),
            reason=reason,
            target_id=normalize_id(target_id) or None,
            included=self.included.snapshot(ids),
            fallback=outcome.fallback,
        )

        # Loads and cross-context reloads already match storage
        if reason not in ("load", "sync"):
            self.persister.schedule_save()

        self.broadcaster.publish(update)
        logger.debug(f"Cart pass ({reason}): {len(changed)} changed, {count} items")
        return update

    # ------------------------------------------------------------------
    # Cross-context sync
    # ------------------------------------------------------------------

    async def handle_storage_event(self, key: str, origin: Optional[str] = None) -> bool:
        """Feed a storage.changed notification. True if a handler ran."""
        return await self.router.dispatch(key, origin) > 0

    async def _reload_cart(self, key: str, origin: Optional[str]) -> None:
        logger.info(f"Cart changed in another context, reloading {sanitize_id_for_logging(key)}")
        items = await self.persister.load(self.resolver)
        self.model.load(items)
        self.persister.mark_synced()
        await self.included.load()
        await self.reconcile(reason="sync", force_full=True)

    async def _reload_included(self, key: str, origin: Optional[str]) -> None:
        await self.included.load()
        await self.reconcile(reason="sync")

    async def _reload_favorites(self, key: str, origin: Optional[str]) -> None:
        if await self.favorites.handle_storage_event(key, origin):
            await self.wait_idle()

    async def _on_saved(self, key: str) -> None:
        if self.broadcast_storage:
            await emit_storage_changed(key, self.origin, redis=self.storage.redis)

    def _on_recheck_change(self, key: str) -> None:
        self._schedule_pass(target_id=key)

    def _on_favorites_event(self, event) -> None:
        if event.type == "load":
            return
        if event.id is not None:
            touched = self.model.touch(event.id)
        else:
            touched = any([self.model.touch(key) for key in self.model.ids()])
        if touched:
            self._schedule_pass(target_id=event.id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[CartUpdate], None]) -> Callable[[], None]:
        return self.broadcaster.subscribe(callback)

    def get_cart(self) -> list[LineItem]:
        return self.model.items()

    def summary(self) -> dict:
        """Cart summary for display."""
        count, total = self.model.totals()
        return {
            "items": [
                {
                    "id": item.id,
                    "display_name": item.display_name,
                    "quantity": item.quantity,
                    "stock_limit": item.stock_limit,
                    "unit_price": to_float(item.unit_price),
                    "total": to_float(item.line_total),
                    "included": item.included,
                }
                for item in self.model.items()
            ],
            "total_count": count,
            "total_sum": to_float(total),
            "selected_count": self.included.count_selected(self.model.ids()),
            "line_count": len(self.model),
        }

    # ------------------------------------------------------------------

    def _signal_add(self, result: AddResult) -> None:
        if result.status == AddStatus.INVALID:
            self._notify(ERROR_INVALID_QUANTITY if result.item_id else ERROR_EMPTY_ID, "error")
        elif result.status == AddStatus.OUT_OF_STOCK:
            self._notify(ERROR_PRODUCT_OUT_OF_STOCK, "error")
        elif result.status == AddStatus.LIMIT_REACHED:
            self._notify(ERROR_INSUFFICIENT_STOCK_ADD.format(max=result.available), "warning")
        elif result.status == AddStatus.PARTIAL:
            self._notify(ERROR_ONLY_X_LEFT.format(stock=result.available), "warning")
        elif result.accepted:
            item = self.model.get(result.item_id)
            title = item.display_name if item else result.item_id
            self._notify(MESSAGE_ADDED_TO_CART.format(title=title, qty=result.quantity), "success")

    def _notify(self, message: str, level: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.show(message, level)
        except Exception as e:
            logger.warning(f"Notifier failed: {e}")


# Singleton instances, one per owner
_cart_managers: dict[str, CartManager] = {}


def get_cart_manager(owner_id: str = "local", **kwargs) -> CartManager:
    """Get CartManager singleton for an owner."""
    key = str(owner_id)
    manager = _cart_managers.get(key)
    if manager is None or manager._closed:
        manager = CartManager(key, **kwargs)
        _cart_managers[key] = manager
    return manager
