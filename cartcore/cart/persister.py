"""Cart persistence: load with per-entry drops, debounced save, teardown flush."""
from decimal import InvalidOperation
from typing import Awaitable, Callable, Optional

from cartcore.config import CART_SAVE_DEBOUNCE_MS
from cartcore.logging import get_logger, sanitize_id_for_logging
from cartcore.services.persistence import DebouncedWriter
from .models import LineItem
from .storage import CartStorage

logger = get_logger(__name__)

SavedHook = Callable[[str], Awaitable[None]]


class CartPersister:
    """Serializes the full cart through a DebouncedWriter."""

    def __init__(
        self,
        storage: CartStorage,
        model,
        delay_ms: int = CART_SAVE_DEBOUNCE_MS,
        on_saved: Optional[SavedHook] = None,
    ):
        self.storage = storage
        self.model = model
        self.on_saved = on_saved
        self.loaded = False
        self._synced_revision = model.tracker.revision
        self.writer = DebouncedWriter(
            self._write,
            delay_ms / 1000,
            write_sync=self._write_sync,
            name="cart",
        )

    def entries(self) -> list[dict]:
        # Read at write time so a debounced write carries the final state
        return [item.to_dict() for item in self.model.items()]

    @property
    def dirty(self) -> bool:
        """Model changed since the last load or successful write."""
        return self.model.tracker.revision != self._synced_revision

    def mark_synced(self) -> None:
        self._synced_revision = self.model.tracker.revision

    async def _write(self) -> None:
        revision = self.model.tracker.revision
        await self.storage.save_cart(self.entries())
        self._synced_revision = revision
        if self.on_saved is not None:
            await self.on_saved(self.storage.cart_key)

    def _write_sync(self) -> None:
        revision = self.model.tracker.revision
        self.storage.save_cart_sync(self.entries())
        self._synced_revision = revision

    async def load(self, resolver=None) -> list[LineItem]:
        """Read persisted entries, dropping malformed ones.

        Quantities are reduced to the stored stock limit and, where the
        resolver answers synchronously, to the freshly known stock.
        """
        raw = await self.storage.load_cart()
        self.loaded = raw is not None
        if not raw:
            return []

        items: list[LineItem] = []
        dropped = 0
        for entry in raw:
            try:
                item = LineItem.from_dict(entry)
            except (TypeError, KeyError, ValueError, OverflowError, InvalidOperation) as e:
                dropped += 1
                logger.debug(f"Dropping cart entry: {e}")
                continue

            snapshot = resolver.resolve_now(item.id) if resolver is not None else None
            if snapshot is not None and snapshot.stock_limit > 0:
                item.stock_limit = snapshot.stock_limit
            if item.stock_limit > 0 and item.quantity > item.stock_limit:
                item.quantity = item.stock_limit
            items.append(item)

        if dropped:
            logger.warning(f"Dropped {dropped} malformed cart entries for {sanitize_id_for_logging(self.storage.owner_id)}")
        logger.info(f"Loaded cart with {len(items)} entries")
        return items

    def schedule_save(self) -> None:
        self.writer.schedule()

    async def flush(self) -> bool:
        return await self.writer.flush()

    def flush_sync(self) -> bool:
        """Final write on teardown.

        Writes only when a save is pending or the model changed since it was
        loaded or last written, so a cart that failed to load never replaces
        the stored one.
        """
        if not self.writer.pending and not self.dirty:
            self.writer.cancel()
            return True
        return self.writer.close()
