"""Favorites Domain Service.

Ordered, unique set of product ids with an optional size limit, persisted
through the same debounced writer as the cart and reloaded when another
context changes it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from cartcore.config import FAVORITES_MAX, FAVORITES_OVERFLOW, FAVORITES_SAVE_DEBOUNCE_MS
from cartcore.errors import ERROR_FAVORITES_LIMIT
from cartcore.logging import get_logger, sanitize_id_for_logging
from cartcore.services.persistence import DebouncedWriter

logger = get_logger(__name__)


def _normalize(value: Any) -> str:
    if isinstance(value, Mapping):
        value = value.get("id") or value.get("productId") or value.get("name")
    if value is None or isinstance(value, (bool, list, dict)):
        return ""
    return str(value).strip().lower()


def _unique(ids: Iterable[Any]) -> list[str]:
    seen: set[str] = set()
    result = []
    for raw in ids:
        key = _normalize(raw)
        if key and key not in seen:
            seen.add(key)
            result.append(key)
    return result


class OverflowPolicy(str, Enum):
    REJECT = "reject"
    DROP_OLDEST = "drop_oldest"

    @classmethod
    def parse(cls, value: Any) -> "OverflowPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.warning(f"Unknown favorites overflow policy {value!r}, using reject")
            return cls.REJECT


@dataclass(frozen=True)
class FavoritesEvent:
    """Change notification for favorites observers."""

    type: str  # load | add | remove | clear | import | sync
    id: Optional[str]
    items: tuple
    count: int


class FavoritesStore:
    """Favorites domain service.

    Provides the add/remove/toggle surface used by row favorite toggles.
    """

    def __init__(
        self,
        storage=None,
        max_size: int = FAVORITES_MAX,
        overflow: Any = FAVORITES_OVERFLOW,
        delay_ms: int = FAVORITES_SAVE_DEBOUNCE_MS,
        notifier=None,
        on_saved: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> None:
        self.storage = storage
        self.max_size = max(0, int(max_size or 0))
        self.overflow = OverflowPolicy.parse(overflow)
        self.notifier = notifier
        self.on_saved = on_saved
        self.loaded = False
        self._ids: list[str] = []
        self._subscribers: list[Callable[[FavoritesEvent], None]] = []
        self.writer = DebouncedWriter(
            self._write,
            delay_ms / 1000,
            write_sync=self._write_sync,
            name="favorites",
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_favorite(self, item_id) -> bool:
        return _normalize(item_id) in self._ids

    def get_all(self) -> list[str]:
        return list(self._ids)

    def count(self) -> int:
        return len(self._ids)

    def __contains__(self, item_id) -> bool:
        return self.is_favorite(item_id)

    def __len__(self) -> int:
        return len(self._ids)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _trim(self, ids: list[str]) -> list[str]:
        # Oversized lists keep the newest entries
        if self.max_size and len(ids) > self.max_size:
            return ids[-self.max_size:]
        return ids

    def add(self, item_id) -> bool:
        """Add an id. Returns False if invalid, present, or rejected by the limit."""
        key = _normalize(item_id)
        if not key or key in self._ids:
            return False

        if self.max_size and len(self._ids) >= self.max_size:
            if self.overflow == OverflowPolicy.REJECT:
                self._notify(ERROR_FAVORITES_LIMIT.format(max=self.max_size))
                return False
            dropped = self._ids.pop(0)
            logger.debug(f"Favorites full, dropped {sanitize_id_for_logging(dropped)}")

        self._ids.append(key)
        self._schedule()
        self._emit("add", key)
        return True

    def remove(self, item_id) -> bool:
        key = _normalize(item_id)
        if key not in self._ids:
            return False
        self._ids.remove(key)
        self._schedule()
        self._emit("remove", key)
        return True

    def toggle(self, item_id) -> bool:
        """Flip membership. Returns whether the id is a favorite afterwards."""
        key = _normalize(item_id)
        if not key:
            return False
        if key in self._ids:
            self.remove(key)
            return False
        return self.add(key)

    def clear(self) -> None:
        if not self._ids:
            return
        self._ids = []
        self._schedule()
        self._emit("clear", None)

    def import_ids(self, ids: Iterable[Any], replace: bool = False, persist: bool = True) -> int:
        """Bulk import. Returns how many ids were added."""
        incoming = _unique(ids)
        before = list(self._ids)

        if replace:
            self._ids = self._trim(incoming)
        else:
            for key in incoming:
                if key in self._ids:
                    continue
                if self.max_size and len(self._ids) >= self.max_size:
                    if self.overflow == OverflowPolicy.REJECT:
                        break
                    self._ids.pop(0)
                self._ids.append(key)

        added = len([key for key in self._ids if key not in before])
        if self._ids != before:
            if persist:
                self._schedule()
            self._emit("import", None)
        return added

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> list[str]:
        """Read stored ids; malformed entries are dropped."""
        self.loaded = True
        if self.storage is None:
            return self.get_all()

        raw = await self.storage.load_favorites()
        self._ids = self._trim(_unique(raw or []))
        logger.info(f"Loaded {len(self._ids)} favorites")
        self._emit("load", None)
        return self.get_all()

    async def handle_storage_event(self, key: str, origin: Optional[str] = None) -> bool:
        """Reload after another context wrote favorites. True if the list changed."""
        if self.storage is None or key != self.storage.favorites_key:
            return False

        raw = await self.storage.load_favorites()
        incoming = self._trim(_unique(raw or []))
        if incoming == self._ids:
            return False

        self._ids = incoming
        self._emit("sync", None)
        return True

    def _schedule(self) -> None:
        if self.storage is not None:
            self.writer.schedule()

    async def _write(self) -> None:
        await self.storage.save_favorites(self.get_all())
        if self.on_saved is not None:
            await self.on_saved(self.storage.favorites_key)

    def _write_sync(self) -> None:
        self.storage.save_favorites_sync(self.get_all())

    async def save_now(self) -> bool:
        """Write immediately, skipping the debounce window."""
        if self.storage is None:
            return False
        return await self.writer.flush(force=True)

    def close(self) -> None:
        """Teardown: cancel the debounce and write a pending list now."""
        if self.storage is not None and self.writer.pending:
            self.writer.close()
        else:
            self.writer.cancel()
        self._subscribers.clear()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[FavoritesEvent], None]) -> Callable[[], None]:
        """Register an observer; it immediately receives the current state."""
        self._subscribers.append(callback)
        self._deliver(callback, self._event("load", None))

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _event(self, event_type: str, item_id: Optional[str]) -> FavoritesEvent:
        return FavoritesEvent(type=event_type, id=item_id, items=tuple(self._ids), count=len(self._ids))

    def _emit(self, event_type: str, item_id: Optional[str]) -> None:
        event = self._event(event_type, item_id)
        for callback in list(self._subscribers):
            self._deliver(callback, event)

    @staticmethod
    def _deliver(callback, event: FavoritesEvent) -> None:
        try:
            callback(event)
        except Exception as e:
            logger.warning(f"Favorites subscriber failed: {e}")

    def _notify(self, message: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.show(message, "warning")
        except Exception as e:
            logger.warning(f"Notifier failed: {e}")
