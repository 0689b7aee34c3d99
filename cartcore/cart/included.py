"""Checkout selection: per-item "included" flags, persisted separately."""
from typing import Iterable, Optional

from cartcore.config import INCLUDED_SAVE_DEBOUNCE_MS
from cartcore.logging import get_logger
from cartcore.services.persistence import DebouncedWriter
from .models import normalize_id
from .storage import CartStorage

logger = get_logger(__name__)


class IncludedStates:
    """Map of id -> selected-for-checkout. Missing ids count as included."""

    def __init__(self, storage: Optional[CartStorage] = None, delay_ms: int = INCLUDED_SAVE_DEBOUNCE_MS):
        self.storage = storage
        self._states: dict[str, bool] = {}
        self.writer = DebouncedWriter(
            self._write,
            delay_ms / 1000,
            write_sync=self._write_sync,
            name="included",
        )

    def is_included(self, item_id) -> bool:
        return self._states.get(normalize_id(item_id), True)

    def set(self, item_id, included: bool, persist: bool = True) -> bool:
        key = normalize_id(item_id)
        if not key:
            return False
        self._states[key] = bool(included)
        if persist:
            self._schedule()
        return True

    def set_all(self, ids: Iterable, included: bool) -> None:
        for item_id in ids:
            self.set(item_id, included, persist=False)
        self._schedule()

    def count_selected(self, ids: Iterable) -> int:
        return sum(1 for item_id in ids if self.is_included(item_id))

    def prune(self, ids: Iterable) -> None:
        """Forget flags for ids no longer in the cart."""
        keep = {normalize_id(i) for i in ids}
        stale = [key for key in self._states if key not in keep]
        for key in stale:
            del self._states[key]
        if stale:
            self._schedule()

    def snapshot(self, ids: Iterable) -> dict[str, bool]:
        return {normalize_id(i): self.is_included(i) for i in ids}

    async def load(self) -> dict[str, bool]:
        if self.storage is None:
            return {}
        raw = await self.storage.load_included() or {}
        self._states = {
            normalize_id(key): bool(value)
            for key, value in raw.items()
            if normalize_id(key) and isinstance(value, bool)
        }
        return dict(self._states)

    def _schedule(self) -> None:
        if self.storage is not None:
            self.writer.schedule()

    async def _write(self) -> None:
        await self.storage.save_included(dict(self._states))

    def _write_sync(self) -> None:
        self.storage.save_included_sync(dict(self._states))

    def close(self) -> None:
        if self.storage is not None and self.writer.pending:
            self.writer.flush_sync()
        self.writer.cancel()
