"""
Product Catalog

The lookup collaborator behind the stock resolver. Cached snapshots are
answered synchronously; cache misses return a coroutine that fetches through
the configured async fetcher. Concurrent misses for the same id share one
fetch.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from pydantic import ValidationError

from cartcore.logging import get_logger, sanitize_id_for_logging
from cartcore.services.models import ProductSnapshot

logger = get_logger(__name__)

Fetcher = Callable[[str], Awaitable[Any]]


def _key(value: Any) -> str:
    return str(value if value is not None else "").strip().lower()


class ProductCatalog:
    """In-memory snapshot cache with an optional async fetcher."""

    def __init__(
        self,
        fetcher: Optional[Fetcher] = None,
        products: Optional[Iterable[Any]] = None,
        cache_ttl: Optional[float] = None,
    ):
        self._fetcher = fetcher
        self.cache_ttl = cache_ttl
        self._cache: dict[str, tuple[ProductSnapshot, float]] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self.fetch_count = 0
        if products:
            self.set_products(products)

    @classmethod
    def from_repository(cls, repo, cache_ttl: Optional[float] = 60.0) -> "ProductCatalog":
        """Catalog fetching through a ProductRepository."""
        return cls(fetcher=repo.get_snapshot, cache_ttl=cache_ttl)

    # ------------------------------------------------------------------

    @staticmethod
    def _coerce(value: Any) -> Optional[ProductSnapshot]:
        if isinstance(value, ProductSnapshot):
            return value
        if isinstance(value, Mapping):
            try:
                return ProductSnapshot.model_validate(value)
            except ValidationError as e:
                logger.warning(f"Skipping malformed product: {e.error_count()} validation errors")
        return None

    def _cached(self, key: str) -> Optional[ProductSnapshot]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        snapshot, stored_at = entry
        if self.cache_ttl is not None and time.monotonic() - stored_at > self.cache_ttl:
            del self._cache[key]
            return None
        return snapshot

    def get(self, item_id) -> Optional[ProductSnapshot]:
        """Cached snapshot only, never fetches."""
        return self._cached(_key(item_id))

    def lookup(self, item_id):
        """Snapshot now, a coroutine resolving to one, or None."""
        key = _key(item_id)
        if not key:
            return None
        cached = self._cached(key)
        if cached is not None:
            return cached
        if self._fetcher is None:
            return None
        return self._fetch(key)

    async def _fetch(self, key: str) -> Optional[ProductSnapshot]:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        # A caller timing out must not cancel the shared fetch
        return await asyncio.shield(task)

    async def _load(self, key: str) -> Optional[ProductSnapshot]:
        self.fetch_count += 1
        raw = await self._fetcher(key)
        snapshot = self._coerce(raw)
        if snapshot is not None:
            self._cache[key] = (snapshot, time.monotonic())
        else:
            logger.debug(f"No product data for {sanitize_id_for_logging(key)}")
        return snapshot

    # ------------------------------------------------------------------

    def set_products(self, rows: Iterable[Any]) -> int:
        """Replace the cache. Malformed rows are skipped."""
        self._cache = {}
        for row in rows:
            self.upsert(row)
        return len(self._cache)

    def upsert(self, row: Any) -> Optional[ProductSnapshot]:
        snapshot = self._coerce(row)
        if snapshot is not None:
            self._cache[_key(snapshot.id)] = (snapshot, time.monotonic())
        return snapshot

    def invalidate(self, item_id=None) -> None:
        """Drop one cached snapshot, or all of them."""
        if item_id is None:
            self._cache.clear()
        else:
            self._cache.pop(_key(item_id), None)

    def __len__(self) -> int:
        return len(self._cache)


# Singleton instance
_product_catalog: Optional[ProductCatalog] = None


async def get_product_catalog() -> ProductCatalog:
    """Get the Supabase-backed ProductCatalog singleton."""
    global _product_catalog
    if _product_catalog is None:
        from cartcore.db import get_supabase
        from cartcore.services.repositories import ProductRepository

        client = await get_supabase()
        _product_catalog = ProductCatalog.from_repository(ProductRepository(client))
    return _product_catalog
