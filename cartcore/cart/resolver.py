"""
Stock Resolver Adapter

Wraps the product lookup collaborator, whose ``lookup(id)`` may return a
snapshot, an awaitable snapshot, or None, and normalizes the answer into a
Resolution: Immediate(snapshot) | Deferred(awaitable) | Unknown().

Lookup failures never propagate: a raising, timing-out or malformed lookup is
"no new data" for that one item.
"""
import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Union

from pydantic import ValidationError

from cartcore.logging import get_logger, sanitize_id_for_logging
from cartcore.services.models import ProductSnapshot
from .models import LineItem, normalize_id

logger = get_logger(__name__)

Lookup = Callable[[str], Any]


@dataclass(frozen=True)
class Immediate:
    """Snapshot available now."""
    snapshot: ProductSnapshot


@dataclass(frozen=True)
class Deferred:
    """Snapshot available after an await; resolves to None on failure."""
    awaitable: Awaitable
    source: Any = None

    def discard(self) -> None:
        """Close never-awaited coroutines so they do not leak warnings."""
        for candidate in (self.awaitable, self.source):
            if inspect.iscoroutine(candidate):
                candidate.close()


@dataclass(frozen=True)
class Unknown:
    """No product data for this id."""
    reason: str = ""


Resolution = Union[Immediate, Deferred, Unknown]


class RefreshStrategy(str, Enum):
    CONCURRENT = "concurrent"
    SEQUENTIAL = "sequential"


class StockResolver:
    """Normalizes product lookups and merges snapshots into line items."""

    def __init__(
        self,
        lookup: Optional[Lookup] = None,
        lookup_timeout: Optional[float] = 7.0,
        strategy: RefreshStrategy = RefreshStrategy.CONCURRENT,
    ):
        self._lookup = lookup
        self.lookup_timeout = lookup_timeout
        self.strategy = strategy

    @property
    def enabled(self) -> bool:
        return self._lookup is not None

    @staticmethod
    def coerce(id_key: str, value: Any) -> Optional[ProductSnapshot]:
        """Turn a raw lookup value into a snapshot (None if unusable)."""
        if value is None:
            return None
        if isinstance(value, ProductSnapshot):
            return value
        if isinstance(value, Mapping):
            data = dict(value)
            if not any(data.get(k) for k in ("id", "product_id", "productId", "name")):
                data["id"] = id_key
            try:
                return ProductSnapshot.model_validate(data)
            except ValidationError as e:
                logger.warning(
                    f"Malformed product data for {sanitize_id_for_logging(id_key)}: "
                    f"{e.error_count()} validation errors"
                )
                return None
        logger.warning(f"Unsupported lookup result type {type(value).__name__}")
        return None

    def resolve(self, item_id) -> Resolution:
        """Ask the collaborator for a snapshot of one product."""
        key = normalize_id(item_id)
        if not key or self._lookup is None:
            return Unknown("no lookup")

        try:
            raw = self._lookup(key)
        except Exception as e:
            logger.warning(f"Product lookup raised for {sanitize_id_for_logging(key)}: {e}")
            return Unknown("lookup failed")

        if raw is None:
            return Unknown("not found")

        if inspect.isawaitable(raw):
            return Deferred(self._settle(key, raw), source=raw)

        snapshot = self.coerce(key, raw)
        return Immediate(snapshot) if snapshot is not None else Unknown("malformed")

    def resolve_now(self, item_id) -> Optional[ProductSnapshot]:
        """Snapshot only if it is available synchronously."""
        resolution = self.resolve(item_id)
        if isinstance(resolution, Immediate):
            return resolution.snapshot
        if isinstance(resolution, Deferred):
            resolution.discard()
        return None

    async def _settle(self, key: str, awaitable: Awaitable) -> Optional[ProductSnapshot]:
        try:
            if self.lookup_timeout:
                value = await asyncio.wait_for(awaitable, self.lookup_timeout)
            else:
                value = await awaitable
        except asyncio.TimeoutError:
            logger.warning(f"Product lookup timed out for {sanitize_id_for_logging(key)}")
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Product lookup failed for {sanitize_id_for_logging(key)}: {e}")
            return None
        return self.coerce(key, value)

    async def snapshot(self, item_id) -> Optional[ProductSnapshot]:
        """Resolve one id, awaiting if necessary."""
        resolution = self.resolve(item_id)
        if isinstance(resolution, Immediate):
            return resolution.snapshot
        if isinstance(resolution, Deferred):
            return await resolution.awaitable
        return None

    @staticmethod
    def merge(item: LineItem, snapshot: ProductSnapshot) -> bool:
        """Copy resolved fields into the item and clamp quantity to stock.

        Only fields the snapshot actually carries overwrite the item; spec
        attributes are merged key by key. Returns True if the item changed.
        """
        provided = snapshot.model_fields_set
        before = (
            item.unit_price, item.stock_limit, item.display_name,
            item.image_ref, dict(item.spec_attributes), item.quantity,
        )

        if "price" in provided:
            item.unit_price = snapshot.price
        if snapshot.display_name:
            item.display_name = snapshot.display_name
        if snapshot.image_ref:
            item.image_ref = snapshot.image_ref
        if snapshot.spec_attributes:
            item.spec_attributes = {**item.spec_attributes, **snapshot.spec_attributes}
        if "stock_limit" in provided:
            item.stock_limit = snapshot.stock_limit
            if item.quantity > item.stock_limit:
                item.quantity = max(1, item.stock_limit)

        after = (
            item.unit_price, item.stock_limit, item.display_name,
            item.image_ref, item.spec_attributes, item.quantity,
        )
        return before != after

    async def refresh(
        self,
        model,
        ids: Optional[Iterable[str]] = None,
        strategy: Optional[RefreshStrategy] = None,
    ) -> set[str]:
        """Refresh every (or the given) cart line from the lookup.

        Each item is independent: failures leave that item untouched.
        Results are merged through the model against its *current* state,
        so lines removed while a lookup was in flight are skipped.

        Returns ids whose line changed.
        """
        if self._lookup is None:
            return set()

        targets = [normalize_id(i) for i in ids] if ids is not None else model.ids()
        changed: set[str] = set()
        pending: list[tuple[str, Deferred]] = []

        for key in targets:
            if not key or key not in model:
                continue
            resolution = self.resolve(key)
            if isinstance(resolution, Immediate):
                if model.apply_snapshot(key, resolution.snapshot):
                    changed.add(key)
            elif isinstance(resolution, Deferred):
                pending.append((key, resolution))

        if not pending:
            return changed

        async def apply_when_ready(key: str, deferred: Deferred) -> None:
            snapshot = await deferred.awaitable
            if snapshot is not None and model.apply_snapshot(key, snapshot):
                changed.add(key)

        mode = strategy or self.strategy
        if mode == RefreshStrategy.SEQUENTIAL:
            for key, deferred in pending:
                try:
                    await apply_when_ready(key, deferred)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"Sequential refresh failed for {sanitize_id_for_logging(key)}: {e}")
        else:
            results = await asyncio.gather(
                *(apply_when_ready(key, deferred) for key, deferred in pending),
                return_exceptions=True,
            )
            for (key, _), result in zip(pending, results):
                if isinstance(result, BaseException):
                    logger.warning(f"Concurrent refresh failed for {sanitize_id_for_logging(key)}: {result}")

        return changed
