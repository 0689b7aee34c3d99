"""
View Reconciler

Maps cart state onto the RowList with minimal patching:
- Partial path: rebuild only the rows of dirty ids, batch the writes after
  one paint hand-off, then verify the rendered order against the cart.
- Full path: discard every row and rebuild from the cart in order. Used on
  cold start, on an empty cart, on a failed row build and on any
  structural mismatch.

The reconciler owns the id -> row association; rows never point back into
the model.
"""
import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from cartcore.logging import get_logger, sanitize_id_for_logging
from .models import LineItem, normalize_id
from .view import DefaultRowBuilder, Row, RowControls, RowList

logger = get_logger(__name__)

FrameScheduler = Callable[[], Awaitable[None]]


async def next_frame() -> None:
    """Default paint hand-off: yield to the loop once."""
    await asyncio.sleep(0)


@dataclass
class ReconcileOutcome:
    """What a single pass did to the view."""
    patched_ids: list[str] = field(default_factory=list)
    removed_ids: list[str] = field(default_factory=list)
    full_rebuild: bool = False
    fallback: bool = False

    @property
    def touched(self) -> bool:
        return bool(self.patched_ids or self.removed_ids or self.full_rebuild)


class ViewReconciler:
    """Keeps a RowList in step with a CartModel."""

    def __init__(
        self,
        rows: Optional[RowList] = None,
        builder=None,
        frame_scheduler: Optional[FrameScheduler] = None,
        partial_patching: bool = True,
        recheck_stock: bool = False,
        is_favorite: Optional[Callable[[str], bool]] = None,
        on_recheck_change: Optional[Callable[[str], None]] = None,
    ):
        self.rows = rows if rows is not None else RowList()
        self.builder = builder if builder is not None else DefaultRowBuilder()
        self.frame_scheduler = frame_scheduler or next_frame
        self.partial_patching = partial_patching
        self.recheck_stock = recheck_stock
        self.is_favorite = is_favorite
        self.on_recheck_change = on_recheck_change

        self._association: dict[str, Row] = {}
        self._syncing: set[str] = set()
        self._recheck_tasks: set[asyncio.Task] = set()
        self._rendered = False
        self._fallback_builder = DefaultRowBuilder()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def row_for(self, item_id) -> Optional[Row]:
        return self._association.get(normalize_id(item_id))

    def is_consistent(self, model) -> bool:
        """Rendered ids equal cart ids, in order, with one row each."""
        rendered = self.rows.ids()
        if rendered != model.ids():
            return False
        return all(self._association.get(row.id) is row for row in self.rows)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def reconcile(self, model, dirty_ids: Iterable, force_full: bool = False) -> ReconcileOutcome:
        dirty = {normalize_id(i) for i in dirty_ids}
        dirty.discard("")

        if force_full or not self.partial_patching or not self._rendered or len(model) == 0:
            return await self.rebuild(model)

        if not dirty:
            if self.is_consistent(model):
                return ReconcileOutcome()
            logger.debug("Nothing dirty but view drifted from cart, rebuilding")
            return await self.rebuild(model, fallback=True)

        try:
            outcome = await self._patch(model, dirty)
        except Exception as e:
            logger.warning(f"Partial reconcile failed, falling back to full rebuild: {e}")
            return await self.rebuild(model, fallback=True)

        if not self.is_consistent(model):
            logger.warning("Rendered rows out of order after patch, rebuilding")
            return await self.rebuild(model, fallback=True)
        return outcome

    async def _patch(self, model, dirty: set[str]) -> ReconcileOutcome:
        order = {key: pos for pos, key in enumerate(model.ids())}
        removals: list[Row] = []
        replacements: list[tuple[Row, Row]] = []
        insertions: list[Row] = []
        removed_ids: list[str] = []

        # Build every replacement before touching the view
        for key in sorted(dirty, key=lambda k: order.get(k, len(order))):
            existing = self.rows.find(key)
            if len(existing) > 1:
                logger.warning(f"Duplicate rows for {sanitize_id_for_logging(key)}, keeping the first")
                removals.extend(existing[1:])
            current = existing[0] if existing else None

            item = model.get(key)
            if item is None:
                if current is not None:
                    removals.append(current)
                    removed_ids.append(key)
                continue

            new_row = await self._build(item)
            if current is not None:
                replacements.append((current, new_row))
            else:
                insertions.append(new_row)

        await self.frame_scheduler()

        for row in removals:
            self.rows.remove(row)
            if self._association.get(row.id) is row:
                del self._association[row.id]
        for old, new in replacements:
            self.rows.replace(old, new)
            self._association[new.id] = new
        for row in sorted(insertions, key=lambda r: model.index_of(r.id)):
            self.rows.insert(model.index_of(row.id), row)
            self._association[row.id] = row

        patched = [new.id for _, new in replacements] + [row.id for row in insertions]
        for key in patched:
            row = self._association.get(key)
            item = model.get(key)
            if row is not None and item is not None:
                self.sync_row(row, item)
                self._schedule_recheck(model, key)

        logger.debug(f"Patched {len(patched)} rows, removed {len(removed_ids)}")
        return ReconcileOutcome(patched_ids=patched, removed_ids=removed_ids)

    async def rebuild(self, model, fallback: bool = False) -> ReconcileOutcome:
        """Discard every row and rebuild from the cart, in order."""
        previous = set(self._association)
        items = [model.get(key) for key in model.ids()]
        new_rows = [await self._build_safe(item) for item in items if item is not None]

        await self.frame_scheduler()

        self.rows.reset(new_rows)
        self._association = {row.id: row for row in new_rows}
        self._rendered = True

        for row in new_rows:
            item = model.get(row.id)
            if item is not None:
                self.sync_row(row, item)
                self._schedule_recheck(model, row.id)

        current = [row.id for row in new_rows]
        removed = sorted(previous - set(current))
        logger.debug(f"Rebuilt {len(current)} rows (fallback={fallback})")
        return ReconcileOutcome(
            patched_ids=current,
            removed_ids=removed,
            full_rebuild=True,
            fallback=fallback,
        )

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def _build(self, item: LineItem) -> Row:
        result: Any = self.builder.build(item.copy())
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, Row):
            result = Row(id=item.id, content=result)
        if result.id != item.id:
            raise ValueError(f"row builder returned row for {result.id!r}, expected {item.id!r}")
        return result

    async def _build_safe(self, item: LineItem) -> Row:
        # Full path must always produce a row
        try:
            return await self._build(item)
        except Exception as e:
            logger.error(f"Row build failed for {sanitize_id_for_logging(item.id)}: {e}", exc_info=True)
            return self._fallback_builder.build(item)

    def sync_row(self, row: Row, item: LineItem) -> bool:
        """Set the row's controls from the model. Non-reentrant per row."""
        if row.id in self._syncing:
            return False
        self._syncing.add(row.id)
        try:
            favorite = False
            if self.is_favorite is not None:
                try:
                    favorite = bool(self.is_favorite(item.id))
                except Exception as e:
                    logger.warning(f"Favorite check failed for {sanitize_id_for_logging(item.id)}: {e}")
            row.controls = RowControls.for_item(item, favorite=favorite)
            row.version += 1
        finally:
            self._syncing.discard(row.id)
        return True

    def _schedule_recheck(self, model, key: str) -> None:
        if not self.recheck_stock or not model.resolver.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._recheck(model, key))
        self._recheck_tasks.add(task)
        task.add_done_callback(self._recheck_tasks.discard)

    async def _recheck(self, model, key: str) -> None:
        """Deferred stock re-check after a row is mounted."""
        try:
            snapshot = await model.resolver.snapshot(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Stock re-check failed for {sanitize_id_for_logging(key)}: {e}")
            return
        if snapshot is None or not model.apply_snapshot(key, snapshot):
            return

        row = self._association.get(key)
        item = model.get(key)
        if row is not None and item is not None:
            self.sync_row(row, item)
        if self.on_recheck_change is not None:
            self.on_recheck_change(key)

    async def wait_rechecks(self) -> None:
        while True:
            pending = [t for t in self._recheck_tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def close(self) -> None:
        for task in list(self._recheck_tasks):
            task.cancel()
        self._recheck_tasks.clear()
        self._association.clear()
