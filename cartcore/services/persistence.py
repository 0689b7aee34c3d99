"""Debounced, coalescing writes to the key-value store.

A writer owns one cancelable timer task. Every ``schedule()`` cancels the
previous timer and starts a new one, so a burst of mutations produces a
single write carrying the final state. ``flush_sync()`` is the teardown hook.

Note: ``schedule()`` is a sync function that may start a background task.
Do NOT await it.
"""
import asyncio
from typing import Awaitable, Callable, Optional

from cartcore.logging import get_logger

logger = get_logger(__name__)


class DebouncedWriter:
    """Cancelable delayed write around an async writer and a sync writer."""

    def __init__(
        self,
        write: Callable[[], Awaitable[None]],
        delay: float,
        write_sync: Optional[Callable[[], None]] = None,
        name: str = "store",
    ):
        self._write = write
        self._write_sync = write_sync
        self.delay = max(0.0, delay)
        self.name = name
        self._pending = False
        self._timer: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self.writes = 0

    @property
    def pending(self) -> bool:
        return self._pending

    def schedule(self) -> None:
        """Mark dirty and (re)start the debounce window."""
        self._pending = True
        self.cancel()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to run the timer on: write now
            self.flush_sync()
            return

        if self.delay <= 0:
            task = loop.create_task(self.flush())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            return

        self._timer = loop.create_task(self._delayed())

    async def _delayed(self) -> None:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            return
        # Past the window: detach so cancel() cannot interrupt the write itself
        self._timer = None
        await self.flush()

    def cancel(self) -> None:
        """Cancel the timer. Pending state is kept for a later flush."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def flush(self, force: bool = False) -> bool:
        """Write now if anything is pending. Failures stay pending."""
        self.cancel()
        if not self._pending and not force:
            return True
        self._pending = False
        try:
            await self._write()
        except Exception as e:
            self._pending = True
            logger.warning(f"Failed to persist {self.name}: {e}")
            return False
        self.writes += 1
        logger.debug(f"Persisted {self.name}")
        return True

    def flush_sync(self, force: bool = False) -> bool:
        """Synchronous write used on teardown and outside an event loop."""
        self.cancel()
        if not self._pending and not force:
            return True
        if self._write_sync is None:
            logger.warning(f"No synchronous writer for {self.name}, pending write dropped")
            return False
        self._pending = False
        try:
            self._write_sync()
        except Exception as e:
            self._pending = True
            logger.warning(f"Failed to persist {self.name} synchronously: {e}")
            return False
        self.writes += 1
        return True

    async def wait(self) -> None:
        """Wait for the timer and any in-flight immediate writes."""
        while True:
            tasks = [t for t in (self._timer, *self._inflight) if t is not None and not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def close(self) -> bool:
        """Teardown: cancel the debounce and write unconditionally."""
        self.cancel()
        for task in list(self._inflight):
            task.cancel()
        return self.flush_sync(force=True)
