"""One consolidated CartUpdate per reconciliation pass, fanned out to observers."""
from typing import Callable, Optional

from cartcore.logging import get_logger
from .models import CartUpdate

logger = get_logger(__name__)

Subscriber = Callable[[CartUpdate], None]


class UpdateBroadcaster:
    """Explicit, finite subscriber list invoked synchronously at the end of a pass."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self.last: Optional[CartUpdate] = None

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register an observer; returns its unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, update: CartUpdate) -> int:
        """Deliver to every subscriber. Returns how many succeeded."""
        self.last = update
        delivered = 0
        for callback in list(self._subscribers):
            try:
                callback(update)
                delivered += 1
            except Exception as e:
                logger.warning(f"Cart subscriber {getattr(callback, '__name__', callback)!r} failed: {e}")
        return delivered

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)
