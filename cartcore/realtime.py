"""Realtime Module - cross-context storage notifications.

When one context persists the cart or favorites, it appends a
``storage.changed`` event to a Redis stream. Other contexts holding the same
owner's data feed those events into a StorageEventRouter, which reloads the
affected store.

Note: Using Redis Streams (XADD) for compatibility with the Upstash REST API.
"""

import inspect
import json
import uuid
from typing import Any, Awaitable, Callable, Optional, Union

from cartcore.db import RedisKeys, get_redis
from cartcore.logging import get_logger, sanitize_id_for_logging

logger = get_logger(__name__)

Handler = Callable[[str, Optional[str]], Union[Awaitable[Any], Any]]


def new_origin_id() -> str:
    """Identifier of the local execution context."""
    return uuid.uuid4().hex


async def emit_storage_changed(key: str, origin: str, redis=None) -> None:
    """Emit storage.changed event for a persisted key.

    Args:
        key: Storage key that was written (e.g. ``cart:{owner}``)
        origin: Context id of the writer
        redis: Optional client (defaults to the shared async client)
    """
    try:
        client = redis if redis is not None else get_redis()
        payload = {
            "event": "storage.changed",
            "key": key,
            "origin": origin,
        }
        await client.xadd(RedisKeys.STORAGE_EVENTS, "*", {"data": json.dumps(payload)})
        logger.debug(f"Emitted storage.changed for {sanitize_id_for_logging(key)}")
    except Exception as e:
        logger.warning(f"Failed to emit storage.changed: {e}", exc_info=True)


def parse_storage_event(fields: Any) -> Optional[dict]:
    """Decode the ``data`` field of a stream entry (None if unusable)."""
    if not isinstance(fields, dict):
        return None
    raw = fields.get("data")
    if raw is None:
        return None
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(payload, dict) or payload.get("event") != "storage.changed":
        return None
    return payload


class StorageEventRouter:
    """Maps storage keys to reload handlers, skipping our own writes."""

    def __init__(self, origin: Optional[str] = None) -> None:
        self.origin = origin or new_origin_id()
        self._handlers: dict[str, list[Handler]] = {}

    def register(self, key: str, handler: Handler) -> Callable[[], None]:
        self._handlers.setdefault(key, []).append(handler)

        def unregister() -> None:
            handlers = self._handlers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)

        return unregister

    async def dispatch(self, key: str, origin: Optional[str] = None) -> int:
        """Run every handler for the key. Returns how many ran."""
        if origin is not None and origin == self.origin:
            return 0

        ran = 0
        for handler in list(self._handlers.get(key, [])):
            try:
                result = handler(key, origin)
                if inspect.isawaitable(result):
                    await result
                ran += 1
            except Exception as e:
                logger.warning(f"Storage handler failed for {sanitize_id_for_logging(key)}: {e}", exc_info=True)
        return ran

    async def dispatch_entry(self, fields: Any) -> int:
        """Dispatch a raw stream entry."""
        payload = parse_storage_event(fields)
        if payload is None:
            return 0
        return await self.dispatch(str(payload.get("key", "")), payload.get("origin"))
