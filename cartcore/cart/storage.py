"""Redis access for cart, favorites and checkout selection."""
import json
from typing import Any, Optional

from cartcore.db import RedisKeys, TTL, get_redis, get_redis_sync
from cartcore.logging import get_logger, sanitize_id_for_logging

logger = get_logger(__name__)


class CartStorage:
    """
    JSON values in Upstash Redis, one key per owner and collection.

    Features:
    - Async client for debounced writes
    - Sync client for teardown flushes
    - TTL on every key (abandoned carts expire)
    """

    def __init__(self, owner_id: str, redis=None, redis_sync=None):
        self.owner_id = str(owner_id)
        self._redis = redis  # Lazy initialization
        self._redis_sync = redis_sync

    @property
    def redis(self):
        """Get async Redis client (lazy initialization)."""
        if self._redis is None:
            try:
                self._redis = get_redis()
            except ValueError as e:
                raise ValueError(f"Redis not available: {e}. Check UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN environment variables.")
        return self._redis

    @property
    def redis_sync(self):
        """Get sync Redis client (lazy initialization)."""
        if self._redis_sync is None:
            try:
                self._redis_sync = get_redis_sync()
            except ValueError as e:
                raise ValueError(f"Redis not available: {e}. Check UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN environment variables.")
        return self._redis_sync

    @property
    def cart_key(self) -> str:
        return RedisKeys.cart_key(self.owner_id)

    @property
    def favorites_key(self) -> str:
        return RedisKeys.favorites_key(self.owner_id)

    @property
    def included_key(self) -> str:
        return RedisKeys.included_key(self.owner_id)

    # ------------------------------------------------------------------

    async def _load(self, key: str, expected: type) -> Optional[Any]:
        redis = self.redis
        try:
            data = await redis.get(key)
        except Exception as e:
            logger.warning(f"Failed to read {sanitize_id_for_logging(key)} from Redis: {e}")
            return None

        if not data:
            return None

        try:
            value = json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Corrupted data under {sanitize_id_for_logging(key)}: {e}")
            return None

        if not isinstance(value, expected):
            logger.warning(f"Unexpected {type(value).__name__} under {sanitize_id_for_logging(key)}")
            return None
        return value

    async def _save(self, key: str, value: Any, ttl: int) -> None:
        await self.redis.set(key, json.dumps(value), ex=ttl)

    def _save_sync(self, key: str, value: Any, ttl: int) -> None:
        self.redis_sync.set(key, json.dumps(value), ex=ttl)

    # Cart ---------------------------------------------------------------

    async def load_cart(self) -> Optional[list]:
        return await self._load(self.cart_key, list)

    async def save_cart(self, entries: list) -> None:
        await self._save(self.cart_key, entries, TTL.CART)

    def save_cart_sync(self, entries: list) -> None:
        self._save_sync(self.cart_key, entries, TTL.CART)

    # Favorites ----------------------------------------------------------

    async def load_favorites(self) -> Optional[list]:
        return await self._load(self.favorites_key, list)

    async def save_favorites(self, ids: list) -> None:
        await self._save(self.favorites_key, ids, TTL.FAVORITES)

    def save_favorites_sync(self, ids: list) -> None:
        self._save_sync(self.favorites_key, ids, TTL.FAVORITES)

    # Checkout selection -------------------------------------------------

    async def load_included(self) -> Optional[dict]:
        return await self._load(self.included_key, dict)

    async def save_included(self, states: dict) -> None:
        await self._save(self.included_key, states, TTL.CART_INCLUDED)

    def save_included_sync(self, states: dict) -> None:
        self._save_sync(self.included_key, states, TTL.CART_INCLUDED)
