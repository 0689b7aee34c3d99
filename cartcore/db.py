"""
Storage Module - Redis and Supabase Clients

Provides singleton instances of:
- Async Upstash Redis client for debounced cart/favorites writes
- Sync Upstash Redis client for teardown flushes
- Async Supabase client for product lookups
"""

import os
from typing import Optional

from supabase._async.client import AsyncClient, create_client as acreate_client
from upstash_redis import Redis
from upstash_redis.asyncio import Redis as AsyncRedis


# Environment variables (Upstash uses REST_URL and REST_TOKEN)
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")

UPSTASH_REDIS_REST_URL = os.environ.get("UPSTASH_REDIS_REST_URL", "")
UPSTASH_REDIS_REST_TOKEN = os.environ.get("UPSTASH_REDIS_REST_TOKEN", "")


# Singleton instances
_async_supabase_client: Optional[AsyncClient] = None
_redis_client: Optional[AsyncRedis] = None
_sync_redis_client: Optional[Redis] = None


async def get_supabase() -> AsyncClient:
    """
    Get async Supabase client (singleton).
    Used by the product repository behind the catalog.
    """
    global _async_supabase_client

    if _async_supabase_client is None:
        if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _async_supabase_client = await acreate_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)

    return _async_supabase_client


def get_redis() -> AsyncRedis:
    """
    Get async Upstash Redis client (singleton).

    Used for:
    - Debounced cart writes
    - Favorites and included-state writes
    - Cross-context storage notifications (streams)
    """
    global _redis_client

    if _redis_client is None:
        if not UPSTASH_REDIS_REST_URL or not UPSTASH_REDIS_REST_TOKEN:
            raise ValueError("UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN must be set")
        _redis_client = AsyncRedis(url=UPSTASH_REDIS_REST_URL, token=UPSTASH_REDIS_REST_TOKEN)

    return _redis_client


def get_redis_sync() -> Redis:
    """
    Get sync Upstash Redis client (singleton).
    Use only for teardown flushes where no event loop can be awaited.
    """
    global _sync_redis_client

    if _sync_redis_client is None:
        if not UPSTASH_REDIS_REST_URL or not UPSTASH_REDIS_REST_TOKEN:
            raise ValueError("UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN must be set")
        _sync_redis_client = Redis(url=UPSTASH_REDIS_REST_URL, token=UPSTASH_REDIS_REST_TOKEN)

    return _sync_redis_client


class RedisKeys:
    """Redis key prefixes for different data types."""

    CART = "cart:"  # cart:{owner_id}
    CART_INCLUDED = "cart:included:"  # cart:included:{owner_id}
    FAVORITES = "favorites:"  # favorites:{owner_id}

    # Cross-context notifications
    STORAGE_EVENTS = "stream:realtime:storage"

    @staticmethod
    def cart_key(owner_id: str) -> str:
        return f"{RedisKeys.CART}{owner_id}"

    @staticmethod
    def included_key(owner_id: str) -> str:
        return f"{RedisKeys.CART_INCLUDED}{owner_id}"

    @staticmethod
    def favorites_key(owner_id: str) -> str:
        return f"{RedisKeys.FAVORITES}{owner_id}"


class TTL:
    """Time-to-live constants for Redis keys (seconds)."""

    CART = 86400  # 24 hours
    CART_INCLUDED = 86400
    FAVORITES = 2592000  # 30 days
