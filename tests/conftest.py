"""Pytest configuration and fixtures"""
import os
from unittest.mock import AsyncMock, Mock

import pytest

# Set test environment variables
os.environ.setdefault("UPSTASH_REDIS_REST_URL", "https://test.upstash.io")
os.environ.setdefault("UPSTASH_REDIS_REST_TOKEN", "test_token")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test_key")

from cartcore.cart import CartManager, CartStorage  # noqa: E402
from cartcore.config import CartOptions  # noqa: E402
from cartcore.services.catalog import ProductCatalog  # noqa: E402


OWNER_ID = "user-1"


@pytest.fixture
def redis_store():
    """Backing dict shared by the async and sync Redis mocks."""
    return {}


@pytest.fixture
def mock_redis(redis_store):
    """Mock async Upstash Redis client"""
    redis = Mock()

    def _set(key, value, ex=None):
        redis_store[key] = value
        return True

    redis.get = AsyncMock(side_effect=lambda key: redis_store.get(key))
    redis.set = AsyncMock(side_effect=_set)
    redis.delete = AsyncMock(side_effect=lambda key: redis_store.pop(key, None) is not None)
    redis.xadd = AsyncMock(return_value="1-0")
    return redis


@pytest.fixture
def mock_redis_sync(redis_store):
    """Mock sync Upstash Redis client (teardown flushes)"""
    redis = Mock()

    def _set(key, value, ex=None):
        redis_store[key] = value
        return True

    redis.set = Mock(side_effect=_set)
    return redis


@pytest.fixture
def storage(mock_redis, mock_redis_sync):
    return CartStorage(OWNER_ID, redis=mock_redis, redis_sync=mock_redis_sync)


@pytest.fixture
def sample_products():
    """Sample catalog rows"""
    return [
        {"id": "sku-1", "price": "100.00", "stock": 3, "title": "Keyboard"},
        {"id": "sku-2", "price": "25.50", "stock": 10, "title": "Mouse"},
        {"id": "a", "price": "10", "stock": 5, "title": "Item A"},
        {"id": "b", "price": "20", "stock": 5, "title": "Item B"},
        {"id": "c", "price": "30", "stock": 5, "title": "Item C"},
        {"id": "sold-out", "price": "5", "stock": 0, "title": "Sold out"},
    ]


@pytest.fixture
def catalog(sample_products):
    return ProductCatalog(products=sample_products)


@pytest.fixture
def options():
    """Short debounce windows, no background re-checks"""
    return CartOptions(
        save_debounce_ms=10,
        included_save_debounce_ms=10,
        parallel_product_fetch=True,
        lookup_timeout=1.0,
        partial_patching=True,
        recheck_stock_on_mount=False,
    )


@pytest.fixture
def notifier():
    """Mock notifications collaborator"""
    return Mock()


@pytest.fixture
def manager(storage, catalog, options, notifier):
    manager = CartManager(
        OWNER_ID,
        lookup=catalog.lookup,
        storage=storage,
        notifier=notifier,
        options=options,
        broadcast_storage=False,
    )
    yield manager
    manager.close()
