"""Global pytest configuration and fixtures.

Redis is replaced by fakeredis. Every test gets its own FakeServer and its
own CacheRegistry, so mirrors and in-flight maps never leak between tests.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any

import fakeredis
import fakeredis.aioredis
import pytest
import pytest_asyncio

from tiercache.cache.redis import RedisCache, RedisConfig
from tiercache.cache.registry import CacheRegistry

# Scan-based pattern operations work on any fakeredis install; the Lua path
# is exercised separately.
SCAN_CONFIG = RedisConfig(backend="pika")


@pytest.fixture
def fake_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def redis_client(fake_server: fakeredis.FakeServer) -> AsyncIterator[Any]:
    client = fakeredis.aioredis.FakeRedis(server=fake_server)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def registry() -> AsyncIterator[CacheRegistry]:
    registry = CacheRegistry(process_id="process-a")
    yield registry
    await registry.close()


@pytest.fixture
def make_cache(redis_client: Any, registry: CacheRegistry) -> Callable[..., RedisCache]:
    """Build RedisCache instances on the test's fake server and registry."""

    def factory(prefix: str = "test", **kwargs: Any) -> RedisCache:
        kwargs.setdefault("redis_config", SCAN_CONFIG)
        kwargs.setdefault("client", redis_client)
        kwargs.setdefault("registry", registry)
        return RedisCache(prefix, **kwargs)

    return factory


@pytest.fixture(autouse=True)
def reset_redis_cache_class_state() -> Iterator[None]:
    RedisCache.remote_get_count = 0
    yield
    RedisCache.remote_get_count = 0
    RedisCache.bypass_all(False)
