"""Cache layer for tiercache.

Provides a local in-process cache and a Redis-backed distributed cache:
- Per-process mirrors of Redis entries for fast reads
- Dogpile prevention for fetches, writes and computations
- Stale-while-revalidate reads with background refresh
- Cross-process mirror invalidation over Redis Pub/Sub
"""

from tiercache.cache.entry import MISSING, CacheEntry, StaleContext
from tiercache.cache.invalidation import (
    InvalidationCommand,
    InvalidationMessage,
    InvalidationSubscriber,
)
from tiercache.cache.keys import CacheKeys
from tiercache.cache.local import LocalCache, get_global_cache
from tiercache.cache.lru import BoundedMap
from tiercache.cache.mirror import DELETE_ALL, LocalMirror
from tiercache.cache.redis import RedisCache, RedisConfig, get_global_redis_cache
from tiercache.cache.registry import CacheRegistry, close_registry, get_registry

__all__ = [
    # Local
    "BoundedMap",
    "CacheEntry",
    "LocalCache",
    "MISSING",
    "StaleContext",
    "get_global_cache",
    # Distributed
    "CacheKeys",
    "DELETE_ALL",
    "LocalMirror",
    "RedisCache",
    "RedisConfig",
    "get_global_redis_cache",
    # Shared state
    "CacheRegistry",
    "get_registry",
    "close_registry",
    # Invalidation
    "InvalidationCommand",
    "InvalidationMessage",
    "InvalidationSubscriber",
]
