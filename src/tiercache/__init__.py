"""tiercache: two-tier (local + Redis) cache with cross-process invalidation.

Example:
    from tiercache import RedisCache, Thunk

    users = RedisCache("users")
    user = await users.get_or_set("42", Thunk(load_user), ttl="10m")
"""

from tiercache.cache import (
    BoundedMap,
    CacheRegistry,
    LocalCache,
    RedisCache,
    RedisConfig,
    StaleContext,
    close_registry,
    get_global_cache,
    get_global_redis_cache,
    get_registry,
)
from tiercache.core import Literal, Pending, Thunk, parse_duration
from tiercache.distributed import Lock
from tiercache.errors import CacheError, InvalidArgumentError, InvalidationMessageError

__version__ = "0.1.0"

__all__ = [
    # Caches
    "BoundedMap",
    "LocalCache",
    "RedisCache",
    "RedisConfig",
    "StaleContext",
    "get_global_cache",
    "get_global_redis_cache",
    # Shared state
    "CacheRegistry",
    "get_registry",
    "close_registry",
    # Values
    "Literal",
    "Pending",
    "Thunk",
    "parse_duration",
    # Coordination
    "Lock",
    # Errors
    "CacheError",
    "InvalidArgumentError",
    "InvalidationMessageError",
]
