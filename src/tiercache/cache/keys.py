"""Cache key schema for tiercache.

Remote key format: RC:{global_prefix}:{prefix}:{key}

Where:
- RC: fixed namespace for all cache keys
- global_prefix: isolates one application sharing the Redis server
- prefix: the RedisCache instance prefix (may be a glob for bulk operations)
- key: the caller's key

Lock keys live outside that namespace as LOCK:{key}. The invalidation
channel for a global prefix is RC:{global_prefix}.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import orjson

_GLOB_CHARS = frozenset("*?[")


class CacheKeys:
    """Cache key generator following consistent naming convention."""

    NAMESPACE = "RC"
    LOCK_PREFIX = "LOCK"

    @classmethod
    def remote(cls, global_prefix: str, prefix: str, key: str) -> str:
        """Fully-qualified Redis key for a cache entry."""
        return f"{cls.NAMESPACE}:{global_prefix}:{prefix}:{key}"

    @classmethod
    def head(cls, global_prefix: str, prefix: str) -> str:
        """Common leading part of every key under a prefix."""
        return f"{cls.NAMESPACE}:{global_prefix}:{prefix}:"

    @classmethod
    def pattern(cls, global_prefix: str, prefix: str) -> str:
        """SCAN pattern matching every key under a prefix."""
        return f"{cls.head(global_prefix, prefix)}*"

    @classmethod
    def key_offset(cls, global_prefix: str, prefix: str) -> int:
        """Byte offset where the caller's key starts inside a remote key.

        For glob prefixes the length of the prefix segment is unknown, so the
        offset stops after the global prefix and matching covers
        ``{prefix}:{key}``.
        """
        if is_glob(prefix):
            return len(f"{cls.NAMESPACE}:{global_prefix}:".encode())
        return len(cls.head(global_prefix, prefix).encode())

    @classmethod
    def channel(cls, global_prefix: str) -> str:
        """Pub/Sub channel carrying invalidations for a global prefix."""
        return f"{cls.NAMESPACE}:{global_prefix}"

    @classmethod
    def lock(cls, key: str) -> str:
        """Redis key used as a lock marker."""
        return f"{cls.LOCK_PREFIX}:{key}"

    @classmethod
    def parse_key(cls, key: str) -> dict[str, str] | None:
        """Parse a remote key into its components.

        Returns None if the key doesn't match the expected format.
        """
        parts = key.split(":", 3)
        if len(parts) < 4 or parts[0] != cls.NAMESPACE:
            return None

        return {
            "global_prefix": parts[1],
            "prefix": parts[2],
            "key": parts[3],
        }


def is_glob(prefix: str) -> bool:
    """Whether a prefix contains Redis/fnmatch glob characters."""
    return any(char in _GLOB_CHARS for char in prefix)


def memo_key(
    key: str,
    args: tuple[Any, ...],
    kwargs: dict[str, Any],
    key_fn: Callable[..., Any] | None = None,
) -> str:
    """Cache key for one call of a memoized function."""
    if key_fn is not None:
        return f"{key}:{key_fn(*args, **kwargs)}"

    payload: list[Any] = list(args)
    if kwargs:
        payload.append(kwargs)
    encoded = orjson.dumps(payload, default=repr, option=orjson.OPT_SORT_KEYS)
    return f"{key}:{encoded.decode()}"
