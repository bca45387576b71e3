"""Error taxonomy for tiercache.

Configuration problems fail fast with ``InvalidArgumentError``. Failures of
the value-producing computations handed to ``set``/``get_or_set`` are never
raised: the cache logs them and reports a failed write instead. Backend
errors come straight from redis-py (``redis.exceptions.RedisError``) and are
raised for awaited foreground calls only.
"""

from __future__ import annotations


class CacheError(Exception):
    """Base class for all tiercache errors."""


class InvalidArgumentError(CacheError, ValueError):
    """Raised synchronously for invalid construction or call arguments."""


class InvalidationMessageError(CacheError):
    """A pub/sub message did not match the invalidation wire format."""
