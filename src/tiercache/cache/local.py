"""In-process cache with TTL and dogpile prevention.

Values may be produced by an in-flight computation. While it runs, the key is
PENDING: every ``get``/``get_or_set`` for that key awaits the same future
instead of starting its own computation. Expired entries are dropped lazily
when read, and a periodic sweep removes entries nobody reads any more.

Example:
    cache = LocalCache()
    await cache.set("user:1", Thunk(load_user), ttl="10m")
    user = await cache.get("user:1")

    # Module-wide singleton
    cache = get_global_cache()
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable, MutableMapping
from typing import Any, TypeVar

from tiercache.cache.entry import CacheEntry, now_ms
from tiercache.cache.keys import memo_key
from tiercache.cache.lru import BoundedMap
from tiercache.config import settings
from tiercache.core.duration import Duration, parse_duration
from tiercache.core.values import Literal, Pending, Thunk, as_source, discard, start
from tiercache.errors import InvalidArgumentError

logger = logging.getLogger(__name__)

R = TypeVar("R")

# Sweeps over maps larger than this yield to the event loop periodically
GC_YIELD_THRESHOLD = 50_000
GC_YIELD_EVERY = 32_768


class LocalCache:
    """Single-process cache with TTL, dogpile guard and lazy expiry.

    Args:
        max_items: Bound the cache with a generational LRU map
        gc_interval_ms: Minimum time between opportunistic sweeps
        gc_size_threshold: Size above which a read miss may trigger a sweep
    """

    def __init__(
        self,
        max_items: int | None = None,
        *,
        gc_interval_ms: int | None = None,
        gc_size_threshold: int | None = None,
    ):
        self._data: MutableMapping[str, CacheEntry]
        if max_items is None:
            self._data = {}
        else:
            self._data = BoundedMap(max_items)

        self._pending: dict[str, asyncio.Future[Any]] = {}
        self.gc_interval_ms = (
            settings.gc_interval_ms if gc_interval_ms is None else gc_interval_ms
        )
        self.gc_size_threshold = (
            settings.gc_size_threshold if gc_size_threshold is None else gc_size_threshold
        )
        self._last_gc = now_ms()
        self._gc_tasks: set[asyncio.Task[int]] = set()

    # -------------------------------------------------------------------------
    # Internal storage helpers
    # -------------------------------------------------------------------------

    def _peek(self, key: str) -> CacheEntry | None:
        if isinstance(self._data, BoundedMap):
            return self._data.peek(key)
        return self._data.get(key)

    def _lookup(self, key: str) -> CacheEntry | None:
        entry = self._data.get(key)
        if entry is None:
            return None

        if entry.is_expired():
            self._data.pop(key, None)
            return None

        return entry

    def _store(self, key: str, value: Any, ttl: int) -> None:
        # A stored value supersedes any computation still running for the key
        self._pending.pop(key, None)
        # None is "no value" and is never stored
        if value is None:
            self._data.pop(key, None)
            return
        self._data[key] = CacheEntry(value=value, ttl=ttl)

    async def _wait(self, future: asyncio.Future[Any]) -> Any:
        try:
            return await asyncio.shield(future)
        except Exception:
            # The writer logs the failure; readers just see a miss
            return None

    async def _set_pending(self, key: str, awaitable: Awaitable[Any], ttl: int) -> tuple[bool, Any]:
        future = asyncio.ensure_future(awaitable)
        self._pending[key] = future

        try:
            value = await asyncio.shield(future)
        except Exception:
            logger.exception(f"Computing local cache value for {key!r} failed")
            if self._pending.get(key) is future:
                self._data.pop(key, None)
            return False, None
        finally:
            superseded = self._pending.get(key) is not future
            if not superseded:
                del self._pending[key]

        if not superseded:
            self._store(key, value, ttl)
        return True, value

    # -------------------------------------------------------------------------
    # Read API
    # -------------------------------------------------------------------------

    async def get(self, key: str, default: Any = None) -> Any:
        """Get a value, waiting for an in-flight computation of it."""
        pending = self._pending.get(key)
        if pending is not None:
            value = await self._wait(pending)
            return default if value is None else value

        return self.get_sync(key, default)

    def get_sync(self, key: str, default: Any = None) -> Any:
        """Get a value without waiting for in-flight computations."""
        entry = self._lookup(key)
        if entry is None:
            self._maybe_gc()
            return default
        return entry.value

    async def get_stale(self, key: str, default: Any = None) -> Any:
        """Get the currently stored value even if a newer one is being computed."""
        return self.get_sync(key, default)

    async def has(self, key: str) -> bool:
        return key in self._pending or self._lookup(key) is not None

    def has_sync(self, key: str) -> bool:
        return self._lookup(key) is not None

    async def size(self) -> int:
        return self.size_sync()

    def size_sync(self) -> int:
        """Number of stored entries, including expired ones not yet swept."""
        return len(self._data)

    # -------------------------------------------------------------------------
    # Write API
    # -------------------------------------------------------------------------

    async def set(self, key: str, value: Any, ttl: Duration = 0) -> bool:
        """Store a value.

        ``value`` may be a plain value, a ``Thunk`` called with the key, or a
        ``Pending`` computation. While a computation runs, readers of the key
        wait for its result.

        Returns:
            True if stored, False if the computation failed (the key is then
            removed)
        """
        ttl_ms = parse_duration(ttl)

        try:
            started = start(as_source(value), key)
        except Exception:
            logger.exception(f"Computing local cache value for {key!r} failed")
            self._data.pop(key, None)
            return False

        if isinstance(started, Pending):
            stored, _ = await self._set_pending(key, started.awaitable, ttl_ms)
            return stored

        self._store(key, started.value, ttl_ms)
        return True

    def set_sync(self, key: str, value: Any, ttl: Duration = 0) -> bool:
        """Store a plain value or the result of a synchronous ``Thunk``."""
        ttl_ms = parse_duration(ttl)
        source = as_source(value)
        if isinstance(source, Pending):
            raise InvalidArgumentError("Pending values require set()")

        try:
            started = start(source, key)
        except Exception:
            logger.exception(f"Computing local cache value for {key!r} failed")
            self._data.pop(key, None)
            return False

        if isinstance(started, Pending):
            discard(started)
            raise InvalidArgumentError(f"Thunk for {key!r} returned an awaitable; use set()")

        self._store(key, started.value, ttl_ms)
        return True

    async def get_or_set(self, key: str, value: Any, ttl: Duration = 0) -> Any:
        """Get a value, computing and storing it if absent.

        Concurrent callers for the same key share one computation. Returns
        None if the computation fails.
        """
        source = as_source(value)
        pending = self._pending.get(key)
        if pending is not None:
            discard(source)
            return await self._wait(pending)

        entry = self._lookup(key)
        if entry is not None:
            discard(source)
            return entry.value

        ttl_ms = parse_duration(ttl)
        try:
            started = start(source, key)
        except Exception:
            logger.exception(f"Computing local cache value for {key!r} failed")
            return None

        if isinstance(started, Literal):
            self._store(key, started.value, ttl_ms)
            return started.value

        _, result = await self._set_pending(key, started.awaitable, ttl_ms)
        return result

    def get_or_set_sync(self, key: str, value: Any, ttl: Duration = 0) -> Any:
        entry = self._lookup(key)
        if entry is not None:
            return entry.value

        if not self.set_sync(key, value, ttl):
            return None
        return self.get_sync(key)

    async def delete(self, key: str) -> bool:
        return self.delete_sync(key)

    def delete_sync(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def clear(self) -> None:
        self.clear_sync()

    def clear_sync(self) -> None:
        self._data.clear()

    # -------------------------------------------------------------------------
    # Garbage collection
    # -------------------------------------------------------------------------

    async def gc(self) -> int:
        """Remove every expired entry.

        Large maps are swept in slices so the event loop keeps running.

        Returns:
            Number of entries removed
        """
        self._last_gc = now_ms()
        entries = list(self._data.items())
        should_yield = len(entries) > GC_YIELD_THRESHOLD
        removed = 0

        for index, (key, entry) in enumerate(entries):
            if should_yield and index and index % GC_YIELD_EVERY == 0:
                await asyncio.sleep(0)

            # The entry may have been replaced while we yielded
            if entry.is_expired() and self._peek(key) is entry:
                self._data.pop(key, None)
                removed += 1

        if removed:
            logger.debug(f"Local cache gc removed {removed} expired entries")
        return removed

    def gc_sync(self) -> int:
        """Remove every expired entry without yielding."""
        self._last_gc = now_ms()
        expired = [key for key, entry in list(self._data.items()) if entry.is_expired()]
        for key in expired:
            self._data.pop(key, None)
        return len(expired)

    def _maybe_gc(self) -> None:
        if len(self._data) <= self.gc_size_threshold:
            return
        if now_ms() - self._last_gc < self.gc_interval_ms:
            return

        self._last_gc = now_ms()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.gc_sync()
            return

        task = loop.create_task(self.gc())
        self._gc_tasks.add(task)
        task.add_done_callback(self._on_gc_done)

    def _on_gc_done(self, task: asyncio.Task[int]) -> None:
        self._gc_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Local cache gc failed: {error}")

    # -------------------------------------------------------------------------
    # Memoization
    # -------------------------------------------------------------------------

    def memoize(
        self,
        key: str,
        fn: Callable[..., Awaitable[R] | R],
        *,
        ttl: Duration = 0,
        key_fn: Callable[..., Any] | None = None,
    ) -> Callable[..., Awaitable[R]]:
        """Cache the results of ``fn`` per call arguments.

        Example:
            cached_sum = cache.memoize("sum", slow_sum, ttl="1h")
            await cached_sum(1, 2)
        """

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> R:
            cache_key = memo_key(key, args, kwargs, key_fn)
            result: R = await self.get_or_set(
                cache_key, Thunk(lambda _key: fn(*args, **kwargs)), ttl
            )
            return result

        return wrapper

    def memoize_sync(
        self,
        key: str,
        fn: Callable[..., R],
        *,
        ttl: Duration = 0,
        key_fn: Callable[..., Any] | None = None,
    ) -> Callable[..., R]:
        """Synchronous ``memoize`` for plain functions."""

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> R:
            cache_key = memo_key(key, args, kwargs, key_fn)
            result: R = self.get_or_set_sync(
                cache_key, Thunk(lambda _key: fn(*args, **kwargs)), ttl
            )
            return result

        return wrapper

    def __repr__(self) -> str:
        return f"LocalCache(size={len(self._data)}, pending={len(self._pending)})"


# Singleton instance for application use
_global_cache: LocalCache | None = None


def get_global_cache() -> LocalCache:
    """Get or create the process-wide local cache."""
    global _global_cache

    if _global_cache is None:
        _global_cache = LocalCache()

    return _global_cache
