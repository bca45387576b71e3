"""Mutual exclusion over Redis with a local FIFO wait queue.

The lock is a marker key ``LOCK:{key}`` created with ``SET NX``. Callers in
this process that find the key locked wait in a per-key FIFO queue instead
of polling Redis; every successful ``release`` hands the lock to the head of
the queue only.

Waiters are only woken by releases issued through the same ``Lock``
instance. A lock released by another process is picked up by the next local
``release`` or ``acquire`` of that key.

Example:
    lock = Lock()

    async with lock.hold("rebuild-index"):
        await rebuild_index()

    if await lock.try_acquire("report"):
        try:
            await build_report()
        finally:
            await lock.release("report")
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from tiercache.cache.keys import CacheKeys
from tiercache.cache.registry import CacheRegistry, get_registry

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

LOCK_VALUE = "locked"


class Lock:
    """Redis-backed lock with fair in-process queuing.

    Args:
        client: Redis client (defaults to the registry's configured client)
        registry: Registry providing the default client
    """

    def __init__(self, client: Redis | None = None, *, registry: CacheRegistry | None = None):
        self._client = client
        self._registry = registry
        # Keys with a try_acquire in flight in this process
        self._fetching: set[str] = set()
        self.acquire_queue: dict[str, deque[asyncio.Future[bool]]] = {}

    async def _get_redis(self) -> Redis:
        if self._client is None:
            registry = self._registry or get_registry()
            self._client = registry.default_client()
        return self._client

    async def try_acquire(self, key: str) -> bool:
        """Take the lock if nobody holds it, without waiting.

        Fails while another call in this process is already acquiring ``key``.
        """
        if key in self._fetching:
            return False

        self._fetching.add(key)
        try:
            client = await self._get_redis()
            acquired = await client.set(CacheKeys.lock(key), LOCK_VALUE, nx=True)
            return bool(acquired)
        finally:
            self._fetching.discard(key)

    async def acquire(self, key: str) -> bool:
        """Wait for the lock; callers of one key are served in arrival order."""
        waiter: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        queue = self.acquire_queue.setdefault(key, deque())
        queue.append(waiter)

        try:
            await self._grant_next(key)
            return await waiter
        except BaseException:
            # Cancelled or the backend failed; never leave the waiter queued
            self._drop_waiter(key, waiter)
            if waiter.done() and not waiter.cancelled():
                # Granted just before we gave up
                await self.release(key)
            raise

    async def release(self, key: str) -> bool:
        """Release the lock and pass it to the next local waiter.

        Releasing a key that is not locked does nothing.

        Returns:
            True if a lock marker was removed
        """
        client = await self._get_redis()
        deleted = await client.delete(CacheKeys.lock(key))
        if not deleted:
            return False

        await self._grant_next(key)
        return True

    async def _grant_next(self, key: str) -> None:
        """Try to take the lock on behalf of the head of the queue."""
        queue = self.acquire_queue.get(key)
        while queue and queue[0].done():
            queue.popleft()
        if not queue:
            self.acquire_queue.pop(key, None)
            return

        head = queue[0]
        if not await self.try_acquire(key):
            return

        self._drop_waiter(key, head)
        if head.done():
            # Cancelled while we were acquiring for it
            logger.debug(f"Waiter for lock {key!r} went away, passing the lock on")
            await self.release(key)
            return

        head.set_result(True)

    def _drop_waiter(self, key: str, waiter: asyncio.Future[bool]) -> None:
        queue = self.acquire_queue.get(key)
        if queue is None:
            return
        if waiter in queue:
            queue.remove(waiter)
        if not queue:
            del self.acquire_queue[key]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for the duration of a block."""
        await self.acquire(key)
        try:
            yield
        finally:
            await self.release(key)
