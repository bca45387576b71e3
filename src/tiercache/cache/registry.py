"""Process-wide state shared by every RedisCache.

A registry owns what all caches of a process share:

- Redis clients, pooled per host:port/db
- one local mirror per (global prefix, prefix)
- the in-flight operation maps that keep at most one remote fetch, write or
  background regeneration per fully-qualified key
- one invalidation subscriber per channel and connection

Production code uses the default registry from ``get_registry()``. Tests
build their own so no state leaks between them.

Example:
    registry = CacheRegistry(process_id="worker-1")
    cache = RedisCache("users", registry=registry)
    ...
    await registry.close()
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
from collections.abc import Coroutine
from typing import TYPE_CHECKING, Any

import redis.asyncio as redis

from tiercache.cache.invalidation import InvalidationSubscriber
from tiercache.cache.keys import is_glob
from tiercache.cache.mirror import LocalMirror
from tiercache.config import Settings
from tiercache.config import settings as default_settings

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class CacheRegistry:
    """Shared clients, mirrors and dogpile guards of one process.

    Args:
        settings: Defaults for connections and mirrors
        process_id: Identity used in invalidation messages (defaults to the pid)
    """

    def __init__(self, settings: Settings | None = None, process_id: str | None = None):
        self.settings = settings or default_settings
        self.process_id = process_id or str(os.getpid())

        self._clients: dict[str, Redis] = {}
        self._mirrors: dict[tuple[str, str], LocalMirror] = {}
        self._subscribers: dict[tuple[int, str], InvalidationSubscriber] = {}
        self._background: set[asyncio.Task[Any]] = set()

        # Keyed by fully-qualified remote key
        self.pending_set: dict[str, asyncio.Future[Any]] = {}
        self.pending_get: dict[str, asyncio.Future[Any]] = {}
        self.pending_get_or_set: dict[str, asyncio.Future[Any]] = {}
        self.pending_stale: dict[str, asyncio.Future[Any]] = {}

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def client(
        self,
        host: str,
        port: int,
        *,
        db: int = 0,
        password: str | None = None,
    ) -> Redis:
        """Get or create the pooled client for an address."""
        address = f"{host}:{port}/{db}"
        client = self._clients.get(address)
        if client is None:
            client = redis.Redis(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=False,
            )
            self._clients[address] = client
            logger.debug(f"Created Redis client for {address}")
        return client

    def default_client(self) -> Redis:
        """Client for the address configured in settings."""
        return self.client(
            self.settings.redis_host,
            self.settings.redis_port,
            db=self.settings.redis_db,
            password=self.settings.redis_password,
        )

    # -------------------------------------------------------------------------
    # Mirrors
    # -------------------------------------------------------------------------

    def mirror(self, global_prefix: str, prefix: str, max_items: int | None = None) -> LocalMirror:
        """Get or create the mirror for a prefix.

        ``max_items`` only applies when the mirror is created.
        """
        key = (global_prefix, prefix)
        mirror = self._mirrors.get(key)
        if mirror is None:
            mirror = LocalMirror(prefix, max_items)
            self._mirrors[key] = mirror
        return mirror

    def mirrors_matching(self, global_prefix: str, prefix: str) -> list[LocalMirror]:
        """Mirrors addressed by ``prefix``, which may be a glob."""
        if not is_glob(prefix):
            mirror = self._mirrors.get((global_prefix, prefix))
            return [mirror] if mirror is not None else []

        return [
            mirror
            for (gp, name), mirror in self._mirrors.items()
            if gp == global_prefix and fnmatch.fnmatchcase(name, prefix)
        ]

    # -------------------------------------------------------------------------
    # Subscribers and background work
    # -------------------------------------------------------------------------

    async def ensure_subscribed(self, client: Redis, global_prefix: str) -> InvalidationSubscriber:
        """Start the invalidation subscriber for a channel if not running yet."""
        key = (id(client), global_prefix)
        subscriber = self._subscribers.get(key)
        if subscriber is None:
            subscriber = InvalidationSubscriber(
                client,
                global_prefix,
                process_id=self.process_id,
                mirrors=self.mirrors_matching,
            )
            self._subscribers[key] = subscriber

        if not subscriber.running:
            await subscriber.start()
        return subscriber

    def spawn(self, coro: Coroutine[Any, Any, Any], description: str) -> asyncio.Task[Any]:
        """Run background work, logging instead of raising its errors."""
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)

        def done(finished: asyncio.Task[Any]) -> None:
            self._background.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.error(f"Background {description} failed: {error}")

        task.add_done_callback(done)
        return task

    async def close(self) -> None:
        """Stop subscribers and background work, close pooled clients."""
        for subscriber in list(self._subscribers.values()):
            await subscriber.stop()
        self._subscribers.clear()

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    def __repr__(self) -> str:
        return (
            f"CacheRegistry(process_id={self.process_id!r}, "
            f"clients={len(self._clients)}, mirrors={len(self._mirrors)})"
        )


# Singleton instance for application use
_registry: CacheRegistry | None = None


def get_registry() -> CacheRegistry:
    """Get or create the process-wide registry."""
    global _registry

    if _registry is None:
        _registry = CacheRegistry()

    return _registry


async def close_registry() -> None:
    """Tear down the process-wide registry."""
    global _registry
    if _registry is not None:
        await _registry.close()
        _registry = None
