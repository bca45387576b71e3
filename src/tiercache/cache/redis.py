"""Two-tier cache: a Redis store shared by all processes plus a local mirror.

Reads try the process-local mirror first and fall back to Redis; writes go to
Redis, then the mirror, then an invalidation message tells the other
processes to evict their copies. Concurrent fetches, writes and
computations of one key are coalesced per process (see ``CacheRegistry``).

Remote values are JSON (orjson). A stored value that is not valid JSON is
returned as a decoded string.

Example:
    users = RedisCache("users")

    user = await users.get_or_set("42", Thunk(load_user), ttl="10m")

    # Serve stale values while refreshing in the background
    feed = await users.get_or_set(
        "feed:42", Thunk(build_feed), ttl="1h", stale_ttl="5m"
    )
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections.abc import Awaitable, Callable
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any, ClassVar, Literal, TypeVar

import orjson
from pydantic import BaseModel

from tiercache.cache.audit import audited, log_writes
from tiercache.cache.entry import CacheEntry, StaleContext, now_ms
from tiercache.cache.invalidation import InvalidationCommand, InvalidationMessage
from tiercache.cache.keys import CacheKeys, is_glob, memo_key
from tiercache.cache.local import LocalCache
from tiercache.cache.lru import BoundedMap
from tiercache.cache.mirror import DELETE_ALL, LocalMirror
from tiercache.cache.registry import CacheRegistry, get_registry
from tiercache.config import Settings, settings
from tiercache.core.duration import Duration, parse_duration
from tiercache.core.values import Thunk, ValueSource, as_source, discard, resolve
from tiercache.errors import InvalidArgumentError
from tiercache.observability.logging import LogContext

if TYPE_CHECKING:
    from redis.asyncio import Redis

T = TypeVar("T")
R = TypeVar("R")

Parse = Callable[[Any], Any]

# Counts or deletes the keys matching ARGV[1] whose name contains ARGV[3]
# after byte offset ARGV[2]; an empty needle matches every key.
SCAN_SCRIPT = """
local pattern = ARGV[1]
local offset = tonumber(ARGV[2]) + 1
local needle = ARGV[3]
local count = ARGV[4]
local delete = ARGV[5] == "1"
local cursor = "0"
local total = 0
repeat
    local reply = redis.call("SCAN", cursor, "MATCH", pattern, "COUNT", count)
    cursor = reply[1]
    for _, name in ipairs(reply[2]) do
        if needle == "" or string.find(name, needle, offset, true) then
            if delete then
                total = total + redis.call("DEL", name)
            else
                total = total + 1
            end
        end
    end
until cursor == "0"
return total
"""


class RedisConfig(BaseModel):
    """Connection parameters of a cache's remote store."""

    host: str = "127.0.0.1"
    port: int = 6379
    password: str | None = None
    db: int = 0
    backend: Literal["redis", "pika"] = "redis"
    # Separate server for Pub/Sub; the main connection is used when unset
    pubsub_host: str | None = None
    pubsub_port: int | None = None

    @classmethod
    def from_settings(cls, config: Settings) -> RedisConfig:
        return cls(
            host=config.redis_host,
            port=config.redis_port,
            password=config.redis_password,
            db=config.redis_db,
            backend=config.redis_backend,
            pubsub_host=config.pubsub_host,
            pubsub_port=config.pubsub_port,
        )


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, set | frozenset):
        return list(value)
    raise TypeError(f"Type is not JSON serializable: {type(value).__name__}")


def encode(value: Any) -> bytes:
    """Serialize a value for the remote store."""
    return orjson.dumps(value, default=_json_default)


def decode(raw: bytes | str) -> Any:
    """Deserialize a remote value; non-JSON values come back as strings."""
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        return raw.decode(errors="replace") if isinstance(raw, bytes) else raw


class RedisCache:
    """Distributed cache for one key prefix.

    Instances with the same prefix share one local mirror and one set of
    dogpile guards, so creating several of them is cheap and coherent.

    Class attributes hold process-wide defaults (taken from
    ``tiercache.config.settings``); the constructor arguments of the same
    name override them per instance.

    Args:
        prefix: Namespace of this cache's keys
        redis_config: Connection parameters (defaults to settings)
        client: Use this Redis client instead of a pooled one
        registry: Shared process state (defaults to ``get_registry()``)
        global_prefix: Namespace shared with other caches; selects the keys,
            the invalidation channel and the mirror
        use_local_cache: Enable the local mirror
        max_local_items: Bound the mirror with a ``BoundedMap`` (applies
            when the mirror for the prefix is created)
        logger: Logger for computation failures and write auditing
        log_on_local_write: Log in-place mutation of mirrored values
    """

    global_prefix: str = settings.global_prefix
    use_local_cache: bool = settings.use_local_cache
    log_on_local_write: bool = settings.log_on_local_write
    logger: logging.Logger = logging.getLogger(__name__)

    # Number of remote GETs issued by all instances
    remote_get_count: ClassVar[int] = 0

    _bypass_all: ClassVar[bool] = False

    def __init__(
        self,
        prefix: str,
        redis_config: RedisConfig | None = None,
        *,
        client: Redis | None = None,
        registry: CacheRegistry | None = None,
        global_prefix: str | None = None,
        use_local_cache: bool | None = None,
        max_local_items: int | None = None,
        logger: logging.Logger | None = None,
        log_on_local_write: bool | None = None,
    ):
        if not prefix:
            raise InvalidArgumentError("prefix must not be empty")

        self.prefix = prefix
        self.registry = registry or get_registry()
        self.redis_config = redis_config or RedisConfig.from_settings(self.registry.settings)

        if global_prefix is not None:
            self.global_prefix = global_prefix
        if use_local_cache is not None:
            self.use_local_cache = use_local_cache
        if logger is not None:
            self.logger = logger
        if log_on_local_write is not None:
            self.log_on_local_write = log_on_local_write
        if max_local_items is None:
            max_local_items = self.registry.settings.max_local_items

        self.mirror = self.registry.mirror(self.global_prefix, prefix, max_local_items)

        self._client = client
        self._pubsub_client: Redis | None = None
        self._subscribed = False
        self._bypass: bool | None = None

    # -------------------------------------------------------------------------
    # Connections and helpers
    # -------------------------------------------------------------------------

    async def _get_redis(self) -> Redis:
        """Get the client, subscribing to invalidations on first use."""
        if self._client is None:
            config = self.redis_config
            self._client = self.registry.client(
                config.host, config.port, db=config.db, password=config.password
            )

        if not self._subscribed:
            await self.registry.ensure_subscribed(self._get_pubsub_client(), self.global_prefix)
            self._subscribed = True

        return self._client

    def _get_pubsub_client(self) -> Redis:
        if self._pubsub_client is None:
            config = self.redis_config
            if config.pubsub_host is None and config.pubsub_port is None:
                assert self._client is not None
                self._pubsub_client = self._client
            else:
                self._pubsub_client = self.registry.client(
                    config.pubsub_host or config.host,
                    config.pubsub_port or config.port,
                    password=config.password,
                )
        return self._pubsub_client

    def _key(self, key: str) -> str:
        return CacheKeys.remote(self.global_prefix, self.prefix, key)

    def _mirrors(self) -> list[LocalMirror]:
        """Mirrors addressed by this prefix (several for a glob prefix)."""
        return self.registry.mirrors_matching(self.global_prefix, self.prefix)

    def _local_value(self, key: str, value: Any) -> Any:
        if self.log_on_local_write:
            return audited(value, f"{self.prefix}:{key}", log_writes(self.logger))
        return value

    def _track(
        self,
        pending: dict[str, asyncio.Future[Any]],
        remote_key: str,
        work: Awaitable[Any],
    ) -> asyncio.Future[Any]:
        """Register in-flight work for a key until it finishes."""
        future = asyncio.ensure_future(work)
        pending[remote_key] = future

        def forget(done: asyncio.Future[Any]) -> None:
            if pending.get(remote_key) is done:
                del pending[remote_key]

        future.add_done_callback(forget)
        return future

    async def _publish(self, command: InvalidationCommand, key: str = "") -> None:
        message = InvalidationMessage(
            pid=self.registry.process_id,
            prefix=self.prefix,
            command=command,
            key=key,
        )
        try:
            await self._get_redis()
            await self._get_pubsub_client().publish(
                CacheKeys.channel(self.global_prefix), message.to_wire()
            )
        except Exception as e:
            self.logger.error(f"Publishing {command.value} for {self.prefix}:{key} failed: {e}")

    # -------------------------------------------------------------------------
    # Bypass
    # -------------------------------------------------------------------------

    def bypass(self, flag: bool = True) -> None:
        """Make ``get_or_set`` compute every time without touching the cache."""
        self._bypass = flag

    def is_bypassed(self) -> bool:
        if self._bypass is not None:
            return self._bypass
        return type(self)._bypass_all

    @classmethod
    def bypass_all(cls, flag: bool = True) -> None:
        """Bypass every instance that has no explicit setting of its own."""
        cls._bypass_all = flag

    @classmethod
    def is_bypassed_globally(cls) -> bool:
        return cls._bypass_all

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _fetch(
        self, key: str, parse: Parse | None, ttl: int, token: object | None = None
    ) -> CacheEntry | None:
        """Read a key from Redis and mirror it under a ``begin_fill`` token.

        A local write of the key that lands while the read is in flight wins:
        the mirror keeps the newer value and the read returns it. After a
        delete or clear the fetched value is returned but not mirrored.
        """
        try:
            entry = await self._fetch_remote(key, parse, ttl)
        except BaseException:
            if token is not None:
                self.mirror.end_fill(key, token)
            raise

        if token is None:
            return entry
        if entry is None:
            self.mirror.end_fill(key, token)
            return None
        mirrored = self.mirror.fill(
            key, self._local_value(key, entry.value), entry.ttl, entry.created_at, token
        )
        return entry if mirrored is None else mirrored

    async def _fetch_remote(self, key: str, parse: Parse | None, ttl: int) -> CacheEntry | None:
        """Read a key and its remaining lifetime from Redis.

        With a known ``ttl`` the entry's age is derived from the remaining
        lifetime, so staleness survives the trip through the remote store.
        """
        client = await self._get_redis()
        remote_key = self._key(key)

        async with client.pipeline(transaction=False) as pipe:
            pipe.get(remote_key)
            pipe.pttl(remote_key)
            raw, remaining = await pipe.execute()
        RedisCache.remote_get_count += 1

        if raw is None:
            return None

        value = decode(raw)
        if parse is not None:
            value = parse(value)
            if inspect.isawaitable(value):
                value = await value
        if value is None:
            return None

        now = now_ms()
        if ttl > 0 and remaining > 0:
            created_at = now - max(0, ttl - remaining)
        else:
            created_at, ttl = now, max(remaining, 0)
        return CacheEntry(value=value, created_at=created_at, ttl=ttl)

    async def _read_entry(self, key: str, *, parse: Parse | None = None, ttl: int = 0) -> CacheEntry | None:
        if self.use_local_cache:
            entry = self.mirror.get_entry(key)
            if entry is not None:
                return entry

        remote_key = self._key(key)
        pending = self.registry.pending_get.get(remote_key)
        if pending is None:
            token = self.mirror.begin_fill(key) if self.use_local_cache else None
            pending = self._track(
                self.registry.pending_get, remote_key, self._fetch(key, parse, ttl, token)
            )

        entry: CacheEntry | None = await asyncio.shield(pending)
        return entry

    async def get_stale(
        self,
        key: str,
        default: Any = None,
        *,
        parse: Parse | None = None,
        stale_ttl: Duration = None,
        ttl: Duration = 0,
        ctx: StaleContext | None = None,
    ) -> Any:
        """Get the stored value without waiting for writes in flight.

        Args:
            key: Cache key
            default: Returned when the key is absent
            parse: Transform applied to values fetched from Redis before they
                are mirrored (may be async)
            stale_ttl: With ``ctx``, flag values older than this as stale
            ttl: The key's TTL, used to age values fetched from Redis
            ctx: Receives ``is_stale``
        """
        entry = await self._read_entry(key, parse=parse, ttl=parse_duration(ttl))
        if entry is None:
            return default

        if ctx is not None and stale_ttl is not None:
            ctx.is_stale = entry.age() > parse_duration(stale_ttl)
        return entry.value

    async def get(self, key: str, default: Any = None, *, parse: Parse | None = None) -> Any:
        """Get a value, waiting for a write of the key in flight in this process."""
        pending = self.registry.pending_set.get(self._key(key))
        if pending is not None:
            _, value = await asyncio.shield(pending)
            return default if value is None else value

        return await self.get_stale(key, default, parse=parse)

    async def has(self, key: str) -> bool:
        if self.use_local_cache and self.mirror.get_entry(key) is not None:
            return True

        client = await self._get_redis()
        return bool(await client.exists(self._key(key)))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def _remove(self, key: str) -> int:
        self.mirror.delete(key)
        client = await self._get_redis()
        deleted = int(await client.delete(self._key(key)))
        await self._publish(InvalidationCommand.SETDEL, key)
        return deleted

    async def _write(
        self,
        key: str,
        source: ValueSource[Any],
        ttl: int,
        previous: asyncio.Future[Any] | None,
    ) -> tuple[bool, Any]:
        if previous is not None and not previous.done():
            # Writes of one key land in call order
            await asyncio.wait([previous])

        try:
            value = await resolve(source, key)
            payload = None if value is None else encode(value)
        except Exception:
            self.logger.exception(f"Computing cache value for {self.prefix}:{key} failed")
            await self._remove(key)
            return False, None

        if payload is None:
            await self._remove(key)
            return True, None

        client = await self._get_redis()
        remote_key = self._key(key)
        if ttl > 0:
            await client.set(remote_key, payload, px=ttl)
        else:
            await client.set(remote_key, payload)

        if self.use_local_cache:
            value = self.mirror.put(key, self._local_value(key, value), ttl).value
        else:
            self.mirror.delete(key)

        await self._publish(InvalidationCommand.SETDEL, key)
        return True, value

    def _start_write(self, key: str, source: ValueSource[Any], ttl: int) -> asyncio.Future[Any]:
        remote_key = self._key(key)
        previous = self.registry.pending_set.get(remote_key)
        return self._track(
            self.registry.pending_set, remote_key, self._write(key, source, ttl, previous)
        )

    async def set(self, key: str, value: Any, ttl: Duration = 0) -> bool:
        """Store a value in Redis and the local mirror.

        ``value`` may be a plain value, a ``Thunk`` (called with the key) or a
        ``Pending`` computation. Readers of the key in this process wait for
        the write. Storing None deletes the key.

        Returns:
            False if computing the value failed; the key is deleted then
        """
        ttl_ms = parse_duration(ttl)
        stored, _ = await asyncio.shield(self._start_write(key, as_source(value), ttl_ms))
        return bool(stored)

    async def delete(self, key: str) -> bool:
        """Delete a key here, in Redis and in the other processes' mirrors."""
        return await self._remove(key) > 0

    # -------------------------------------------------------------------------
    # Get or compute
    # -------------------------------------------------------------------------

    async def _compute(self, key: str, source: ValueSource[Any]) -> Any:
        try:
            return await resolve(source, key)
        except Exception:
            self.logger.exception(f"Computing cache value for {self.prefix}:{key} failed")
            return None

    async def _compute_and_store(self, key: str, source: ValueSource[Any], ttl: int) -> Any:
        """Write a computed value, joining a write of the key already in flight."""
        pending = self.registry.pending_set.get(self._key(key))
        if pending is None:
            pending = self._start_write(key, source, ttl)
        else:
            discard(source)

        _, value = await asyncio.shield(pending)
        return value

    async def _get_or_compute(
        self, key: str, source: ValueSource[Any], ttl: int, parse: Parse | None
    ) -> Any:
        pending = self.registry.pending_set.get(self._key(key))
        if pending is not None:
            _, value = await asyncio.shield(pending)
            if value is not None:
                discard(source)
                return value

        entry = await self._read_entry(key, parse=parse, ttl=ttl)
        if entry is not None:
            discard(source)
            return entry.value

        return await self._compute_and_store(key, source, ttl)

    def _regenerate(self, key: str, source: ValueSource[Any], ttl: int) -> None:
        """Recompute a key in the background, once per key at a time."""
        remote_key = self._key(key)
        if remote_key in self.registry.pending_stale:
            discard(source)
            return

        with LogContext(cache_prefix=self.prefix, cache_key=key):
            task = self.registry.spawn(
                self._compute_and_store(key, source, ttl),
                f"regeneration of {self.prefix}:{key}",
            )
        self._track(self.registry.pending_stale, remote_key, task)

    async def _get_or_set_stale(
        self,
        key: str,
        source: ValueSource[Any],
        ttl: int,
        stale_ttl: int,
        *,
        parse: Parse | None,
        require_result: bool,
        fresh_result: bool,
    ) -> Any:
        ctx = StaleContext()
        existing = await self.get_stale(key, parse=parse, stale_ttl=stale_ttl, ttl=ttl, ctx=ctx)

        if existing is None:
            if require_result or fresh_result:
                return await self._compute_and_store(key, source, ttl)
            self._regenerate(key, source, ttl)
            return None

        if not ctx.is_stale:
            discard(source)
            return existing

        if fresh_result:
            return await self._compute_and_store(key, source, ttl)

        self._regenerate(key, source, ttl)
        return existing

    async def get_or_set(
        self,
        key: str,
        value: Any,
        ttl: Duration = 0,
        *,
        parse: Parse | None = None,
        stale_ttl: Duration = None,
        require_result: bool = True,
        fresh_result: bool = False,
    ) -> Any:
        """Get a value, computing and storing it when absent.

        Concurrent callers in this process share one lookup and one
        computation per key. Pass a ``Thunk`` so the value is only computed
        when needed.

        With ``stale_ttl`` values older than ``stale_ttl`` (but not yet
        expired) are stale:

        - fresh value: returned as is
        - stale value: returned, and recomputed in the background; with
          ``fresh_result`` recomputed in the foreground instead
        - no value: computed in the foreground; with ``require_result=False``
          (and no ``fresh_result``) None is returned and the value is
          computed in the background

        Background recomputation runs on the next loop iteration, at most
        once per key at a time.

        Returns:
            The value, or None if computing it failed
        """
        source = as_source(value)
        ttl_ms = parse_duration(ttl)

        if self.is_bypassed():
            return await self._compute(key, source)

        if stale_ttl is not None:
            return await self._get_or_set_stale(
                key,
                source,
                ttl_ms,
                parse_duration(stale_ttl),
                parse=parse,
                require_result=require_result,
                fresh_result=fresh_result,
            )

        remote_key = self._key(key)
        pending = self.registry.pending_get_or_set.get(remote_key)
        if pending is None:
            pending = self._track(
                self.registry.pending_get_or_set,
                remote_key,
                self._get_or_compute(key, source, ttl_ms, parse),
            )
        else:
            discard(source)

        return await asyncio.shield(pending)

    # -------------------------------------------------------------------------
    # Pattern operations (full key-space scans: keep them off hot paths)
    # -------------------------------------------------------------------------

    async def _scan(self, needle: str, *, delete: bool) -> int:
        client = await self._get_redis()
        pattern = CacheKeys.pattern(self.global_prefix, self.prefix)
        offset = CacheKeys.key_offset(self.global_prefix, self.prefix)
        count = self.registry.settings.scan_count

        if self.redis_config.backend == "pika":
            return await self._scan_batches(client, pattern, offset, needle, count, delete)

        result = await client.eval(SCAN_SCRIPT, 0, pattern, offset, needle, count, int(delete))
        return int(result)

    async def _scan_batches(
        self,
        client: Redis,
        pattern: str,
        offset: int,
        needle: str,
        count: int,
        delete: bool,
    ) -> int:
        """Scan-cursor fallback for backends without server-side scripting."""
        needle_bytes = needle.encode()
        total = 0
        cursor = 0

        while True:
            cursor, names = await client.scan(cursor=cursor, match=pattern, count=count)
            matched = [
                name
                for name in names
                if needle_bytes in (name if isinstance(name, bytes) else name.encode())[offset:]
            ]
            if matched:
                total += int(await client.delete(*matched)) if delete else len(matched)
            if cursor == 0:
                break

        return total

    async def size(self) -> int:
        """Number of keys under this prefix in Redis."""
        return await self._scan("", delete=False)

    async def clear(self) -> int:
        """Delete every key under this prefix, everywhere.

        Returns:
            Number of keys deleted from Redis
        """
        deleted = await self._scan("", delete=True)
        for mirror in self._mirrors():
            mirror.clear()
        await self._publish(InvalidationCommand.CLEAR)
        return deleted

    async def delete_contains(self, substring: str) -> int:
        """Delete every key containing ``substring``; ``DELETE_ALL`` deletes all.

        For glob prefixes the match also covers the prefix segment.

        Returns:
            Number of keys deleted from Redis
        """
        if not substring:
            raise InvalidArgumentError("substring must not be empty")

        needle = "" if substring == DELETE_ALL else substring
        deleted = await self._scan(needle, delete=True)

        qualified = is_glob(self.prefix)
        for mirror in self._mirrors():
            mirror.delete_contains(substring, qualified=qualified)
        await self._publish(InvalidationCommand.DEL_CONTAINS, substring)
        return deleted

    # -------------------------------------------------------------------------
    # Attached local structures
    # -------------------------------------------------------------------------

    def attach_custom(self, key: str, name: str, factory: Callable[[], T]) -> T:
        """Get or create a local-only structure living as long as ``key``'s mirror entry.

        Example:
            seen = cache.attach_set("catalog", "seen_ids")
            seen.add(product_id)
        """
        return self.mirror.attached(key, name, factory)

    def attach_map(self, key: str, name: str) -> dict[Any, Any]:
        return self.attach_custom(key, name, dict)

    def attach_set(self, key: str, name: str) -> set[Any]:
        return self.attach_custom(key, name, set)

    def attach_array(self, key: str, name: str) -> list[Any]:
        return self.attach_custom(key, name, list)

    def attach_object(self, key: str, name: str) -> SimpleNamespace:
        return self.attach_custom(key, name, SimpleNamespace)

    def attach_lru(self, key: str, name: str, max_items: int) -> BoundedMap[Any, Any]:
        return self.attach_custom(key, name, lambda: BoundedMap(max_items))

    def attach_cache(self, key: str, name: str, **options: Any) -> LocalCache:
        return self.attach_custom(key, name, lambda: LocalCache(**options))

    def delete_attached(self, key: str, name: str) -> bool:
        return self.mirror.delete_attached(key, name)

    def delete_all_attached(self, key: str) -> bool:
        return self.mirror.delete_all_attached(key)

    # -------------------------------------------------------------------------
    # Utilities
    # -------------------------------------------------------------------------

    def memoize(
        self,
        key: str,
        fn: Callable[..., Awaitable[R] | R],
        *,
        ttl: Duration = 0,
        key_fn: Callable[..., Any] | None = None,
        parse: Parse | None = None,
    ) -> Callable[..., Awaitable[R]]:
        """Cache the results of ``fn`` per call arguments.

        Example:
            cached_price = prices.memoize("price", fetch_price, ttl="1m")
            await cached_price("EUR", sku="A-1")
        """

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> R:
            cache_key = memo_key(key, args, kwargs, key_fn)
            result: R = await self.get_or_set(
                cache_key,
                Thunk(lambda _key: fn(*args, **kwargs)),
                ttl,
                parse=parse,
            )
            return result

        return wrapper

    async def health_check(self) -> bool:
        """Check Redis connectivity."""
        try:
            client = await self._get_redis()
            await client.ping()
            return True
        except Exception as e:
            self.logger.warning(f"Redis health check failed for {self.prefix}: {e}")
            return False

    def __repr__(self) -> str:
        return f"RedisCache(prefix={self.prefix!r}, global_prefix={self.global_prefix!r})"


# Singleton instance for application use
_global_redis_cache: RedisCache | None = None


def get_global_redis_cache() -> RedisCache:
    """Get or create the process-wide cache with prefix ``global``."""
    global _global_redis_cache

    if _global_redis_cache is None:
        _global_redis_cache = RedisCache("global")

    return _global_redis_cache
