"""Cross-process mirror invalidation over Redis Pub/Sub.

Every process mirrors part of the remote store locally. When a process
writes, deletes or clears keys it publishes a message on the channel of its
global prefix; the subscribers of all other processes evict the affected
mirror entries. Delivery is best effort: a process that misses a message
keeps serving its mirror entry until the entry's TTL runs out.

Wire format (fields separated by a vertical tab):

    {pid}\\v{prefix}\\v{command}\\v{key}[\\v{arg}...]

Example:
    subscriber = InvalidationSubscriber(
        client, "all", process_id="4711", mirrors=registry.mirrors_matching
    )
    await subscriber.start()
    ...
    await subscriber.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from tiercache.cache.keys import CacheKeys, is_glob
from tiercache.errors import InvalidationMessageError

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub

    from tiercache.cache.mirror import LocalMirror

logger = logging.getLogger(__name__)

SEPARATOR = "\v"


class InvalidationCommand(str, Enum):
    """What happened to the keys named in a message."""

    DELETE = "delete"
    SETDEL = "setdel"
    CLEAR = "clear"
    DEL_CONTAINS = "del_contains"
    # Accepted on the wire but never published
    SET = "set"


@dataclass(frozen=True)
class InvalidationMessage:
    """Cache invalidation message."""

    pid: str
    prefix: str
    command: InvalidationCommand
    key: str = ""
    args: tuple[str, ...] = field(default_factory=tuple)

    def to_wire(self) -> bytes:
        fields = [self.pid, self.prefix, self.command.value, self.key, *self.args]
        return SEPARATOR.join(fields).encode()

    @classmethod
    def from_wire(cls, data: bytes | str) -> InvalidationMessage:
        """Parse a message.

        Raises:
            InvalidationMessageError: If the message is malformed or the
                command is unknown
        """
        text = data.decode() if isinstance(data, bytes) else data
        fields = text.split(SEPARATOR)
        if len(fields) < 3:
            raise InvalidationMessageError(f"Malformed invalidation message: {text!r}")

        pid, prefix, command, *rest = fields
        try:
            parsed = InvalidationCommand(command)
        except ValueError:
            raise InvalidationMessageError(f"Unknown invalidation command: {command!r}") from None

        key = rest[0] if rest else ""
        return cls(pid=pid, prefix=prefix, command=parsed, key=key, args=tuple(rest[1:]))


MirrorLookup = Callable[[str, str], "list[LocalMirror]"]


class InvalidationSubscriber:
    """Applies invalidation messages from other processes to local mirrors.

    One subscriber runs per channel and connection. It ignores messages
    carrying its own process id, since the local mirror was already updated
    by the write that published them.

    Args:
        client: Connection used for the subscription
        global_prefix: Global prefix whose channel to listen on
        process_id: Id of this process
        mirrors: Returns the mirrors matching (global_prefix, prefix)
    """

    def __init__(
        self,
        client: Redis,
        global_prefix: str,
        *,
        process_id: str,
        mirrors: MirrorLookup,
    ):
        self.client = client
        self.global_prefix = global_prefix
        self.channel = CacheKeys.channel(global_prefix)
        self.process_id = process_id
        self._mirrors = mirrors
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._pubsub: PubSub | None = None
        self._start_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Subscribe and start the listen loop. Calling it again is a no-op."""
        async with self._start_lock:
            if self._running:
                return

            self._pubsub = self.client.pubsub()
            await self._pubsub.subscribe(self.channel)

            self._running = True
            self._task = asyncio.create_task(self._listen_loop())
            logger.info(f"Subscribed to cache invalidations on {self.channel}")

    async def stop(self) -> None:
        """Stop listening and release the subscription."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None

        logger.info(f"Stopped cache invalidation subscriber on {self.channel}")

    async def _listen_loop(self) -> None:
        while self._running and self._pubsub:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )

                if message is None:
                    continue

                if message["type"] == "message":
                    self.handle(message["data"])

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in invalidation listener: {e}")
                await asyncio.sleep(1)

    def handle(self, data: bytes | str) -> None:
        """Apply one raw message to the local mirrors."""
        try:
            message = InvalidationMessage.from_wire(data)
        except InvalidationMessageError as e:
            logger.error(f"Dropping invalidation message: {e}")
            return

        if message.pid == self.process_id:
            return

        self.apply(message)

    def apply(self, message: InvalidationMessage) -> None:
        mirrors = self._mirrors(self.global_prefix, message.prefix)

        if message.command in (InvalidationCommand.DELETE, InvalidationCommand.SETDEL):
            for mirror in mirrors:
                mirror.delete(message.key)

        elif message.command == InvalidationCommand.CLEAR:
            for mirror in mirrors:
                mirror.clear()

        elif message.command == InvalidationCommand.DEL_CONTAINS:
            qualified = is_glob(message.prefix)
            for mirror in mirrors:
                mirror.delete_contains(message.key, qualified=qualified)

        else:
            logger.debug(f"Ignoring {message.command.value} invalidation for {message.prefix}")
            return

        logger.debug(
            f"Applied {message.command.value} {message.prefix}:{message.key} "
            f"from process {message.pid} to {len(mirrors)} mirrors"
        )
