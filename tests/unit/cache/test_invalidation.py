"""Tests for cross-process mirror invalidation."""

from __future__ import annotations

import logging
from typing import Any

import pytest

from tiercache.cache.invalidation import (
    InvalidationCommand,
    InvalidationMessage,
    InvalidationSubscriber,
)
from tiercache.cache.registry import CacheRegistry
from tiercache.errors import InvalidationMessageError
from tests.helpers import eventually


class TestInvalidationMessage:
    """Test the wire format."""

    def test_to_wire(self) -> None:
        message = InvalidationMessage(
            pid="42", prefix="users", command=InvalidationCommand.SETDEL, key="7"
        )
        assert message.to_wire() == b"42\vusers\vsetdel\v7"

    def test_from_wire(self) -> None:
        message = InvalidationMessage.from_wire(b"42\vusers\vdel_contains\vteam\vx\vy")
        assert message.pid == "42"
        assert message.prefix == "users"
        assert message.command is InvalidationCommand.DEL_CONTAINS
        assert message.key == "team"
        assert message.args == ("x", "y")

    def test_from_wire_without_key(self) -> None:
        message = InvalidationMessage.from_wire("42\vusers\vclear")
        assert message.command is InvalidationCommand.CLEAR
        assert message.key == ""

    def test_malformed_message(self) -> None:
        with pytest.raises(InvalidationMessageError):
            InvalidationMessage.from_wire(b"42\vusers")

    def test_unknown_command(self) -> None:
        with pytest.raises(InvalidationMessageError):
            InvalidationMessage.from_wire(b"42\vusers\vexplode\vk")


@pytest.fixture
def subscriber(redis_client: Any, registry: CacheRegistry) -> InvalidationSubscriber:
    return InvalidationSubscriber(
        redis_client,
        "all",
        process_id="process-a",
        mirrors=registry.mirrors_matching,
    )


class TestInvalidationSubscriberHandle:
    """Test how messages change local mirrors."""

    def test_setdel_from_other_process(
        self, subscriber: InvalidationSubscriber, registry: CacheRegistry
    ) -> None:
        mirror = registry.mirror("all", "users")
        mirror.put("1", "a")

        subscriber.handle(b"process-b\vusers\vsetdel\v1")

        assert mirror.get_entry("1") is None

    def test_own_messages_are_ignored(
        self, subscriber: InvalidationSubscriber, registry: CacheRegistry
    ) -> None:
        mirror = registry.mirror("all", "users")
        mirror.put("1", "a")

        subscriber.handle(b"process-a\vusers\vdelete\v1")

        assert mirror.get_entry("1") is not None

    def test_clear(self, subscriber: InvalidationSubscriber, registry: CacheRegistry) -> None:
        users = registry.mirror("all", "users")
        teams = registry.mirror("all", "teams")
        users.put("1", "a")
        teams.put("1", "b")

        subscriber.handle(b"process-b\vusers\vclear\v")

        assert len(users) == 0
        assert len(teams) == 1

    def test_glob_prefix_reaches_matching_mirrors(
        self, subscriber: InvalidationSubscriber, registry: CacheRegistry
    ) -> None:
        users = registry.mirror("all", "users")
        teams = registry.mirror("all", "teams")
        other = registry.mirror("other", "users")
        for mirror in (users, teams, other):
            mirror.put("1", "a")

        subscriber.handle(b"process-b\v*\vclear\v")

        assert len(users) == 0
        assert len(teams) == 0
        assert len(other) == 1

    def test_del_contains(
        self, subscriber: InvalidationSubscriber, registry: CacheRegistry
    ) -> None:
        mirror = registry.mirror("all", "users")
        mirror.put("team:1", "a")
        mirror.put("solo:1", "b")

        subscriber.handle(b"process-b\vusers\vdel_contains\vteam")

        assert mirror.get_entry("team:1") is None
        assert mirror.get_entry("solo:1") is not None

    def test_del_contains_with_glob_prefix_matches_prefix_and_key(
        self, subscriber: InvalidationSubscriber, registry: CacheRegistry
    ) -> None:
        users = registry.mirror("all", "users")
        teams = registry.mirror("all", "teams")
        users.put("1", "a")
        teams.put("1", "b")

        subscriber.handle(b"process-b\v*\vdel_contains\vusers:")

        assert len(users) == 0
        assert len(teams) == 1

    def test_set_is_ignored(
        self, subscriber: InvalidationSubscriber, registry: CacheRegistry
    ) -> None:
        mirror = registry.mirror("all", "users")
        mirror.put("1", "a")

        subscriber.handle(b"process-b\vusers\vset\v1\vvalue")

        assert mirror.get_entry("1") is not None

    def test_malformed_message_is_logged(
        self, subscriber: InvalidationSubscriber, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.ERROR, logger="tiercache.cache.invalidation"):
            subscriber.handle(b"garbage")

        assert "Dropping invalidation message" in caplog.text


class TestInvalidationSubscriberLifecycle:
    """Test subscribing over Redis Pub/Sub."""

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop(
        self, subscriber: InvalidationSubscriber
    ) -> None:
        await subscriber.start()
        await subscriber.start()
        assert subscriber.running

        await subscriber.stop()
        assert not subscriber.running

    @pytest.mark.asyncio
    async def test_published_message_is_applied(
        self, subscriber: InvalidationSubscriber, registry: CacheRegistry, redis_client: Any
    ) -> None:
        mirror = registry.mirror("all", "users")
        mirror.put("1", "a")
        await subscriber.start()

        message = InvalidationMessage(
            pid="process-b", prefix="users", command=InvalidationCommand.DELETE, key="1"
        )
        await redis_client.publish("RC:all", message.to_wire())

        try:
            await eventually(lambda: mirror.get_entry("1") is None)
        finally:
            await subscriber.stop()
