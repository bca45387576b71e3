"""Tests for tagged value sources."""

from __future__ import annotations

import asyncio

import pytest

from tiercache.core.values import Literal, Pending, Thunk, as_source, discard, resolve, start


class TestAsSource:
    """Plain values are literals; sources pass through."""

    def test_plain_value_becomes_literal(self) -> None:
        assert as_source({"a": 1}) == Literal({"a": 1})

    def test_callables_are_not_inspected(self) -> None:
        fn = len
        assert as_source(fn) == Literal(fn)

    def test_sources_pass_through(self) -> None:
        thunk = Thunk(lambda key: key)
        assert as_source(thunk) is thunk


class TestStart:
    """Starting a source runs thunks exactly once."""

    def test_sync_thunk_becomes_literal(self) -> None:
        assert start(Thunk(lambda key: key.upper()), "abc") == Literal("ABC")

    @pytest.mark.asyncio
    async def test_async_thunk_becomes_pending(self) -> None:
        async def compute(key: str) -> str:
            return f"value-of-{key}"

        started = start(Thunk(compute), "k")
        assert isinstance(started, Pending)
        assert await started.awaitable == "value-of-k"

    def test_thunk_errors_propagate(self) -> None:
        def boom(key: str) -> None:
            raise RuntimeError(key)

        with pytest.raises(RuntimeError):
            start(Thunk(boom), "k")


class TestResolve:
    """Resolving produces the final value."""

    @pytest.mark.asyncio
    async def test_literal(self) -> None:
        assert await resolve(Literal(3), "k") == 3

    @pytest.mark.asyncio
    async def test_pending_future(self) -> None:
        future: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        future.set_result(7)
        assert await resolve(Pending(future), "k") == 7

    @pytest.mark.asyncio
    async def test_thunk_receives_key(self) -> None:
        seen: list[str] = []

        async def compute(key: str) -> int:
            seen.append(key)
            return 1

        assert await resolve(Thunk(compute), "users:1") == 1
        assert seen == ["users:1"]


class TestDiscard:
    """Unused pending coroutines are closed."""

    @pytest.mark.asyncio
    async def test_closes_unstarted_coroutine(self) -> None:
        async def compute() -> int:
            return 1

        coro = compute()
        discard(Pending(coro))
        with pytest.raises(RuntimeError):
            await coro

    def test_ignores_literals(self) -> None:
        discard(Literal(1))
