"""Tagged value sources for cache writes.

Callers say explicitly how a value is produced instead of the cache guessing
from its shape:

- ``Literal(value)``: store the value as is.
- ``Thunk(fn)``: call ``fn(key)``; the result may be a value or an awaitable.
- ``Pending(awaitable)``: a computation already in flight.

Anything that is not a ``ValueSource`` is wrapped in ``Literal``, so plain
values can be passed directly.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from tiercache.errors import InvalidArgumentError

T = TypeVar("T")


class ValueSource(Generic[T]):
    """Base class of the value source variants."""

    __slots__ = ()


@dataclass(frozen=True, slots=True)
class Literal(ValueSource[T]):
    value: T


@dataclass(frozen=True, slots=True)
class Thunk(ValueSource[T]):
    fn: Callable[[str], T | Awaitable[T]]


@dataclass(frozen=True, slots=True)
class Pending(ValueSource[T]):
    awaitable: Awaitable[T]


def as_source(value: Any) -> ValueSource[Any]:
    """Wrap plain values in ``Literal``; pass sources through."""
    if isinstance(value, ValueSource):
        return value
    return Literal(value)


def start(source: ValueSource[T], key: str) -> Literal[T] | Pending[T]:
    """Run a thunk, leaving either a ready value or an in-flight computation.

    Exceptions raised by the thunk itself propagate to the caller.
    """
    if isinstance(source, Thunk):
        result = source.fn(key)
        if inspect.isawaitable(result):
            return Pending(result)
        return Literal(result)
    if isinstance(source, Literal | Pending):
        return source
    raise InvalidArgumentError(f"Unknown value source: {type(source).__name__}")


async def resolve(source: ValueSource[T], key: str) -> T:
    """Produce the final value for ``key``."""
    started = start(source, key)
    if isinstance(started, Pending):
        return await started.awaitable
    return started.value


def discard(source: ValueSource[Any]) -> None:
    """Close a pending coroutine that is not going to be awaited."""
    if not isinstance(source, Pending) or not inspect.iscoroutine(source.awaitable):
        return
    if inspect.getcoroutinestate(source.awaitable) == inspect.CORO_CREATED:
        source.awaitable.close()
