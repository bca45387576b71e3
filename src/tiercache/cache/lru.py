"""Generational LRU map.

Keeps two plain dicts, ``current`` and ``previous``. Writes go to
``current``; once it holds ``max_size`` keys it becomes ``previous`` and the
old ``previous`` is dropped wholesale. A read that hits ``previous`` copies
the entry forward into ``current``. This gives approximate LRU eviction with
O(1) amortized cost and no per-access bookkeeping.

At any time between 0 and ``2 * max_size`` entries are physically stored.

Example:
    lru = BoundedMap(max_size=1000)
    lru.set("hello", "world")
    lru.get("hello")
    lru.delete("hello")
"""

from __future__ import annotations

from collections.abc import Iterator, MutableMapping
from typing import TypeVar

from tiercache.errors import InvalidArgumentError

K = TypeVar("K")
V = TypeVar("V")


class BoundedMap(MutableMapping[K, V]):
    """Fixed-capacity key/value store with generational eviction.

    Behaves as a mutable mapping; item access promotes like ``get``.
    """

    def __init__(self, max_size: int):
        if not isinstance(max_size, int) or isinstance(max_size, bool) or max_size <= 0:
            raise InvalidArgumentError("max_size must be an integer greater than 0")

        self.max_size = max_size
        self._current: dict[K, V] = {}
        self._previous: dict[K, V] = {}
        # Keys may live in both generations, so the count is tracked explicitly
        self._size = 0

    def _insert(self, key: K, value: V) -> None:
        self._current[key] = value

        if len(self._current) >= self.max_size:
            self._previous = self._current
            self._current = {}
            self._size = len(self._previous)

    def get(self, key: K, default: V | None = None) -> V | None:
        """Get a value, promoting it if it only lives in the old generation."""
        if key in self._current:
            return self._current[key]

        if key in self._previous:
            value = self._previous[key]
            self._insert(key, value)
            return value

        return default

    def peek(self, key: K, default: V | None = None) -> V | None:
        """Get a value without touching the generations."""
        if key in self._current:
            return self._current[key]
        return self._previous.get(key, default)

    def set(self, key: K, value: V) -> None:
        """Insert or overwrite a value."""
        if key in self._current:
            self._current[key] = value
            return

        if key not in self._previous:
            self._size += 1
        self._insert(key, value)

    def has(self, key: K) -> bool:
        return key in self._current or key in self._previous

    def delete(self, key: K) -> bool:
        """Remove a key from both generations.

        Returns:
            True if the key was present
        """
        in_current = self._current.pop(key, _ABSENT) is not _ABSENT
        in_previous = self._previous.pop(key, _ABSENT) is not _ABSENT
        deleted = in_current or in_previous
        if deleted:
            self._size -= 1
        return deleted

    def clear(self) -> None:
        self._current.clear()
        self._previous.clear()
        self._size = 0

    def items(self) -> Iterator[tuple[K, V]]:
        """Iterate current generation first, then unshadowed old entries."""
        yield from list(self._current.items())
        for key, value in list(self._previous.items()):
            if key not in self._current:
                yield key, value

    def keys(self) -> Iterator[K]:
        for key, _ in self.items():
            yield key

    def values(self) -> Iterator[V]:
        for _, value in self.items():
            yield value

    def __getitem__(self, key: K) -> V:
        if key in self._current:
            return self._current[key]
        if key in self._previous:
            value = self._previous[key]
            self._insert(key, value)
            return value
        raise KeyError(key)

    def __setitem__(self, key: K, value: V) -> None:
        self.set(key, value)

    def __delitem__(self, key: K) -> None:
        if not self.delete(key):
            raise KeyError(key)

    def __iter__(self) -> Iterator[K]:
        return self.keys()

    def __contains__(self, key: object) -> bool:
        return key in self._current or key in self._previous

    def __len__(self) -> int:
        return self._size

    @property
    def size(self) -> int:
        """Number of live keys."""
        return self._size

    def total_size(self) -> int:
        """Number of physically stored entries across both generations."""
        return len(self._current) + len(self._previous)

    def __repr__(self) -> str:
        return f"BoundedMap(size={self._size}, max={self.max_size})"


_ABSENT = object()
