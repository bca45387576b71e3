"""Per-prefix local mirror of remote cache entries.

One mirror exists per (global prefix, prefix) in a registry and is shared by
every ``RedisCache`` built with that prefix. Besides values, an entry can
carry local-only structures attached by name (``RedisCache.attach_map`` and
friends). Attached structures die with their entry: on delete, clear,
expiry, generation rollover or when a new value is written locally.

An attach call on a key with no local value creates a placeholder entry with
no value; placeholders are invisible to reads.
"""

from __future__ import annotations

from collections.abc import Callable, MutableMapping
from typing import Any, TypeVar

from tiercache.cache.entry import MISSING, CacheEntry, now_ms
from tiercache.cache.lru import BoundedMap

T = TypeVar("T")

DELETE_ALL = "_all_"


class LocalMirror:
    """Process-local copy of a subset of one prefix's remote entries."""

    def __init__(self, prefix: str, max_items: int | None = None):
        self.prefix = prefix
        self.max_items = max_items
        self._data: MutableMapping[str, CacheEntry]
        if max_items is None:
            self._data = {}
        else:
            self._data = BoundedMap(max_items)
        # Remote reads in flight; a local write or delete revokes the token
        self._fill_tokens: dict[str, object] = {}

    def _entry(self, key: str) -> CacheEntry | None:
        entry = self._data.get(key)
        if entry is not None and entry.is_expired():
            self._data.pop(key, None)
            return None
        return entry

    def get_entry(self, key: str) -> CacheEntry | None:
        """Unexpired entry holding a value, or None."""
        entry = self._entry(key)
        if entry is None or not entry.has_value:
            return None
        return entry

    def put(self, key: str, value: Any, ttl: int = 0) -> CacheEntry:
        """Store a locally written value, dropping attached structures."""
        self._fill_tokens.pop(key, None)
        entry = CacheEntry(value=value, ttl=ttl)
        self._data[key] = entry
        return entry

    def begin_fill(self, key: str) -> object:
        """Start a remote read of ``key``; pass the token to ``fill``."""
        token = object()
        self._fill_tokens[key] = token
        return token

    def end_fill(self, key: str, token: object) -> None:
        """Forget a remote read that will not fill the mirror."""
        if self._fill_tokens.get(key) is token:
            del self._fill_tokens[key]

    def fill(
        self,
        key: str,
        value: Any,
        ttl: int = 0,
        created_at: float | None = None,
        token: object | None = None,
    ) -> CacheEntry | None:
        """Store a value fetched from the remote store.

        Structures attached to a placeholder for the key are kept. With a
        ``token`` from ``begin_fill``, a fetch overtaken by a local write,
        delete or clear leaves the mirror alone and the current entry (or
        None) is returned instead.
        """
        if token is not None:
            if self._fill_tokens.get(key) is not token:
                return self.get_entry(key)
            del self._fill_tokens[key]

        previous = self._entry(key)
        entry = CacheEntry(
            value=value,
            created_at=now_ms() if created_at is None else created_at,
            ttl=ttl,
            attached=previous.attached if previous is not None else None,
        )
        self._data[key] = entry
        return entry

    def delete(self, key: str) -> bool:
        self._fill_tokens.pop(key, None)
        return self._data.pop(key, None) is not None

    def clear(self) -> None:
        self._fill_tokens.clear()
        self._data.clear()

    def delete_contains(self, substring: str, *, qualified: bool = False) -> int:
        """Drop every entry whose key contains ``substring``.

        With ``qualified`` the match runs against ``{prefix}:{key}``, as it does
        remotely for glob prefixes. ``DELETE_ALL`` drops everything.
        """
        self._fill_tokens.clear()
        if substring == DELETE_ALL:
            count = len(self._data)
            self._data.clear()
            return count

        doomed = [
            key
            for key in list(self._data.keys())
            if substring in (f"{self.prefix}:{key}" if qualified else key)
        ]
        for key in doomed:
            self._data.pop(key, None)
        return len(doomed)

    # -------------------------------------------------------------------------
    # Attached structures
    # -------------------------------------------------------------------------

    def attached(self, key: str, name: str, factory: Callable[[], T]) -> T:
        """Get or create the structure ``name`` attached to ``key``."""
        entry = self._entry(key)
        if entry is None:
            entry = CacheEntry(value=MISSING)
            self._data[key] = entry

        if entry.attached is None:
            entry.attached = {}

        if name not in entry.attached:
            entry.attached[name] = factory()
        structure: T = entry.attached[name]
        return structure

    def delete_attached(self, key: str, name: str) -> bool:
        entry = self._entry(key)
        if entry is None or not entry.attached:
            return False
        return entry.attached.pop(name, None) is not None

    def delete_all_attached(self, key: str) -> bool:
        entry = self._entry(key)
        if entry is None or not entry.attached:
            return False
        entry.attached = None
        return True

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get_entry(key) is not None

    def __repr__(self) -> str:
        return f"LocalMirror(prefix={self.prefix!r}, size={len(self._data)})"
