"""Cache entry model shared by the local cache and the Redis mirror."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Final


class _Missing:
    """Sentinel type for "no value" where None is a legal default."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Final = _Missing()


def now_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000


@dataclass
class CacheEntry:
    """A stored value with its creation time and optional TTL.

    ``ttl`` is in milliseconds; 0 means the entry never expires. An entry may
    also carry local-only attached structures (see ``RedisCache.attach_map``)
    and, for mirror placeholders created by an attach call, no value at all.
    """

    value: Any
    created_at: float = field(default_factory=now_ms)
    ttl: int = 0
    attached: dict[str, Any] | None = None

    @property
    def has_value(self) -> bool:
        return self.value is not MISSING

    def age(self, now: float | None = None) -> float:
        """Milliseconds since the value was stored."""
        return (now_ms() if now is None else now) - self.created_at

    def is_expired(self, now: float | None = None) -> bool:
        if self.ttl <= 0:
            return False
        return self.age(now) > self.ttl


@dataclass
class StaleContext:
    """Out-parameter for stale-while-revalidate reads.

    ``is_stale`` is set when the value returned is older than the
    ``stale_ttl`` the caller asked about.
    """

    is_stale: bool = False
