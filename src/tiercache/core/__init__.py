"""Core value types shared by the caches."""

from tiercache.core.duration import Duration, parse_duration
from tiercache.core.values import Literal, Pending, Thunk, ValueSource, as_source, resolve

__all__ = [
    "Duration",
    "parse_duration",
    "ValueSource",
    "Literal",
    "Thunk",
    "Pending",
    "as_source",
    "resolve",
]
