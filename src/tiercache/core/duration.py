"""Duration parsing for TTL options.

TTLs are accepted either as raw milliseconds or as human strings such as
``"1d 3h"``, ``"90s"`` or ``"1 hour, 30 minutes"``. Everything is normalized
to integer milliseconds.
"""

from __future__ import annotations

import math
import re

from tiercache.errors import InvalidArgumentError

Duration = int | float | str | None

_SECOND = 1000
_MINUTE = 60 * _SECOND
_HOUR = 60 * _MINUTE
_DAY = 24 * _HOUR

UNITS: dict[str, int] = {
    "ms": 1,
    "msec": 1,
    "millisecond": 1,
    "milliseconds": 1,
    "s": _SECOND,
    "sec": _SECOND,
    "secs": _SECOND,
    "second": _SECOND,
    "seconds": _SECOND,
    "m": _MINUTE,
    "min": _MINUTE,
    "mins": _MINUTE,
    "minute": _MINUTE,
    "minutes": _MINUTE,
    "h": _HOUR,
    "hr": _HOUR,
    "hrs": _HOUR,
    "hour": _HOUR,
    "hours": _HOUR,
    "d": _DAY,
    "day": _DAY,
    "days": _DAY,
    "w": 7 * _DAY,
    "week": 7 * _DAY,
    "weeks": 7 * _DAY,
    "mo": 30 * _DAY,
    "month": 30 * _DAY,
    "months": 30 * _DAY,
    "y": 365 * _DAY,
    "yr": 365 * _DAY,
    "year": 365 * _DAY,
    "years": 365 * _DAY,
}

_TOKEN = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")
_SEPARATORS = re.compile(r"[\s,]+")


def parse_duration(value: Duration) -> int:
    """Convert a TTL option to milliseconds.

    Args:
        value: None (no TTL), a number of milliseconds, a numeric string,
            or a human duration like ``"1d 3h"``.

    Returns:
        Milliseconds as an int; 0 means "no expiry".

    Raises:
        InvalidArgumentError: If the value is negative or cannot be parsed.
    """
    if value is None:
        return 0

    if isinstance(value, bool):
        raise InvalidArgumentError(f"Invalid duration: {value!r}")

    if isinstance(value, int | float):
        if not math.isfinite(value) or value < 0:
            raise InvalidArgumentError(f"Duration must be a finite non-negative number: {value!r}")
        return int(value)

    if not isinstance(value, str):
        raise InvalidArgumentError(f"Invalid duration type: {type(value).__name__}")

    text = value.strip().lower()
    if not text:
        return 0

    try:
        number = float(text)
    except ValueError:
        number = None
    if number is not None:
        return parse_duration(number)

    total = 0.0
    position = 0
    for match in _TOKEN.finditer(text):
        gap = text[position : match.start()]
        if _SEPARATORS.sub("", gap):
            raise InvalidArgumentError(f"Invalid duration: {value!r}")

        amount, unit = match.groups()
        if unit not in UNITS:
            raise InvalidArgumentError(f"Unknown duration unit {unit!r} in {value!r}")
        total += float(amount) * UNITS[unit]
        position = match.end()

    if position == 0 or _SEPARATORS.sub("", text[position:]):
        raise InvalidArgumentError(f"Invalid duration: {value!r}")

    return int(total)
