"""Write-audited containers for debugging shared mirror values.

Values served from the local mirror are shared by every caller in the
process, so mutating one silently changes what everybody else reads. When
``log_on_local_write`` is enabled the mirror stores these wrappers instead of
the plain containers and every mutation is logged with its path, e.g.
``users:42.address.city``.

Only mutation through the container methods is observed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any, SupportsIndex

OnWrite = Callable[[str], None]


def audited(value: Any, path: str, on_write: OnWrite) -> Any:
    """Wrap dicts and lists (recursively); return anything else unchanged."""
    if isinstance(value, AuditedDict | AuditedList):
        return value
    if isinstance(value, dict):
        return AuditedDict(value, path, on_write)
    if isinstance(value, list):
        return AuditedList(value, path, on_write)
    return value


def log_writes(logger: logging.Logger) -> OnWrite:
    """Callback that reports mutations through ``logger``."""

    def on_write(path: str) -> None:
        logger.warning(f"Local cache value modified in place: {path}")

    return on_write


class AuditedDict(dict[Any, Any]):
    """A dict that reports mutations of its keys."""

    def __init__(self, data: dict[Any, Any], path: str, on_write: OnWrite):
        self._path = path
        self._on_write = on_write
        super().__init__(
            (key, audited(value, f"{path}.{key}", on_write)) for key, value in data.items()
        )

    def _wrap(self, key: Any, value: Any) -> Any:
        return audited(value, f"{self._path}.{key}", self._on_write)

    def __setitem__(self, key: Any, value: Any) -> None:
        self._on_write(f"{self._path}.{key}")
        super().__setitem__(key, self._wrap(key, value))

    def __delitem__(self, key: Any) -> None:
        self._on_write(f"{self._path}.{key}")
        super().__delitem__(key)

    def pop(self, key: Any, *default: Any) -> Any:
        self._on_write(f"{self._path}.{key}")
        return super().pop(key, *default)

    def popitem(self) -> tuple[Any, Any]:
        key, value = super().popitem()
        self._on_write(f"{self._path}.{key}")
        return key, value

    def setdefault(self, key: Any, default: Any = None) -> Any:
        if key not in self:
            self[key] = default
        return self[key]

    def update(self, *args: Any, **kwargs: Any) -> None:
        for key, value in dict(*args, **kwargs).items():
            self[key] = value

    def clear(self) -> None:
        self._on_write(self._path)
        super().clear()


class AuditedList(list[Any]):
    """A list that reports mutations of its items."""

    def __init__(self, data: Iterable[Any], path: str, on_write: OnWrite):
        self._path = path
        self._on_write = on_write
        super().__init__(
            audited(value, f"{path}.{index}", on_write) for index, value in enumerate(data)
        )

    def _wrap(self, index: Any, value: Any) -> Any:
        return audited(value, f"{self._path}.{index}", self._on_write)

    def __setitem__(self, index: Any, value: Any) -> None:
        self._on_write(f"{self._path}.{index}")
        if isinstance(index, slice):
            super().__setitem__(index, [self._wrap(index, item) for item in value])
        else:
            super().__setitem__(index, self._wrap(index, value))

    def __delitem__(self, index: Any) -> None:
        self._on_write(f"{self._path}.{index}")
        super().__delitem__(index)

    def __iadd__(self, values: Iterable[Any]) -> AuditedList:  # type: ignore[override]
        self.extend(values)
        return self

    def append(self, value: Any) -> None:
        self._on_write(f"{self._path}.{len(self)}")
        super().append(self._wrap(len(self), value))

    def extend(self, values: Iterable[Any]) -> None:
        for value in values:
            self.append(value)

    def insert(self, index: SupportsIndex, value: Any) -> None:
        self._on_write(f"{self._path}.{index}")
        super().insert(index, self._wrap(index, value))

    def pop(self, index: SupportsIndex = -1) -> Any:
        self._on_write(f"{self._path}.{index}")
        return super().pop(index)

    def remove(self, value: Any) -> None:
        self._on_write(self._path)
        super().remove(value)

    def clear(self) -> None:
        self._on_write(self._path)
        super().clear()

    def sort(self, *args: Any, **kwargs: Any) -> None:
        self._on_write(self._path)
        super().sort(*args, **kwargs)

    def reverse(self) -> None:
        self._on_write(self._path)
        super().reverse()
