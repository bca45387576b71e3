"""Distributed coordination primitives for tiercache.

Example:
    from tiercache.distributed import Lock

    async with Lock().hold("nightly-rebuild"):
        ...
"""

from tiercache.distributed.lock import Lock

__all__ = [
    "Lock",
]
