"""
Byte accounting for stored values.

Store quotas are byte based, so sizes are UTF-8 encoded lengths rather than
character counts.
"""
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .store import StorageBackend


def byte_size(value: str) -> int:
    """UTF-8 encoded length of value."""
    return len(value.encode("utf-8"))


def total_size(store: "StorageBackend", prefix: str) -> int:
    """
    Sum of value sizes for every key starting with prefix.

    Scans the whole key space on each call; there is no running total to keep
    in sync.
    """
    total = 0
    for key in store.keys():
        if not key.startswith(prefix):
            continue
        value = store.get(key)
        if value:
            total += byte_size(value)
    return total
