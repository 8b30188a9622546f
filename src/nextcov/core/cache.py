"""Bounded insertion-ordered cache.

Once the cache holds ``max_size`` entries, the next insert evicts the oldest
``eviction_fraction`` of entries (at least one) before storing the new value.
Lookups do not refresh an entry's position.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Generic, TypeVar

from nextcov.config.constants import CACHE_EVICTION_FRACTION

K = TypeVar("K")
V = TypeVar("V")


class BoundedCache(Generic[K, V]):
    """FIFO cache that drops a fixed fraction of the oldest keys when full."""

    def __init__(self, max_size: int, eviction_fraction: float = CACHE_EVICTION_FRACTION) -> None:
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        if not 0.0 < eviction_fraction <= 1.0:
            raise ValueError(f"eviction_fraction must be in (0, 1], got {eviction_fraction}")
        self.max_size = max_size
        self.eviction_fraction = eviction_fraction
        self._data: dict[K, V] = {}

    def get(self, key: K, default: V | None = None) -> V | None:
        return self._data.get(key, default)

    def set(self, key: K, value: V) -> None:
        if key not in self._data and len(self._data) >= self.max_size:
            self._evict()
        self._data[key] = value

    def _evict(self) -> None:
        count = max(1, int(self.max_size * self.eviction_fraction))
        for key in list(self._data)[:count]:
            del self._data[key]

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[K]:
        return iter(self._data)
