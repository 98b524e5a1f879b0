from __future__ import annotations

from collections import OrderedDict
from typing import Any, Dict, Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """
    Fixed-capacity least-recently-used cache.

    Only for non-authoritative lookups (chat entity handles, role ids).
    Evicting an entry must always be safe: callers fall back to a fresh
    remote lookup on a miss.
    """

    def __init__(self, capacity: int = 256):
        if capacity <= 0:
            raise ValueError("LRUCache capacity must be positive")
        self._capacity = capacity
        self._data: "OrderedDict[K, V]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        try:
            value = self._data[key]
        except KeyError:
            self._misses += 1
            return default

        self._data.move_to_end(key)
        self._hits += 1
        return value

    def put(self, key: K, value: V) -> None:
        if key in self._data:
            self._data.move_to_end(key)
        self._data[key] = value

        while len(self._data) > self._capacity:
            self._data.popitem(last=False)
            self._evictions += 1

    def pop(self, key: K, default: Optional[V] = None) -> Optional[V]:
        return self._data.pop(key, default)

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._data),
            "capacity": self._capacity,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
        }
