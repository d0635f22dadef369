from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Generic, Iterable, Optional, TypeVar

V = TypeVar("V")


def cache_key(tokens: Iterable[str]) -> str:
    """Order-sensitive key for an expanded token sequence."""
    return "|".join(tokens)


class QueryCache(Generic[V]):
    """
    Fixed-capacity LRU map of query key -> ranked result.

    A read promotes the entry; an insert beyond capacity drops the least
    recently used one. Mutations hold a lock so threaded hosts (Streamlit
    reruns) can share one cache.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("QueryCache capacity must be >= 1")
        self.capacity = int(capacity)
        self._store: "OrderedDict[str, V]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            try:
                value = self._store.pop(key)
            except KeyError:
                self.misses += 1
                return None
            self._store[key] = value
            self.hits += 1
            return value

    def put(self, key: str, value: V) -> None:
        with self._lock:
            self._store[key] = value
            self._store.move_to_end(key)
            while len(self._store) > self.capacity:
                self._store.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self.hits = 0
            self.misses = 0

    def keys(self) -> list:
        with self._lock:
            return list(self._store.keys())

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._store

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
