"""Bounded in-process cache with time-to-live expiry.

Eviction is insertion-ordered (oldest write goes first), not LRU: reads do not
refresh an item's position. Values cached here are pure functions of their key,
so concurrent writers racing on one key are harmless: the last write wins. The
underlying map is only touched under a lock.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Capacity-bounded map whose entries expire ``ttl_seconds`` after being set.

    Args:
        max_size: Maximum number of live items kept. Writing past it evicts
            the oldest insertions.
        ttl_seconds: Lifetime of an item from the moment it is set.
        clock: Monotonic time source in seconds. Tests inject a fake clock.
    """

    def __init__(
        self,
        max_size: int = 200,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._items: OrderedDict[K, tuple[V, float]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, key: K) -> V | None:
        """Return the cached value, or ``None`` when absent or expired."""
        with self._lock:
            item = self._items.get(key)
            if item is None:
                self.misses += 1
                return None
            value, expires_at = item
            if self._clock() >= expires_at:
                self._items.pop(key, None)
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: K, value: V) -> None:
        """Store *value* under *key*, then evict down to capacity."""
        with self._lock:
            self._items.pop(key, None)
            self._items[key] = (value, self._clock() + self.ttl_seconds)
            self._evict()

    def evict(self) -> int:
        """Drop expired items, then the oldest insertions beyond capacity.

        Returns:
            Number of items removed.
        """
        with self._lock:
            return self._evict()

    def _evict(self) -> int:
        now = self._clock()
        removed = 0
        for key in [k for k, (_, expires_at) in self._items.items() if now >= expires_at]:
            del self._items[key]
            removed += 1
        while len(self._items) > self.max_size:
            self._items.popitem(last=False)
            removed += 1
        return removed

    def get_or_compute(self, key: K, compute: Callable[[], V]) -> V:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        self.set(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
