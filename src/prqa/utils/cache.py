"""Bounded response cache and prompt hashing for the model gateway."""

from __future__ import annotations

import hashlib
import threading
import time
from collections import OrderedDict
from typing import Generic, TypeVar

_T = TypeVar("_T")


class MemoryCache(Generic[_T]):
    """Least-recently-used cache with an optional expiry.

    Shared by concurrent stages of a run, so every access takes the lock.

    Args:
        max_size: Entries kept before the least recently used one is evicted.
        ttl_seconds: Lifetime of an entry in seconds; ``0`` keeps entries
            until they are evicted.
    """

    def __init__(self, max_size: int = 256, ttl_seconds: float = 0.0) -> None:
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._entries: OrderedDict[str, tuple[float, _T]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _expired(self, stored_at: float) -> bool:
        return self._ttl > 0 and time.monotonic() - stored_at > self._ttl

    def get(self, key: str) -> _T | None:
        with self._lock:
            found = self._entries.get(key)
            if found is None or self._expired(found[0]):
                self._entries.pop(key, None)
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return found[1]

    def put(self, key: str, value: _T) -> None:
        with self._lock:
            self._entries[key] = (time.monotonic(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)

    def pop(self, key: str) -> bool:
        """Drop *key*; return whether it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None


def content_hash(text: str) -> str:
    """Short SHA-256 digest used for cache keys and prompt ids."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
