"""Time-to-live cache for list query results, owned by whoever constructs it."""

from __future__ import annotations

import threading
import time
from collections.abc import Hashable
from typing import Any, Callable

CacheKey = tuple[str, str, Hashable]


class ListQueryCache:
    """Simple TTL cache keyed by ``(namespace, owner_id, params)``.

    Expired entries are dropped on read and on every write, or eagerly via
    ``invalidate`` when a write touches the owner's data. Past ``max_entries``
    the oldest entries are evicted first.
    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        *,
        max_entries: int = 1024,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._timer = timer
        self._entries: dict[CacheKey, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str, owner_id: str, params: Hashable = None) -> Any | None:
        key = (namespace, owner_id, params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, cached_at = entry
            if self._timer() - cached_at > self._ttl:
                del self._entries[key]
                return None
            return value

    def set(self, namespace: str, owner_id: str, value: Any, params: Hashable = None) -> None:
        now = self._timer()
        with self._lock:
            self._entries = {
                key: entry for key, entry in self._entries.items() if now - entry[1] <= self._ttl
            }
            self._entries[(namespace, owner_id, params)] = (value, now)
            overflow = len(self._entries) - self._max_entries
            if overflow > 0:
                oldest = sorted(self._entries, key=lambda key: self._entries[key][1])[:overflow]
                for key in oldest:
                    del self._entries[key]

    def invalidate(self, owner_id: str, namespace: str | None = None) -> int:
        """Drop every entry for ``owner_id``; returns how many were removed."""

        with self._lock:
            stale = [
                key
                for key in self._entries
                if key[1] == owner_id and (namespace is None or key[0] == namespace)
            ]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)
