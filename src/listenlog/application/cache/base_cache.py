"""TTL key/value store backing the query cache."""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class CacheEntry[V]:
    value: V
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class InMemoryCache[K, V]:
    """Dict-backed TTL store guarded by an asyncio.Lock.

    Process-local: a restart empties it and multiple app processes don't share it. The
    dashboard queries it serves have TTLs of a few minutes, so that's acceptable.

    `clock` returns seconds on a monotonic scale; tests pass a fake one to step time.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[K, CacheEntry[V]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, key: K) -> V | None:
        # Expired entries are evicted on read, so get() mutates the dict
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry.value

    async def set(self, key: K, value: V, ttl_seconds: float) -> None:
        async with self._lock:
            self._entries[key] = CacheEntry(value, self._clock() + ttl_seconds)

    async def delete(self, key: K) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def delete_where(self, predicate: Callable[[K], bool]) -> int:
        """Drop every key matching predicate. Returns how many were dropped."""
        async with self._lock:
            matching = [key for key in self._entries if predicate(key)]
            for key in matching:
                del self._entries[key]
            return len(matching)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def cleanup_expired(self) -> int:
        now = self._clock()
        return await self.delete_where(lambda key: self._entries[key].is_expired(now))

    def get_stats(self) -> dict[str, Any]:
        # Unlocked read; a slightly stale count is fine for the health endpoint
        now = self._clock()
        expired = sum(1 for entry in self._entries.values() if entry.is_expired(now))
        return {
            "total_entries": len(self._entries),
            "active_entries": len(self._entries) - expired,
            "expired_entries": expired,
        }
