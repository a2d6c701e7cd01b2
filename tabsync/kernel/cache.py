"""
tabsync Kernel — Cache Layer

TTL-keyed snapshot cache for reads: serves data while offline and avoids
redundant fetches. The cache is the only writer of its entries.

- An entry is stale once now - timestamp > ttl. Stale entries count as a miss
  and are evicted lazily on the access that finds them.
- At capacity the oldest *inserted* entry is evicted. Re-setting a key counts
  as a new insertion. This is insertion order, not LRU by access.
- Hit/miss counters only ever grow for the lifetime of the instance.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from typing import Any

from tabsync.kernel.types import CacheEntry, CacheStats, Clock, now_ms

DEFAULT_TTL_MS = 300_000
DEFAULT_MAX_SIZE = 100


class Cache:
    def __init__(self, *, ttl: int = DEFAULT_TTL_MS, max_size: int = DEFAULT_MAX_SIZE, clock: Clock = now_ms):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.default_ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._pending: dict[str, asyncio.Future] = {}
        self.hits = 0
        self.misses = 0

    def set(self, key: str, data: Any, ttl: int | None = None) -> None:
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
        self._entries[key] = CacheEntry(
            key=key,
            data=data,
            timestamp=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def get(self, key: str) -> Any | None:
        entry = self._live(key)
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry.data

    def has(self, key: str) -> bool:
        """Presence check without touching the hit/miss counters."""
        return self._live(key) is not None

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def invalidate(self, pattern: str | None = None) -> int:
        """Drop every key matching the regex pattern (all keys when None). Returns the count."""
        if pattern is None:
            count = len(self._entries)
            self._entries.clear()
            return count
        rx = re.compile(pattern)
        doomed = [k for k in self._entries if rx.search(k)]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    def purge_expired(self) -> int:
        now = self._clock()
        doomed = [k for k, e in self._entries.items() if e.expired(now)]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    def size(self) -> int:
        return len(self._entries)

    def get_stats(self) -> CacheStats:
        now = self._clock()
        ages = [now - e.timestamp for e in self._entries.values()]
        return CacheStats(
            size=len(self._entries),
            max_size=self.max_size,
            hits=self.hits,
            misses=self.misses,
            pending_requests=len(self._pending),
            extra={"average_age": sum(ages) / len(ages) if ages else 0},
        )

    async def get_or_fetch(self, key: str, fetcher: Callable[[], Awaitable[Any]], ttl: int | None = None) -> Any:
        """
        Cached value for key, or the result of fetcher() stored under key.
        Concurrent callers for the same key share one in-flight fetch.
        Fetch errors propagate to every waiter and nothing is cached.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        pending = self._pending.get(key)
        if pending is not None:
            return await pending

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            data = await fetcher()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Retrieved here so an unawaited future does not warn.
            future.exception()
            raise
        else:
            self.set(key, data, ttl)
            future.set_result(data)
            return data
        finally:
            self._pending.pop(key, None)

    def _live(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            return None
        return entry
