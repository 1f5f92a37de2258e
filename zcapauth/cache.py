"""
zcapauth caching layer.

Provides an in-memory LRU cache with TTL support that memoizes async
computations. Entries hold the computation itself (an asyncio task), so
concurrent callers asking for the same key while it is still being computed
share one computation instead of starting their own.
"""

import asyncio
import inspect
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Represents a cached computation with metadata."""

    task: "asyncio.Task[Any]"
    cached_at: float
    ttl: float
    hits: int = 0


class LruCache:
    """
    In-memory single-flight LRU cache with TTL support.

    Failed or cancelled computations are dropped as soon as they finish so the
    next caller retries. TTL counts from when a computation completes.

    Example:
        >>> cache = LruCache(max_size=100, ttl=300)
        >>> value = await cache.memoize("key", lambda: expensive_call())
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl: float = 300,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the cache.

        Args:
            max_size: Maximum number of entries before LRU eviction.
            ttl: Entry lifetime in seconds.
            clock: Monotonic time source (seconds); injectable for tests.
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._max_size = max_size
        self._ttl = ttl
        self._clock = clock or time.monotonic
        self._lock = asyncio.Lock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    async def memoize(
        self, key: str, fn: Callable[[], Union[Awaitable[Any], Any]]
    ) -> Any:
        """
        Return the cached result for ``key``, computing it with ``fn`` on a miss.

        The computation is registered under ``key`` before it is awaited and is
        shielded from cancellation of any single caller.
        """
        async with self._lock:
            entry = self._get_live_entry(key)
            if entry is None:
                self._stats["misses"] += 1
                task = asyncio.ensure_future(self._run(fn))
                entry = CacheEntry(task=task, cached_at=self._clock(), ttl=self._ttl)
                self._insert(key, entry)
                task.add_done_callback(lambda t, k=key: self._on_done(k, t))
            else:
                entry.hits += 1
                self._stats["hits"] += 1
                logger.debug(f"Cache hit: {key}")

        return await asyncio.shield(entry.task)

    async def get(self, key: str) -> Optional[Any]:
        """Get a completed value, returning None if missing, pending or expired."""
        async with self._lock:
            entry = self._get_live_entry(key)
            if entry is None or not entry.task.done():
                return None
            return entry.task.result()

    async def delete(self, key: str) -> bool:
        """Delete a key from cache. In-flight callers still receive their result."""
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    async def clear(self) -> None:
        """Clear all entries."""
        async with self._lock:
            self._cache.clear()

    def _get_live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._cache.get(key)
        if entry is None:
            return None

        # pending computations never expire
        if entry.task.done() and self._clock() > entry.cached_at + entry.ttl:
            del self._cache[key]
            return None

        # Move to end (LRU)
        self._cache.move_to_end(key)
        return entry

    def _insert(self, key: str, entry: CacheEntry) -> None:
        # Pending computations are never evicted; the cache may exceed
        # max_size until they complete.
        if len(self._cache) >= self._max_size:
            completed = [k for k, e in self._cache.items() if e.task.done()]
            for oldest_key in completed[: len(self._cache) - self._max_size + 1]:
                del self._cache[oldest_key]
                self._stats["evictions"] += 1
        self._cache[key] = entry

    def _on_done(self, key: str, task: "asyncio.Task[Any]") -> None:
        entry = self._cache.get(key)
        if entry is None or entry.task is not task:
            return
        if task.cancelled() or task.exception() is not None:
            del self._cache[key]
            return
        entry.cached_at = self._clock()
        while len(self._cache) > self._max_size:
            completed = next((k for k, e in self._cache.items() if e.task.done()), None)
            if completed is None:
                break
            del self._cache[completed]
            self._stats["evictions"] += 1

    @staticmethod
    async def _run(fn: Callable[[], Union[Awaitable[Any], Any]]) -> Any:
        result = fn()
        if inspect.isawaitable(result):
            result = await result
        return result

    def __len__(self) -> int:
        return len(self._cache)

    @property
    def stats(self) -> Dict[str, int]:
        """Return cache statistics."""
        return {**self._stats, "size": len(self._cache), "max_size": self._max_size}

    @property
    def hit_ratio(self) -> float:
        """Return cache hit ratio."""
        total = self._stats["hits"] + self._stats["misses"]
        return self._stats["hits"] / total if total > 0 else 0.0
