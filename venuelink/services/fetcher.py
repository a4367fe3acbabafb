"""
CachedFetcher - cache check, in-flight sharing, execute, store.

The read path every GET goes through. Also provides background preloading
and prioritized cache warming.
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Literal, TypeVar

from loguru import logger

from venuelink.services.cache import CacheManager
from venuelink.services.deduplicator import RequestDeduplicator
from venuelink.services.monitor import PerformanceMonitor
from venuelink.services.timers import TaskScheduler

T = TypeVar("T")

FetchFn = Callable[[], Awaitable[Any]]

WARM_DELAYS: dict[str, float] = {"medium": 0.1, "low": 0.5}


@dataclass
class WarmEntry:
    """One item to load during cache warming."""

    key: str
    fetch_fn: FetchFn
    priority: Literal["high", "medium", "low"] = "medium"
    ttl: timedelta | None = None


class CachedFetcher:
    """
    Request cache and deduplication registry.

    Usage:
        fetcher = CachedFetcher(cache, deduplicator, monitor)

        venue = await fetcher.get_or_fetch(
            "GET:/venues/123:{}",
            lambda: transport.send("GET", "/venues/123"),
            ttl=timedelta(minutes=5),
        )
        fetcher.invalidate_by_pattern("venues")
    """

    def __init__(
        self,
        cache: CacheManager,
        deduplicator: RequestDeduplicator,
        monitor: PerformanceMonitor | None = None,
        scheduler: TaskScheduler | None = None,
        default_ttl: timedelta = timedelta(minutes=5),
    ):
        self._cache = cache
        self._deduplicator = deduplicator
        self._monitor = monitor or PerformanceMonitor()
        self._scheduler = scheduler or TaskScheduler()
        self._default_ttl = default_ttl
        self._background: set[asyncio.Task[Any]] = set()

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl: timedelta | None = None,
        use_cache: bool = True,
        dedupe: bool = True,
    ) -> T:
        """
        Return a live cached value, join an in-flight fetch for the same key,
        or run ``fetch_fn`` and cache its result.
        """
        if use_cache:
            hit, value = self._cache.lookup(key)
            if hit:
                self._monitor.record_cache_hit(key)
                return value

        if dedupe:
            return await self._deduplicator.dedupe(
                key, lambda: self._fetch_and_store(key, fetch_fn, ttl, use_cache)
            )
        return await self._fetch_and_store(key, fetch_fn, ttl, use_cache)

    async def _fetch_and_store(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl: timedelta | None,
        use_cache: bool,
    ) -> T:
        logger.debug(f"Cache miss, fetching {key[:80]}")
        stop = self._monitor.start_request(key)
        try:
            value = await fetch_fn()
        except Exception:
            self._monitor.record_error(key)
            raise
        stop()

        if use_cache:
            self._cache.set(key, value, ttl if ttl is not None else self._default_ttl)
        return value

    def invalidate_by_pattern(self, pattern: "str | re.Pattern[str]") -> int:
        count = self._cache.invalidate_by_pattern(pattern)
        logger.debug(f"Cache invalidated: {pattern!r} ({count} entries)")
        return count

    def invalidate_related(self, patterns: list[str]) -> int:
        return sum(self.invalidate_by_pattern(p) for p in patterns)

    def preload(
        self,
        key: str,
        fetch_fn: FetchFn,
        ttl: timedelta | None = None,
    ) -> asyncio.Task[Any] | None:
        """Fetch ``key`` in the background unless it is already cached."""
        if self._cache.has(key):
            return None
        task = asyncio.ensure_future(self._preload(key, fetch_fn, ttl))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _preload(self, key: str, fetch_fn: FetchFn, ttl: timedelta | None) -> None:
        try:
            await self.get_or_fetch(key, fetch_fn, ttl=ttl)
        except Exception as e:
            logger.warning(f"Preload failed for {key[:80]}: {e}")

    async def warm(self, entries: list[WarmEntry]) -> None:
        """
        Warm the cache by priority.

        High-priority entries are loaded now and awaited; medium and low
        ones are preloaded after a short delay so they do not compete with
        the high-priority requests.
        """
        by_priority: dict[str, list[WarmEntry]] = {"high": [], "medium": [], "low": []}
        for entry in entries:
            by_priority[entry.priority].append(entry)

        for priority, delay in WARM_DELAYS.items():
            batch = by_priority[priority]
            if batch:
                self._scheduler.schedule(delay, lambda batch=batch: self._preload_all(batch))

        logger.info(
            f"Cache warming initiated: high={len(by_priority['high'])} "
            f"medium={len(by_priority['medium'])} low={len(by_priority['low'])}"
        )

        tasks = [
            t for t in (self.preload(e.key, e.fetch_fn, e.ttl) for e in by_priority["high"]) if t
        ]
        if tasks:
            await asyncio.gather(*tasks)

    def _preload_all(self, entries: list[WarmEntry]) -> None:
        for entry in entries:
            self.preload(entry.key, entry.fetch_fn, entry.ttl)

    def clear(self) -> int:
        return self._cache.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "cache": self._cache.get_stats().to_dict(),
            "deduplicator": self._deduplicator.get_stats().to_dict(),
            "preloading": len(self._background),
            "metrics": self._monitor.get_metrics(),
        }

    async def close(self) -> None:
        """Cancel background preloads."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    @property
    def cache(self) -> CacheManager:
        return self._cache

    @property
    def monitor(self) -> PerformanceMonitor:
        return self._monitor
