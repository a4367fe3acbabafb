"""
NetworkContext - owns the registries the request path shares.

One context per session (or per test). Nothing here is module-level state,
so contexts are isolated from each other and close() tears one down
completely.
"""

from datetime import timedelta
from typing import Any

from loguru import logger

from venuelink.services.batcher import BatchScheduler
from venuelink.services.cache import CacheManager, Clock
from venuelink.services.deduplicator import RequestDeduplicator
from venuelink.services.fetcher import CachedFetcher
from venuelink.services.monitor import PerformanceMonitor
from venuelink.services.retry import RetryExecutor, RetryPolicy
from venuelink.services.timers import SleepFn, TaskScheduler
from venuelink.settings import Settings, global_settings


class NetworkContext:
    """
    Usage:
        async with NetworkContext() as context:
            client = ApiClient(context, coordinator)
            ...
    """

    def __init__(
        self,
        settings: Settings | None = None,
        sleep: SleepFn | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings or global_settings
        debug = self.settings.debug

        self.scheduler = TaskScheduler(sleep=sleep, debug=debug)
        self.cache = CacheManager(
            max_size=self.settings.cache_max_size,
            default_ttl=timedelta(seconds=self.settings.cache_ttl_seconds),
            clock=clock,
            debug=debug,
        )
        self.deduplicator = RequestDeduplicator(debug=debug)
        self.monitor = PerformanceMonitor()
        self.fetcher = CachedFetcher(
            self.cache,
            self.deduplicator,
            self.monitor,
            self.scheduler,
            default_ttl=timedelta(seconds=self.settings.cache_ttl_seconds),
        )
        self.batcher = BatchScheduler(
            self.scheduler, delay=self.settings.batch_delay, debug=debug
        )
        self.retry = RetryExecutor(
            self.scheduler,
            RetryPolicy(
                max_retries=self.settings.retry_max,
                base_delay=self.settings.retry_base_delay,
                max_delay=self.settings.retry_max_delay,
            ),
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Cancel timers, batch windows and in-flight work; drop cached data."""
        if self._closed:
            return
        self._closed = True
        await self.batcher.close()
        await self.fetcher.close()
        await self.deduplicator.cancel_all()
        await self.scheduler.cancel_all()
        self.cache.clear()
        logger.debug("NetworkContext closed")

    def get_health_status(self) -> dict[str, Any]:
        return {
            "cache": self.cache.get_stats().to_dict(),
            "deduplicator": self.deduplicator.get_stats().to_dict(),
            "pending_timers": self.scheduler.pending_count,
            "metrics": self.monitor.get_metrics(),
        }

    async def __aenter__(self) -> "NetworkContext":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
