"""
PerformanceMonitor - per-key request counters.

Purely observational: nothing in the request path reads these numbers.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable

Clock = Callable[[], float]


@dataclass
class KeyMetrics:
    """Counters for one logical request key."""

    total_requests: int = 0
    total_time: float = 0.0
    errors: int = 0
    cache_hits: int = 0
    last_request: float = 0.0

    @property
    def network_calls(self) -> int:
        """Calls that went past the cache (successful or failed)."""
        return self.total_requests - self.cache_hits

    @property
    def average_time(self) -> float:
        timed = self.network_calls - self.errors
        return self.total_time / timed if timed > 0 else 0.0

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.errors / self.total_requests

    @property
    def cache_hit_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.cache_hits / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_time": self.total_time,
            "errors": self.errors,
            "cache_hits": self.cache_hits,
            "last_request": self.last_request,
            "network_calls": self.network_calls,
            "average_time": self.average_time,
            "error_rate": self.error_rate,
            "cache_hit_rate": self.cache_hit_rate,
        }


class PerformanceMonitor:
    """
    Aggregates call counts, latency, error rate and cache-hit rate per key.

    Usage:
        monitor = PerformanceMonitor()

        stop = monitor.start_request("GET:/venues")
        await do_request()
        stop()

        monitor.get_metrics()["GET:/venues"]["average_time"]
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or time.perf_counter
        self._metrics: dict[str, KeyMetrics] = {}

    def _entry(self, key: str) -> KeyMetrics:
        metrics = self._metrics.get(key)
        if metrics is None:
            metrics = self._metrics[key] = KeyMetrics()
        metrics.total_requests += 1
        metrics.last_request = time.time()
        return metrics

    def start_request(self, key: str) -> Callable[[], float]:
        """Start timing a request; call the returned function when it ends."""
        started = self._clock()

        def stop() -> float:
            duration = self._clock() - started
            self.record_request(key, duration)
            return duration

        return stop

    def record_request(self, key: str, duration: float = 0.0) -> None:
        self._entry(key).total_time += duration

    def record_cache_hit(self, key: str) -> None:
        self._entry(key).cache_hits += 1

    def record_error(self, key: str) -> None:
        self._entry(key).errors += 1

    def get(self, key: str) -> KeyMetrics | None:
        return self._metrics.get(key)

    def get_metrics(self) -> dict[str, dict[str, Any]]:
        return {key: m.to_dict() for key, m in self._metrics.items()}

    def reset(self) -> None:
        self._metrics.clear()
