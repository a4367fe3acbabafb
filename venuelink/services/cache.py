"""
CacheManager - in-memory response cache with TTL.

Features:
- Lazy expiry: an entry past its TTL is dropped when it is next read
- Oldest-first eviction when max_size is reached
- Pattern invalidation that respects resource-name boundaries

All operations are synchronous. On a single event loop a read-check-then-
write sequence cannot be interleaved with another coroutine.
"""

import hashlib
import re
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Generic, TypeVar

from loguru import logger

T = TypeVar("T")

Clock = Callable[[], float]

# Characters that may appear inside a resource name in a cache key.
_NAME_CHARS = r"A-Za-z0-9_\-"


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    key: str
    value: T
    stored_at: float
    ttl: timedelta

    def age(self, now: float) -> float:
        return now - self.stored_at

    def is_expired(self, now: float) -> bool:
        """Check if entry is past its TTL."""
        return self.age(now) > self.ttl.total_seconds()


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0
    invalidations: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class CacheManager:
    """
    In-memory cache manager with TTL.

    Usage:
        cache = CacheManager(max_size=500)

        hit, value = cache.lookup("GET:/venues/1:{}")
        if not hit:
            value = await fetch()
            cache.set("GET:/venues/1:{}", value, ttl=timedelta(minutes=5))

        cache.invalidate_by_pattern("venues")
    """

    def __init__(
        self,
        max_size: int = 500,
        default_ttl: timedelta = timedelta(minutes=5),
        clock: Clock | None = None,
        debug: bool = False,
    ):
        self._memory: dict[str, CacheEntry[Any]] = {}
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._clock = clock or time.monotonic
        self._debug = debug
        self._stats = CacheStats()

    @staticmethod
    def generate_key(
        path: str,
        params: dict[str, Any] | None = None,
        method: str = "GET",
        scope: str | None = None,
    ) -> str:
        """Generate a cache key from method, path and params."""
        sorted_params = (
            "&".join(f"{k}={v}" for k, v in sorted(params.items()) if v is not None)
            if params
            else ""
        )
        full_key = f"{method.upper()}:{path}:{{{sorted_params}}}"
        if scope:
            full_key = f"{scope}|{full_key}"

        # Hash long keys but keep the path readable for pattern invalidation
        if len(full_key) > 200:
            hash_val = hashlib.md5(full_key.encode()).hexdigest()[:16]
            return f"{method.upper()}:{path}:#{hash_val}"

        return full_key

    def lookup(self, key: str) -> tuple[bool, Any]:
        """
        Return ``(True, value)`` for a live entry, ``(False, None)`` otherwise.

        Distinguishes a cached ``None`` from a miss.
        """
        entry = self._memory.get(key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:50]}")
            return False, None

        if entry.is_expired(self._clock()):
            del self._memory[key]
            self._stats.misses += 1
            self._stats.expirations += 1
            self._log(f"EXPIRED: {key[:50]}")
            return False, None

        self._stats.hits += 1
        self._log(f"HIT: {key[:50]}")
        return True, entry.value

    def get(self, key: str, default: Any = None) -> Any:
        """Get a live value or ``default``."""
        hit, value = self.lookup(key)
        return value if hit else default

    def has(self, key: str) -> bool:
        """True if a live entry exists. Does not touch statistics."""
        entry = self._memory.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def set(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Data to cache
            ttl: Time to live (uses default if not specified)
        """
        ttl = ttl if ttl is not None else self._default_ttl

        # Oldest-first eviction if at capacity
        if len(self._memory) >= self._max_size and key not in self._memory:
            self._evict_oldest()

        self._memory[key] = CacheEntry(
            key=key, value=value, stored_at=self._clock(), ttl=ttl
        )
        self._log(f"SET: {key[:50]} (TTL: {ttl.total_seconds()}s)")

    def delete(self, key: str) -> bool:
        """Delete a specific key from cache."""
        if key in self._memory:
            del self._memory[key]
            self._log(f"DELETE: {key[:50]}")
            return True
        return False

    def invalidate_by_pattern(self, pattern: "str | re.Pattern[str]") -> int:
        """
        Remove every key matching ``pattern``.

        A string is a resource name and only matches where it is not part of
        a longer name: ``"venues"`` matches ``GET:/venues/1:{}`` but not
        ``GET:/venues_archive:{}`` or ``GET:/subvenues:{}``. A compiled regex
        is searched as given.

        Returns:
            Number of entries invalidated
        """
        regex = pattern if isinstance(pattern, re.Pattern) else resource_pattern(pattern)
        keys_to_delete = [k for k in self._memory if regex.search(k)]
        for key in keys_to_delete:
            del self._memory[key]

        self._stats.invalidations += len(keys_to_delete)
        if keys_to_delete:
            self._log(
                f"INVALIDATE: {len(keys_to_delete)} entries matching '{regex.pattern}'"
            )
        return len(keys_to_delete)

    def clear(self) -> int:
        """Clear all cache entries."""
        count = len(self._memory)
        self._memory.clear()
        self._log(f"CLEAR: {count} entries removed")
        return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        now = self._clock()
        expired_keys = [k for k, v in self._memory.items() if v.is_expired(now)]
        for key in expired_keys:
            del self._memory[key]

        if expired_keys:
            self._stats.expirations += len(expired_keys)
            self._log(f"CLEANUP: {len(expired_keys)} expired entries removed")

        return len(expired_keys)

    def keys(self) -> list[str]:
        return list(self._memory.keys())

    def __len__(self) -> int:
        return len(self._memory)

    def _evict_oldest(self) -> None:
        """Evict the oldest entry."""
        if not self._memory:
            return

        oldest_key = min(
            self._memory.keys(),
            key=lambda k: self._memory[k].stored_at,
        )
        del self._memory[oldest_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}")

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheManager] {message}")


def resource_pattern(name: str) -> "re.Pattern[str]":
    """Regex matching ``name`` only as a whole resource-name segment."""
    return re.compile(rf"(?<![{_NAME_CHARS}]){re.escape(name)}(?![{_NAME_CHARS}])")
