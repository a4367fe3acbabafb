"""
Service layer infrastructure - resilience patterns for backend API calls.

Provides:
- TaskScheduler: Cancellable delayed tasks for backoff and batching
- CredentialCoordinator: Single-flight credential renewal
- Transport: One request/response exchange with envelope normalization
- RetryExecutor: Bounded exponential backoff
- CacheManager / RequestDeduplicator / CachedFetcher: Read-path caching
- BatchScheduler: Same-window request coalescing
- PerformanceMonitor: Per-key request metrics
- NetworkContext / ApiClient: Composition of all of the above
"""

from venuelink.services.errors import (
    ServiceError,
    NetworkError,
    RequestTimeoutError,
    AuthError,
    SessionExpiredError,
    PermissionDeniedError,
    ValidationError,
    ClientError,
    RateLimitError,
    ServerError,
    StaleBundleError,
    BatchItemMissingError,
    user_message,
)
from venuelink.services.timers import DelayedTask, TaskScheduler
from venuelink.services.casing import KeyCase, KeyCodec
from venuelink.services.credentials import (
    Credential,
    CredentialCoordinator,
    CredentialStore,
    InMemoryCredentialStore,
)
from venuelink.services.transport import ApiResponse, Transport
from venuelink.services.retry import RetryExecutor, RetryPolicy, retry_request
from venuelink.services.cache import CacheManager, CacheEntry, CacheStats
from venuelink.services.deduplicator import RequestDeduplicator
from venuelink.services.fetcher import CachedFetcher, WarmEntry
from venuelink.services.batcher import BatchScheduler
from venuelink.services.monitor import PerformanceMonitor, KeyMetrics
from venuelink.services.context import NetworkContext
from venuelink.services.client import ApiClient

__all__ = [
    # Errors
    "ServiceError",
    "NetworkError",
    "RequestTimeoutError",
    "AuthError",
    "SessionExpiredError",
    "PermissionDeniedError",
    "ValidationError",
    "ClientError",
    "RateLimitError",
    "ServerError",
    "StaleBundleError",
    "BatchItemMissingError",
    "user_message",
    # Timers
    "DelayedTask",
    "TaskScheduler",
    # Key case
    "KeyCase",
    "KeyCodec",
    # Credentials
    "Credential",
    "CredentialCoordinator",
    "CredentialStore",
    "InMemoryCredentialStore",
    # Transport
    "ApiResponse",
    "Transport",
    # Retry
    "RetryExecutor",
    "RetryPolicy",
    "retry_request",
    # Cache
    "CacheManager",
    "CacheEntry",
    "CacheStats",
    "RequestDeduplicator",
    "CachedFetcher",
    "WarmEntry",
    # Batching
    "BatchScheduler",
    # Monitor
    "PerformanceMonitor",
    "KeyMetrics",
    # Client
    "NetworkContext",
    "ApiClient",
]
