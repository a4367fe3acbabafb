"""
ApiClient - backend API client with resilience patterns.

Combines:
- Transport for credential injection, key-case conversion and envelopes
- CachedFetcher for response caching and in-flight deduplication of reads
- RetryExecutor for exponential backoff on retryable failures
- BatchScheduler for coalescing same-window reads
"""

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Mapping

import httpx
from loguru import logger

from venuelink.services.batcher import BatchExecutor
from venuelink.services.cache import CacheManager
from venuelink.services.casing import KeyCodec
from venuelink.services.context import NetworkContext
from venuelink.services.credentials import (
    Credential,
    CredentialCoordinator,
    InMemoryCredentialStore,
)
from venuelink.services.errors import AuthError
from venuelink.services.retry import RetryPolicy
from venuelink.services.transport import ApiResponse, Transport


def resource_name(path: str) -> str | None:
    """First path segment: ``/venues/123/orders`` -> ``venues``."""
    path = path.split("?", 1)[0]
    for segment in path.strip("/").split("/"):
        if segment:
            return segment
    return None


class ApiClient:
    """
    Usage:
        async with NetworkContext() as context:
            coordinator = CredentialCoordinator(InMemoryCredentialStore(credential))
            async with ApiClient(context, coordinator) as api:
                venue = await api.get("/venues/123")
                await api.post("/venues", {"name": "Harbour Kitchen"})
                # GET /venues/... entries were invalidated by the POST
    """

    def __init__(
        self,
        context: NetworkContext | None = None,
        coordinator: CredentialCoordinator | None = None,
        http_client: httpx.AsyncClient | None = None,
        codec: KeyCodec | None = None,
        cache_scope: str | None = None,
    ):
        self._owns_context = context is None
        self._context = context or NetworkContext()
        settings = self._context.settings

        self._coordinator = coordinator or CredentialCoordinator(
            InMemoryCredentialStore(),
            refresh_margin=settings.token_refresh_margin,
            scheduler=self._context.scheduler,
        )
        if not self._coordinator.has_renew_fn:
            self._coordinator.set_renew_fn(self._refresh_credential)
        self._cache_scope = cache_scope

        self._transport = Transport(
            settings.api_base_url,
            coordinator=self._coordinator,
            codec=codec or KeyCodec(settings.wire_key_case, settings.internal_key_case),
            timeout=settings.api_timeout,
            http_client=http_client,
            debug=settings.debug,
        )

    @property
    def context(self) -> NetworkContext:
        return self._context

    @property
    def coordinator(self) -> CredentialCoordinator:
        return self._coordinator

    @property
    def transport(self) -> Transport:
        return self._transport

    def cache_key(self, path: str, params: dict[str, Any] | None = None) -> str:
        return CacheManager.generate_key(path, params, "GET", scope=self._cache_scope)

    async def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        use_cache: bool = True,
        ttl: timedelta | None = None,
        dedupe: bool = True,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
    ) -> ApiResponse:
        """
        Read a resource.

        Served from the cache while the entry is live; concurrent reads of
        the same key share one request. Retryable failures are retried with
        backoff before the error reaches the caller.
        """
        key = self.cache_key(path, params)

        async def fetch() -> ApiResponse:
            return await self._context.retry.execute(
                lambda: self._transport.send("GET", path, params=params, timeout=timeout),
                retry_policy,
            )

        return await self._context.fetcher.get_or_fetch(
            key, fetch, ttl=ttl, use_cache=use_cache, dedupe=dedupe
        )

    async def post(self, path: str, data: Any = None, **kwargs: Any) -> ApiResponse:
        return await self._mutate("POST", path, data, **kwargs)

    async def put(self, path: str, data: Any = None, **kwargs: Any) -> ApiResponse:
        return await self._mutate("PUT", path, data, **kwargs)

    async def patch(self, path: str, data: Any = None, **kwargs: Any) -> ApiResponse:
        return await self._mutate("PATCH", path, data, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> ApiResponse:
        return await self._mutate("DELETE", path, None, **kwargs)

    async def _mutate(
        self,
        method: str,
        path: str,
        data: Any,
        params: dict[str, Any] | None = None,
        invalidate: list[str] | None = None,
        retry: bool = False,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
    ) -> ApiResponse:
        """
        Send a mutating request, then drop cached reads of the resource.

        Mutations are not retried unless ``retry`` is set, since the server
        may have applied a request whose response was lost. Invalidation runs
        only after success; ``invalidate`` adds further resource names.
        """

        def send() -> Awaitable[ApiResponse]:
            return self._transport.send(
                method, path, params=params, json_data=data, timeout=timeout
            )

        if retry:
            response = await self._context.retry.execute(send, retry_policy)
        else:
            response = await send()

        patterns = [name for name in [resource_name(path), *(invalidate or [])] if name]
        if patterns:
            self._context.fetcher.invalidate_related(patterns)
        return response

    async def batch_get(
        self,
        batch_key: str,
        item_key: str,
        executor: BatchExecutor,
        retry_policy: RetryPolicy | None = None,
    ) -> Any:
        """
        Load one item through the batch window for ``batch_key``.

        ``executor`` receives every item key collected in the window and
        returns a mapping of item key to result. The batch call is retried
        as a whole.
        """

        async def run(keys: list[str]) -> Mapping[str, Any]:
            return await self._context.retry.execute(lambda: executor(keys), retry_policy)

        return await self._context.batcher.enqueue(batch_key, item_key, run)

    def preload(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        ttl: timedelta | None = None,
    ) -> "asyncio.Task[Any] | None":
        """Fetch ``path`` into the cache in the background."""
        return self._context.fetcher.preload(
            self.cache_key(path, params),
            lambda: self._context.retry.execute(
                lambda: self._transport.send("GET", path, params=params)
            ),
            ttl=ttl,
        )

    async def _refresh_credential(self, current: Credential | None) -> Credential:
        """Exchange the refresh token for a new access credential."""
        if current is None or not current.refresh_token:
            raise AuthError("No refresh token available")

        response = await self._transport.send(
            "POST",
            self._context.settings.token_refresh_path,
            json_data={"refresh_token": current.refresh_token},
            skip_auth=True,
        )
        payload = response.data or {}
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise AuthError("Refresh response did not contain an access token")

        return Credential.from_token(
            token,
            refresh_token=payload.get("refresh_token") or current.refresh_token,
            expires_in=payload.get("expires_in"),
        )

    async def refresh_credential(self) -> Credential:
        """Force a credential renewal (shared with any renewal in progress)."""
        return await self._coordinator.renew()

    async def health_check(self) -> bool:
        return await self._transport.health_check()

    def get_health_status(self) -> dict[str, Any]:
        status = self._context.get_health_status()
        credential = self._coordinator.credential
        status["credential"] = {
            "present": credential is not None,
            "expires_in": credential.expires_in() if credential else None,
            "renewing": self._coordinator.is_renewing,
        }
        return status

    def clear_cache(self, pattern: str | None = None) -> int:
        """Clear cache entries, optionally only those matching a resource name."""
        if pattern:
            return self._context.fetcher.invalidate_by_pattern(pattern)
        return self._context.fetcher.clear()

    async def close(self) -> None:
        await self._transport.close()
        if self._owns_context:
            await self._context.close()
        logger.debug("ApiClient closed")

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
