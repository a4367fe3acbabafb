"""Tests for ApiClient: the read path, mutations, batching and credential refresh."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from venuelink.services.client import ApiClient, resource_name
from venuelink.services.credentials import (
    Credential,
    CredentialCoordinator,
    InMemoryCredentialStore,
)
from venuelink.services.errors import ClientError, ServerError, SessionExpiredError
from venuelink.services.retry import RetryPolicy


class FakeBackend:
    """Records requests and answers from a route table."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list[httpx.Response]] = {}

    def route(self, method: str, path: str, *responses: httpx.Response) -> None:
        self.routes[(method, "/api/v1" + path)] = list(responses)

    def calls(self, method: str, path: str) -> int:
        return sum(
            1 for r in self.requests if r.method == method and r.url.path == "/api/v1" + path
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responses = self.routes.get((request.method, request.url.path))
        if not responses:
            return httpx.Response(404, json={"detail": "Not found"})
        # The last response repeats
        return responses.pop(0) if len(responses) > 1 else responses[0]


def credential(token: str = "t1", expires_in: float = 3600) -> Credential:
    return Credential(
        token=token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        refresh_token="r1",
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore(credential())


@pytest.fixture
def api(context, backend, store, make_http_client) -> ApiClient:
    coordinator = CredentialCoordinator(store, scheduler=context.scheduler)
    return ApiClient(context, coordinator, http_client=make_http_client(backend))


class TestResourceName:
    @pytest.mark.parametrize(
        ("path", "name"),
        [
            ("/venues", "venues"),
            ("/venues/123/tables", "venues"),
            ("menu-items/9", "menu-items"),
            ("/orders?status=open", "orders"),
            ("/", None),
        ],
    )
    def test_first_segment(self, path: str, name: str | None) -> None:
        assert resource_name(path) == name


class TestGet:
    @pytest.mark.asyncio
    async def test_repeated_get_makes_one_network_call(self, api, backend, context) -> None:
        backend.route(
            "GET", "/venues/123", httpx.Response(200, json={"id": "123", "name": "Harbour"})
        )

        first = await api.get("/venues/123")
        second = await api.get("/venues/123")

        assert first.data == second.data == {"id": "123", "name": "Harbour"}
        assert backend.calls("GET", "/venues/123") == 1
        assert context.monitor.get(api.cache_key("/venues/123")).network_calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_gets_share_one_request(self, api, backend) -> None:
        backend.route("GET", "/menu-items", httpx.Response(200, json=[]))

        await asyncio.gather(*(api.get("/menu-items") for _ in range(5)))

        assert backend.calls("GET", "/menu-items") == 1

    @pytest.mark.asyncio
    async def test_params_are_part_of_the_cache_key(self, api, backend) -> None:
        backend.route("GET", "/orders", httpx.Response(200, json=[]))

        await api.get("/orders", params={"status": "open"})
        await api.get("/orders", params={"status": "closed"})
        await api.get("/orders", params={"status": "open"})

        assert backend.calls("GET", "/orders") == 2

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, api, backend, sleep) -> None:
        backend.route(
            "GET",
            "/tables",
            httpx.Response(500),
            httpx.Response(503),
            httpx.Response(200, json=[{"tableId": 1}]),
        )

        response = await api.get("/tables")

        assert response.data == [{"table_id": 1}]
        assert backend.calls("GET", "/tables") == 3
        assert sleep.delays[:2] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, api, backend) -> None:
        with pytest.raises(ClientError) as exc_info:
            await api.get("/venues/missing")

        assert exc_info.value.status_code == 404
        assert backend.calls("GET", "/venues/missing") == 1

    @pytest.mark.asyncio
    async def test_retry_policy_override(self, api, backend) -> None:
        backend.route("GET", "/tables", httpx.Response(500))

        with pytest.raises(ServerError):
            await api.get("/tables", retry_policy=RetryPolicy(max_retries=0))

        assert backend.calls("GET", "/tables") == 1

    @pytest.mark.asyncio
    async def test_cache_scope_separates_identities(
        self, context, backend, make_http_client
    ) -> None:
        backend.route("GET", "/venues", httpx.Response(200, json=[]))
        http_client = make_http_client(backend)
        alice = ApiClient(context, http_client=http_client, cache_scope="alice")
        bob = ApiClient(context, http_client=http_client, cache_scope="bob")

        await alice.get("/venues")
        await bob.get("/venues")

        assert backend.calls("GET", "/venues") == 2


class TestMutations:
    @pytest.mark.asyncio
    async def test_post_invalidates_the_resource(self, api, backend) -> None:
        # Given: a cached venue list and a cached order list
        backend.route("GET", "/venues", httpx.Response(200, json=[]))
        backend.route("GET", "/orders", httpx.Response(200, json=[]))
        backend.route(
            "POST",
            "/venues",
            httpx.Response(201, json={"success": True, "data": {"id": "v2"}}),
        )
        await api.get("/venues")
        await api.get("/orders")

        # When
        created = await api.post("/venues", {"venue_name": "Dockside"})

        # Then: the next GET /venues goes to the network, /orders stays cached
        await api.get("/venues")
        await api.get("/orders")
        assert created.data == {"id": "v2"}
        assert backend.calls("GET", "/venues") == 2
        assert backend.calls("GET", "/orders") == 1
        posted = next(r for r in backend.requests if r.method == "POST")
        assert json.loads(posted.content) == {"venueName": "Dockside"}

    @pytest.mark.asyncio
    async def test_failed_mutation_keeps_the_cache(self, api, backend) -> None:
        backend.route("GET", "/tables", httpx.Response(200, json=[]))
        backend.route("PATCH", "/tables/3", httpx.Response(409, json={"detail": "occupied"}))
        await api.get("/tables")

        with pytest.raises(ClientError):
            await api.patch("/tables/3", {"status": "free"})

        await api.get("/tables")
        assert backend.calls("GET", "/tables") == 1

    @pytest.mark.asyncio
    async def test_mutations_are_not_retried_by_default(self, api, backend) -> None:
        backend.route("PUT", "/menu-items/1", httpx.Response(503))

        with pytest.raises(ServerError):
            await api.put("/menu-items/1", {"price": 5})

        assert backend.calls("PUT", "/menu-items/1") == 1

    @pytest.mark.asyncio
    async def test_opt_in_retry_for_mutations(self, api, backend) -> None:
        backend.route("DELETE", "/orders/1", httpx.Response(503), httpx.Response(204))

        await api.delete("/orders/1", retry=True)

        assert backend.calls("DELETE", "/orders/1") == 2

    @pytest.mark.asyncio
    async def test_extra_invalidation_patterns(self, api, backend) -> None:
        backend.route("GET", "/tables", httpx.Response(200, json=[]))
        backend.route("POST", "/orders", httpx.Response(201, json={}))
        await api.get("/tables")

        await api.post("/orders", {"table_id": 1}, invalidate=["tables"])

        await api.get("/tables")
        assert backend.calls("GET", "/tables") == 2


class TestBatchGet:
    @pytest.mark.asyncio
    async def test_items_in_one_window_share_one_call(self, api) -> None:
        calls: list[list[str]] = []

        async def load(keys: list[str]) -> dict:
            calls.append(keys)
            return {key: {"id": key} for key in keys}

        results = await asyncio.gather(
            api.batch_get("menu-items", "1", load),
            api.batch_get("menu-items", "2", load),
        )

        assert calls == [["1", "2"]]
        assert results == [{"id": "1"}, {"id": "2"}]


class TestCredentialRefresh:
    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed_before_the_request(
        self, context, backend, make_http_client
    ) -> None:
        # Given: a token inside the refresh margin
        store = InMemoryCredentialStore(credential("old", expires_in=10))
        coordinator = CredentialCoordinator(store, refresh_margin=60)
        api = ApiClient(context, coordinator, http_client=make_http_client(backend))
        backend.route(
            "POST",
            "/auth/refresh",
            httpx.Response(
                200,
                json={"success": True, "data": {"accessToken": "new", "expiresIn": 3600}},
            ),
        )
        backend.route("GET", "/venues", httpx.Response(200, json=[]))

        # When
        await api.get("/venues")

        # Then: refresh sent without auth, the read used the new token
        refresh, read = backend.requests
        assert "authorization" not in refresh.headers
        assert json.loads(refresh.content) == {"refreshToken": "r1"}
        assert read.headers["authorization"] == "Bearer new"
        assert store.get().token == "new"
        assert store.get().refresh_token == "r1"

    @pytest.mark.asyncio
    async def test_rejected_refresh_ends_the_session(
        self, context, backend, make_http_client
    ) -> None:
        store = InMemoryCredentialStore(credential("old"))
        reasons: list[str] = []
        coordinator = CredentialCoordinator(store)
        coordinator.on_session_expired(reasons.append)
        api = ApiClient(context, coordinator, http_client=make_http_client(backend))
        backend.route("GET", "/orders", httpx.Response(401))
        backend.route("POST", "/auth/refresh", httpx.Response(401, json={"detail": "revoked"}))

        with pytest.raises(SessionExpiredError):
            await api.get("/orders")

        assert store.get() is None
        assert len(reasons) == 1
        assert backend.calls("GET", "/orders") == 1

    @pytest.mark.asyncio
    async def test_refresh_credential(self, api, backend, store) -> None:
        backend.route(
            "POST",
            "/auth/refresh",
            httpx.Response(200, json={"access_token": "fresh", "refresh_token": "r2"}),
        )

        renewed = await api.refresh_credential()

        assert renewed.token == "fresh"
        assert store.get().refresh_token == "r2"

    @pytest.mark.asyncio
    async def test_callers_renew_fn_is_kept(
        self, context, backend, store, make_http_client
    ) -> None:
        # Given: a coordinator that already knows how to renew
        async def renew_elsewhere(current: Credential | None) -> Credential:
            return Credential(token="from-sso")

        coordinator = CredentialCoordinator(store, renew_fn=renew_elsewhere)
        api = ApiClient(context, coordinator, http_client=make_http_client(backend))

        # When
        renewed = await api.refresh_credential()

        # Then: the API's refresh endpoint was never called
        assert renewed.token == "from-sso"
        assert backend.calls("POST", "/auth/refresh") == 0


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_clear_cache(self, api, backend) -> None:
        backend.route("GET", "/venues", httpx.Response(200, json=[]))
        backend.route("GET", "/orders", httpx.Response(200, json=[]))
        await api.get("/venues")
        await api.get("/orders")

        assert api.clear_cache("venues") == 1
        assert api.clear_cache() == 1

    @pytest.mark.asyncio
    async def test_health_status(self, api, backend) -> None:
        backend.route("GET", "/health", httpx.Response(200, json={"status": "ok"}))

        assert await api.health_check()
        status = api.get_health_status()

        assert status["credential"]["present"]
        assert not status["credential"]["renewing"]
        assert "cache" in status and "deduplicator" in status

    @pytest.mark.asyncio
    async def test_owned_context_is_closed(self, make_http_client, backend) -> None:
        api = ApiClient(http_client=make_http_client(backend))
        context = api.context

        await api.close()

        assert context.closed
