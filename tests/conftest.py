"""Shared fixtures: fake time, settings and an isolated network context."""

import asyncio
from collections.abc import AsyncIterator, Callable

import httpx
import pytest
import pytest_asyncio

from venuelink.services.context import NetworkContext
from venuelink.settings import Settings

API_BASE = "http://api.test/api/v1"


class RecordingSleep:
    """Sleep replacement that records each delay and only yields to the loop."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_base_url=API_BASE,
        ws_base_url="ws://ws.test",
        retry_max=3,
        retry_base_delay=1.0,
        retry_max_delay=10.0,
        batch_delay=0.05,
        ws_reconnect_attempts=3,
        ws_reconnect_delay=1.0,
        ws_reconnect_max_delay=30.0,
        ws_heartbeat_interval=0,
        token_refresh_margin=60,
    )


@pytest_asyncio.fixture
async def context(
    settings: Settings, sleep: RecordingSleep, clock: ManualClock
) -> AsyncIterator[NetworkContext]:
    ctx = NetworkContext(settings, sleep=sleep, clock=clock)
    yield ctx
    await ctx.close()


@pytest_asyncio.fixture
async def make_http_client() -> AsyncIterator[
    Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]
]:
    """Build AsyncClients whose requests are answered by a handler function."""
    clients: list[httpx.AsyncClient] = []

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.aclose()
