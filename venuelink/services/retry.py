"""
RetryExecutor - bounded re-execution with exponential backoff.

Delay before retry n (0-indexed) is min(base_delay * 2**n, max_delay).
Only errors the policy deems retryable are retried; after max_retries the
last error propagates unchanged.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

from venuelink.services.errors import ServiceError
from venuelink.services.timers import TaskScheduler

T = TypeVar("T")


def default_is_retryable(error: BaseException) -> bool:
    """
    Retry when no response arrived, on 5xx and on 429; never on other 4xx.
    """
    if isinstance(error, ServiceError):
        if error.status_code is None:
            return error.retryable
        return error.status_code >= 500 or error.status_code == 429
    return isinstance(error, (ConnectionError, TimeoutError))


@dataclass
class RetryPolicy:
    """Configuration for one retried call."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    is_retryable: Callable[[BaseException], bool] = default_is_retryable
    jitter: float = 0.0  # fraction of the delay, 0 keeps the schedule exact

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay


@dataclass
class AttemptResult(Generic[T]):
    """Outcome of a single attempt."""

    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RetryAttempt:
    """Progress of one execute() call."""

    count: int = 0
    last_error: BaseException | None = None
    next_delay: float | None = None
    delays: list[float] = field(default_factory=list)


class RetryExecutor:
    """
    Runs a request function under a retry policy.

    Usage:
        executor = RetryExecutor(scheduler)
        data = await executor.execute(
            lambda: transport.send("GET", "/venues"),
            RetryPolicy(max_retries=3, base_delay=1.0),
        )
    """

    def __init__(
        self,
        scheduler: TaskScheduler | None = None,
        default_policy: RetryPolicy | None = None,
    ):
        self._scheduler = scheduler or TaskScheduler()
        self.default_policy = default_policy or RetryPolicy()

    async def execute(
        self,
        request_fn: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
    ) -> T:
        policy = policy or self.default_policy
        state = RetryAttempt()

        while True:
            result = await self._attempt(request_fn)
            if result.ok:
                return result.value  # type: ignore[return-value]

            state.last_error = result.error
            if state.count >= policy.max_retries or not policy.is_retryable(result.error):
                raise result.error  # type: ignore[misc]

            state.next_delay = policy.delay_for(state.count)
            state.delays.append(state.next_delay)
            state.count += 1
            logger.warning(
                f"Request failed, retrying (attempt {state.count}/{policy.max_retries}, "
                f"delay {state.next_delay:.2f}s): {result.error}"
            )
            await self._scheduler.sleep(state.next_delay)

    async def _attempt(self, request_fn: Callable[[], Awaitable[T]]) -> AttemptResult[T]:
        try:
            return AttemptResult(value=await request_fn())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return AttemptResult(error=e)


async def retry_request(
    request_fn: Callable[[], Awaitable[Any]],
    policy: RetryPolicy | None = None,
    scheduler: TaskScheduler | None = None,
) -> Any:
    """Run ``request_fn`` once under a throwaway executor."""
    return await RetryExecutor(scheduler).execute(request_fn, policy)
