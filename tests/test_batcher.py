"""Tests for BatchScheduler."""

import asyncio

import pytest

from venuelink.services.batcher import BatchScheduler
from venuelink.services.errors import BatchItemMissingError
from venuelink.services.timers import TaskScheduler


class RecordingExecutor:
    def __init__(self, results: dict | None = None, error: Exception | None = None) -> None:
        self.calls: list[list[str]] = []
        self.results = results
        self.error = error

    async def __call__(self, keys: list[str]) -> dict:
        self.calls.append(keys)
        if self.error:
            raise self.error
        if self.results is not None:
            return self.results
        return {key: f"item-{key}" for key in keys}


@pytest.fixture
def batcher(sleep) -> BatchScheduler:
    return BatchScheduler(TaskScheduler(sleep=sleep), delay=0.05)


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_same_window_runs_one_executor_call(self, batcher, sleep) -> None:
        # Given
        executor = RecordingExecutor()

        # When: two items enqueued in the same window
        first = batcher.enqueue("menu-items", "1", executor)
        second = batcher.enqueue("menu-items", "2", executor)
        results = await asyncio.gather(first, second)

        # Then: one call covering both keys
        assert executor.calls == [["1", "2"]]
        assert results == ["item-1", "item-2"]
        assert sleep.delays == [0.05]
        assert batcher.executions == 1

    @pytest.mark.asyncio
    async def test_duplicate_item_keys_are_sent_once(self, batcher) -> None:
        executor = RecordingExecutor()

        results = await asyncio.gather(
            batcher.enqueue("tables", "7", executor),
            batcher.enqueue("tables", "7", executor),
            batcher.enqueue("tables", "8", executor),
        )

        assert executor.calls == [["7", "8"]]
        assert results == ["item-7", "item-7", "item-8"]

    @pytest.mark.asyncio
    async def test_different_batch_keys_use_separate_windows(self, batcher) -> None:
        menu, tables = RecordingExecutor(), RecordingExecutor()

        await asyncio.gather(
            batcher.enqueue("menu-items", "1", menu),
            batcher.enqueue("tables", "1", tables),
        )

        assert menu.calls == [["1"]]
        assert tables.calls == [["1"]]

    @pytest.mark.asyncio
    async def test_enqueue_after_closure_opens_a_new_window(self, sleep) -> None:
        # Given: an executor that blocks so the first window stays in flight
        release = asyncio.Event()
        calls: list[list[str]] = []

        async def executor(keys: list[str]) -> dict:
            calls.append(keys)
            await release.wait()
            return {key: key for key in keys}

        batcher = BatchScheduler(TaskScheduler(sleep=sleep), delay=0.05)
        first = batcher.enqueue("orders", "a", executor)
        while not calls:
            await asyncio.sleep(0)

        # When: a new item arrives while the first batch is executing
        assert not batcher.has_open_window("orders")
        second = batcher.enqueue("orders", "b", executor)
        assert batcher.has_open_window("orders")
        release.set()

        # Then: it went into its own window
        assert await asyncio.gather(first, second) == ["a", "b"]
        assert calls == [["a"], ["b"]]


class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_item_rejects_only_that_waiter(self, batcher) -> None:
        executor = RecordingExecutor(results={"1": "one"})

        results = await asyncio.gather(
            batcher.enqueue("menu-items", "1", executor),
            batcher.enqueue("menu-items", "2", executor),
            return_exceptions=True,
        )

        assert results[0] == "one"
        assert isinstance(results[1], BatchItemMissingError)
        assert results[1].item_key == "2"

    @pytest.mark.asyncio
    async def test_executor_error_rejects_the_whole_window(self, batcher) -> None:
        error = RuntimeError("batch endpoint down")
        executor = RecordingExecutor(error=error)

        results = await asyncio.gather(
            batcher.enqueue("menu-items", "1", executor),
            batcher.enqueue("menu-items", "2", executor),
            return_exceptions=True,
        )

        assert results == [error, error]

    @pytest.mark.asyncio
    async def test_failed_window_does_not_affect_other_windows(self, batcher) -> None:
        failing = RecordingExecutor(error=RuntimeError("down"))
        working = RecordingExecutor()

        results = await asyncio.gather(
            batcher.enqueue("menu-items", "1", failing),
            batcher.enqueue("tables", "1", working),
            return_exceptions=True,
        )

        assert isinstance(results[0], RuntimeError)
        assert results[1] == "item-1"

    @pytest.mark.asyncio
    async def test_non_mapping_result_rejects_the_whole_window(self, batcher) -> None:
        # Given: an executor that returns nothing
        async def executor(keys: list[str]) -> None:
            return None

        # When
        results = await asyncio.wait_for(
            asyncio.gather(
                batcher.enqueue("menu-items", "1", executor),
                batcher.enqueue("menu-items", "2", executor),
                return_exceptions=True,
            ),
            timeout=1,
        )

        # Then: every waiter settles with the same error
        assert all(isinstance(r, TypeError) for r in results)
        assert "mapping" in str(results[0])


class TestClose:
    @pytest.mark.asyncio
    async def test_close_cancels_open_windows(self) -> None:
        batcher = BatchScheduler(TaskScheduler(), delay=60)
        executor = RecordingExecutor()
        future = batcher.enqueue("menu-items", "1", executor)

        await batcher.close()

        assert future.cancelled()
        assert executor.calls == []
        assert not batcher.has_open_window("menu-items")
