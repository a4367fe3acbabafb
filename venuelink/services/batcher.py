"""
BatchScheduler - coalesces same-window reads into one downstream call.

The first enqueue for a batch key opens a window and arms its timer. Every
enqueue for that key before the timer fires joins the window. When it fires
the window leaves the active map first, so new enqueues open a fresh window
while the executor for the closed one is still running.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from loguru import logger

from venuelink.services.errors import BatchItemMissingError
from venuelink.services.timers import DelayedTask, TaskScheduler

BatchExecutor = Callable[[list[str]], Awaitable[Mapping[str, Any]]]


@dataclass
class BatchWindow:
    """Requests collected for one batch key."""

    batch_key: str
    executor: BatchExecutor
    opened_at: float = field(default_factory=time.monotonic)
    pending: list[tuple[str, asyncio.Future[Any]]] = field(default_factory=list)
    timer: DelayedTask | None = None

    @property
    def item_keys(self) -> list[str]:
        # Unique, in first-enqueue order
        return list(dict.fromkeys(key for key, _ in self.pending))


class BatchScheduler:
    """
    Usage:
        batcher = BatchScheduler(scheduler, delay=0.05)

        async def load_items(ids: list[str]) -> dict[str, dict]:
            response = await api.post("/menu-items/batch", {"ids": ids})
            return {item["id"]: item for item in response.data}

        item = await batcher.enqueue("menu-items", "42", load_items)
    """

    def __init__(
        self,
        scheduler: TaskScheduler | None = None,
        delay: float = 0.05,
        debug: bool = False,
    ):
        self._scheduler = scheduler or TaskScheduler()
        self._delay = delay
        self._debug = debug
        self._windows: dict[str, BatchWindow] = {}
        self._running: set[asyncio.Task[None]] = set()
        self.executions = 0

    def enqueue(
        self,
        batch_key: str,
        item_key: str,
        executor: BatchExecutor,
    ) -> "asyncio.Future[Any]":
        """
        Add ``item_key`` to the open window for ``batch_key``.

        Returns a future resolved with the item's result once the whole batch
        has been executed. The executor of the window's first enqueue is the
        one that runs.
        """
        window = self._windows.get(batch_key)
        if window is None:
            window = BatchWindow(batch_key=batch_key, executor=executor)
            self._windows[batch_key] = window
            window.timer = self._scheduler.schedule(
                self._delay, lambda: self._close_window(window)
            )
            self._log(f"OPEN: {batch_key}")

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        window.pending.append((item_key, future))
        return future

    def _close_window(self, window: BatchWindow) -> None:
        if self._windows.get(window.batch_key) is window:
            del self._windows[window.batch_key]
        task = asyncio.ensure_future(self._execute(window))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _execute(self, window: BatchWindow) -> None:
        keys = window.item_keys
        self.executions += 1
        try:
            results = await window.executor(keys)
            if not isinstance(results, Mapping):
                raise TypeError(
                    f"Batch executor must return a mapping, got {type(results).__name__}"
                )
        except asyncio.CancelledError:
            self._reject_all(window, asyncio.CancelledError())
            raise
        except Exception as e:
            logger.error(f"Batch request failed for {window.batch_key}: {e}")
            self._reject_all(window, e)
            return

        for item_key, future in window.pending:
            if future.done():
                continue
            if item_key in results:
                future.set_result(results[item_key])
            else:
                future.set_exception(BatchItemMissingError(window.batch_key, item_key))

        logger.debug(
            f"Batch request executed: {window.batch_key} "
            f"requests={len(window.pending)} results={len(results)}"
        )

    def _reject_all(self, window: BatchWindow, error: BaseException) -> None:
        for _, future in window.pending:
            if not future.done():
                if isinstance(error, asyncio.CancelledError):
                    future.cancel()
                else:
                    future.set_exception(error)

    def has_open_window(self, batch_key: str) -> bool:
        return batch_key in self._windows

    async def close(self) -> None:
        """Cancel open windows and running executors; their waiters are cancelled."""
        windows = list(self._windows.values())
        self._windows.clear()
        for window in windows:
            if window.timer:
                window.timer.cancel()
            self._reject_all(window, asyncio.CancelledError())

        running = list(self._running)
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[BatchScheduler] {message}")
