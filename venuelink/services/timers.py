"""
TaskScheduler - cancellable delayed tasks on the running event loop.

Backoff sleeps, batch windows, reconnect timers and heartbeats all go through
one scheduler so that a component can cancel everything it started on
teardown.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable

from loguru import logger

SleepFn = Callable[[float], Awaitable[Any]]
Callback = Callable[[], Any]


class DelayedTask:
    """A callback scheduled to run once (or repeatedly) after a delay."""

    def __init__(self, delay: float, repeat: bool = False):
        self.delay = delay
        self.repeat = repeat
        self._task: asyncio.Task[None] | None = None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task is not None and self._task.cancelled()

    def cancel(self) -> bool:
        """Cancel the task. Returns False if it already finished."""
        if self._task is None or self._task.done():
            return False
        self._task.cancel()
        return True

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "done" if self.done else "pending"
        return f"<DelayedTask delay={self.delay} repeat={self.repeat} {state}>"


class TaskScheduler:
    """
    Creates and tracks delayed tasks.

    Usage:
        scheduler = TaskScheduler()

        timer = scheduler.schedule(0.05, flush_batch)
        timer.cancel()

        await scheduler.sleep(2.0)   # backoff
        await scheduler.cancel_all() # teardown
    """

    def __init__(self, sleep: SleepFn | None = None, debug: bool = False):
        self._sleep = sleep or asyncio.sleep
        self._pending: set[DelayedTask] = set()
        self._debug = debug

    async def sleep(self, delay: float) -> None:
        """Suspend the caller for ``delay`` seconds."""
        await self._sleep(delay)

    def schedule(self, delay: float, callback: Callback) -> DelayedTask:
        """Run ``callback`` once after ``delay`` seconds."""
        return self._start(DelayedTask(delay), callback)

    def every(self, interval: float, callback: Callback) -> DelayedTask:
        """Run ``callback`` every ``interval`` seconds until cancelled."""
        return self._start(DelayedTask(interval, repeat=True), callback)

    def _start(self, timer: DelayedTask, callback: Callback) -> DelayedTask:
        timer._task = asyncio.ensure_future(self._run(timer, callback))
        self._pending.add(timer)
        timer._task.add_done_callback(lambda _: self._pending.discard(timer))
        self._log(f"SCHEDULE: {timer!r}")
        return timer

    async def _run(self, timer: DelayedTask, callback: Callback) -> None:
        while True:
            await self._sleep(timer.delay)
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Scheduled callback {callback!r} failed: {e}")
            if not timer.repeat:
                return

    async def cancel_all(self) -> int:
        """Cancel every pending task and wait for them to unwind."""
        current = asyncio.current_task()
        timers = [t for t in self._pending if t._task is not current]
        tasks = [t._task for t in timers if t.cancel() and t._task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self._log(f"CANCEL_ALL: {len(tasks)} tasks cancelled")
        self._pending.clear()
        return len(tasks)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[TaskScheduler] {message}")
