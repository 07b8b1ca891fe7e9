"""Timers and background tasks on the single event loop."""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional, Protocol, Set

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None:
        """Cancel the timer. Cancelling twice or after it fired is a no-op."""
        ...


class Scheduler(Protocol):
    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        ...

    def call_every(self, interval_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        ...

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        ...


class RepeatingTimer:
    """Calls `callback` every `interval_seconds` until cancelled."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        interval_seconds: float,
        callback: Callable[[], None],
    ):
        self._loop = loop
        self._interval = interval_seconds
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False
        self._schedule()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _schedule(self) -> None:
        self._handle = self._loop.call_later(self._interval, self._run)

    def _run(self) -> None:
        if self._cancelled:
            return
        try:
            self._callback()
        except Exception:
            logger.exception("Repeating timer callback failed")
        if not self._cancelled:
            self._schedule()

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class AsyncioScheduler:
    """Scheduler bound to the running asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        return self._get_loop().call_later(delay_seconds, callback)

    def call_every(self, interval_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        return RepeatingTimer(self._get_loop(), interval_seconds, callback)

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = self._get_loop().create_task(coro)
        # Keep a reference until done so the task is not garbage collected
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
