"""Timer scheduling for the signaling controllers.

Controllers never sleep and never reschedule themselves recursively.  They
arm timers through a `Scheduler` and receive a `Timeout` event when one
fires.  `AsyncioScheduler` backs this with the running event loop; tests
substitute a manual clock.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Union


logger = logging.getLogger("sightline")

TimerCallback = Callable[[], Union[Awaitable[None], None]]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle: ...

    def time(self) -> float: ...


class _AsyncioTimer:
    def __init__(self, scheduler: "AsyncioScheduler", callback: TimerCallback) -> None:
        self._scheduler = scheduler
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        result = self._callback()
        if inspect.isawaitable(result):
            self._scheduler._track(asyncio.ensure_future(result))


class AsyncioScheduler:
    """Scheduler running callbacks on an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._tasks: set[asyncio.Future[Any]] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def time(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: TimerCallback) -> _AsyncioTimer:
        timer = _AsyncioTimer(self, callback)
        timer._handle = self.loop.call_later(max(0.0, delay), timer._fire)
        return timer

    def _track(self, future: asyncio.Future[Any]) -> None:
        self._tasks.add(future)
        future.add_done_callback(self._on_task_done)

    def _on_task_done(self, future: asyncio.Future[Any]) -> None:
        self._tasks.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Timer callback failed: %s", exc, exc_info=exc)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
