"""Periodic callback scheduling.

The controller only relies on ``schedule(callback, period) -> handle``
and ``handle.cancel()``. Tests swap in a manual scheduler to drive ticks
without sleeping.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class ScheduledHandle(Protocol):
    @property
    def cancelled(self) -> bool: ...

    def cancel(self) -> None: ...


TickCallback = Callable[[ScheduledHandle], Awaitable[None]]


class Scheduler(Protocol):
    def schedule(self, callback: TickCallback, period: float) -> ScheduledHandle: ...


class AsyncioHandle:
    """Cancellable recurring task. Cancelling twice is safe."""

    def __init__(self, callback: TickCallback, period: float):
        self._callback = callback
        self._period = period
        self._cancelled = False
        self._task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        task = self._task
        # A callback cancelling its own handle must finish what it is doing
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        try:
            while not self._cancelled:
                await asyncio.sleep(self._period)
                if self._cancelled:
                    break
                await self._callback(self)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Scheduled callback failed; stopping timer")
            self._cancelled = True


class AsyncioScheduler:
    """Runs each schedule as its own task on the running event loop."""

    def schedule(self, callback: TickCallback, period: float) -> AsyncioHandle:
        handle = AsyncioHandle(callback, period)
        handle.start()
        return handle
