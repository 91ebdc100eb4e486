"""Timer abstraction for the prediction loop.

Two kinds of task: a periodic task whose callbacks may overlap (each firing
is spawned and not awaited, like a browser interval), and a one-shot
deadline task. Both are cancellable through the returned handle.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class TaskHandle(Protocol):
    def cancel(self) -> None:
        """Stop the task; a periodic task schedules no further callbacks."""
        ...

    @property
    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    """Clock plus timers, injected into the prediction loop."""

    def now(self) -> float:
        """Return monotonic time in seconds."""
        ...

    def every(self, interval: float, callback: Callable[[], Awaitable[None]]) -> TaskHandle:
        """Fire ``callback`` every ``interval`` seconds, first after one interval."""
        ...

    def after(self, delay: float, callback: Callable[[], Awaitable[None]]) -> TaskHandle:
        """Fire ``callback`` once after ``delay`` seconds."""
        ...


class _AsyncioHandle:
    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self) -> None:
        self._spawned: set[asyncio.Task[None]] = set()

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def every(self, interval: float, callback: Callable[[], Awaitable[None]]) -> TaskHandle:
        async def _periodic() -> None:
            loop = asyncio.get_running_loop()
            next_at = loop.time() + interval
            while True:
                await asyncio.sleep(max(0.0, next_at - loop.time()))
                next_at += interval
                self._spawn(callback())

        return _AsyncioHandle(self._track(asyncio.create_task(_periodic(), name="snapsense-tick")))

    def after(self, delay: float, callback: Callable[[], Awaitable[None]]) -> TaskHandle:
        async def _deadline() -> None:
            await asyncio.sleep(delay)
            await callback()

        return _AsyncioHandle(self._track(asyncio.create_task(_deadline(), name="snapsense-deadline")))

    def _spawn(self, awaitable: Awaitable[None]) -> None:
        self._track(asyncio.ensure_future(awaitable))

    def _track(self, task: asyncio.Task[None]) -> asyncio.Task[None]:
        self._spawned.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._spawned.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled callback %s failed", task.get_name(), exc_info=exc)
