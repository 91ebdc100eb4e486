"""Inference concurrency layer.

Architecture:
    event loop -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> classifier.predict

Classifier calls are blocking; they run on worker threads while ticks,
deadlines and session updates stay on the event loop. A call waits at most
one analysis window for a slot. Callers may pass a ``should_run`` guard that
is checked once the slot is held, so work queued behind a slow classifier is
dropped instead of run when its result can no longer be used.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from snapsense.errors import PredictionSkipped

if TYPE_CHECKING:
    from collections.abc import Callable

    from snapsense.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Manages the semaphore and thread pool for classifier calls."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="classifier",
        )
        self._acquire_timeout = settings.analysis_duration
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(
        self,
        func: Callable[..., T],
        *args: object,
        should_run: Callable[[], bool] | None = None,
    ) -> T:
        """Run a blocking function on the classifier threads.

        The slot is held until the worker thread returns, even when the
        awaiting coroutine is cancelled first.

        Raises:
            TimeoutError: If no slot frees up within one analysis window.
            PredictionSkipped: If ``should_run`` returns False once a slot is held.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._acquire_timeout)
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        if should_run is not None and not should_run():
            self._semaphore.release()
            raise PredictionSkipped("Prediction no longer needed")

        with self._counter_lock:
            self._active_count += 1
        loop = asyncio.get_running_loop()
        try:
            work = self._executor.submit(func, *args)
        except RuntimeError:
            self._release()
            raise
        work.add_done_callback(lambda _: self._release_from_worker(loop))
        return await asyncio.wrap_future(work)

    @property
    def active_count(self) -> int:
        """Number of classifier calls currently on a worker thread."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of calls waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        logger.debug("Shutting down inference pool")
        self._executor.shutdown(wait=True)

    # -- Internal -----------------------------------------------------------

    def _release(self) -> None:
        with self._counter_lock:
            self._active_count -= 1
        self._semaphore.release()

    def _release_from_worker(self, loop: asyncio.AbstractEventLoop) -> None:
        # Runs on the worker thread; the semaphore belongs to the event loop.
        try:
            loop.call_soon_threadsafe(self._release)
        except RuntimeError:
            # Event loop already closed.
            with self._counter_lock:
                self._active_count -= 1
