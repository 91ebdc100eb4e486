"""Prediction loop: the idle -> running -> finalizing -> done state machine.

While running, a periodic tick classifies the source's current frame and
publishes a jittered copy of the result. At the deadline the tick is
cancelled and one last, unperturbed prediction becomes the final result.

Ticks may overlap when the classifier is slower than the tick interval.
Every tick takes a sequence number when it fires; a result is applied only
if nothing newer has been applied yet and the session is still running.
The predictor receives a guard so that ticks still queued for the classifier
when the live phase ends are dropped before they run, leaving the worker
free for the final prediction.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, TypeAlias

from snapsense.analysis.noise import perturb, uniform_noise
from snapsense.analysis.session import AnalysisState, FinalResult
from snapsense.errors import FrameUnavailable, PredictionSkipped

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import numpy as np
    from numpy.typing import NDArray

    from snapsense.analysis.noise import Noise
    from snapsense.analysis.scheduler import Scheduler, TaskHandle
    from snapsense.analysis.session import AnalysisSession
    from snapsense.ml.classifier import PredictionEntry
    from snapsense.sources.base import ImageSource

    Predictor: TypeAlias = Callable[[NDArray[np.uint8], Callable[[], bool]], Awaitable[list[PredictionEntry]]]

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL: float = 0.3
DEFAULT_DURATION: float = 3.0


class PredictionLoop:
    """Drives one AnalysisSession from start to its final result."""

    def __init__(
        self,
        session: AnalysisSession,
        source: ImageSource,
        predict: Predictor,
        scheduler: Scheduler,
        *,
        jitter_max: float,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        duration: float = DEFAULT_DURATION,
        noise: Noise | None = None,
    ) -> None:
        self._session = session
        self._source = source
        self._predict = predict
        self._scheduler = scheduler
        self._jitter_max = jitter_max
        self._tick_interval = tick_interval
        self._duration = duration
        self._noise = noise or uniform_noise()

        self._issued_seq = 0
        self._applied_seq = 0
        self._tick_handle: TaskHandle | None = None
        self._deadline_handle: TaskHandle | None = None
        self._discarded = False
        self._finished = asyncio.Event()

    # -- Public API ---------------------------------------------------------

    @property
    def session(self) -> AnalysisSession:
        return self._session

    @property
    def source(self) -> ImageSource:
        return self._source

    @property
    def discarded(self) -> bool:
        return self._discarded

    def start(self) -> None:
        """Enter the running state and schedule ticks plus the deadline."""
        if self._session.state is not AnalysisState.IDLE:
            raise RuntimeError(f"Session {self._session.session_id} already {self._session.state}")

        self._session.mark_started(self._scheduler.now())
        self._tick_handle = self._scheduler.every(self._tick_interval, self._tick)
        self._deadline_handle = self._scheduler.after(self._duration, self._finalize)
        logger.info(
            "Session %s started (mode=%s, tick=%.3fs, duration=%.3fs, jitter_max=%.2f)",
            self._session.session_id,
            self._session.mode,
            self._tick_interval,
            self._duration,
            self._jitter_max,
        )

    async def wait(self) -> AnalysisSession:
        """Wait until the session is done or discarded."""
        await self._finished.wait()
        return self._session

    def discard(self) -> None:
        """Abandon the session; late completions are ignored from now on."""
        if self._discarded:
            return
        self._discarded = True
        self._cancel_ticks()
        if self._deadline_handle is not None and self._session.state is not AnalysisState.DONE:
            self._deadline_handle.cancel()
        self._finished.set()
        logger.info("Session %s discarded in state %s", self._session.session_id, self._session.state)

    # -- Internal -----------------------------------------------------------

    @property
    def _accepting_ticks(self) -> bool:
        return not self._discarded and self._session.state is AnalysisState.RUNNING

    def _wants(self, seq: int) -> bool:
        """Whether tick ``seq`` could still be displayed if it ran now."""
        return self._accepting_ticks and seq > self._applied_seq

    def _cancel_ticks(self) -> None:
        if self._tick_handle is not None:
            self._tick_handle.cancel()

    async def _tick(self) -> None:
        if not self._accepting_ticks:
            return

        self._issued_seq += 1
        seq = self._issued_seq
        session = self._session
        session.tick_count += 1

        try:
            frame = self._source.current_frame()
        except FrameUnavailable as exc:
            session.skipped_ticks += 1
            logger.warning("Session %s tick %d skipped: %s", session.session_id, seq, exc)
            return

        try:
            entries = await self._predict(frame, lambda: self._wants(seq))
        except PredictionSkipped:
            session.dropped_results += 1
            logger.debug("Session %s tick %d no longer needed when a worker freed up", session.session_id, seq)
            return
        except Exception as exc:
            logger.exception("Session %s tick %d prediction failed", session.session_id, seq)
            if self._accepting_ticks:
                session.error = f"{type(exc).__name__}: {exc}"
            return

        if not self._accepting_ticks:
            logger.debug("Session %s tick %d finished after the live phase; dropped", session.session_id, seq)
            return
        if seq <= self._applied_seq:
            session.dropped_results += 1
            logger.debug("Session %s tick %d superseded by tick %d; dropped", session.session_id, seq, self._applied_seq)
            return

        self._applied_seq = seq
        session.latest_predictions = perturb(entries, self._jitter_max, self._noise)

    async def _finalize(self) -> None:
        session = self._session
        if self._discarded or session.state is not AnalysisState.RUNNING:
            return

        self._cancel_ticks()
        session.state = AnalysisState.FINALIZING

        final_entries: list[PredictionEntry] = []
        final_result: FinalResult | None = None
        error: str | None = None
        try:
            frame = self._source.current_frame()
            final_entries = list(await self._predict(frame, lambda: not self._discarded))
            final_result = FinalResult.from_predictions(final_entries)
        except PredictionSkipped:
            return
        except FrameUnavailable as exc:
            error = f"No frame for the final prediction: {exc}"
            logger.error("Session %s final prediction skipped: %s", session.session_id, exc)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Session %s final prediction failed", session.session_id)

        if self._discarded:
            return

        session.latest_predictions = final_entries if final_result is not None else []
        session.final_result = final_result
        if error is not None:
            session.error = error
        session.elapsed_seconds = round(self._scheduler.now() - (session.started_at or 0.0), 2)
        session.state = AnalysisState.DONE
        self._finished.set()

        logger.info(
            "Session %s done in %.2fs after %d ticks: %s",
            session.session_id,
            session.elapsed_seconds,
            session.tick_count,
            final_result.format() if final_result is not None else "unavailable",
        )
