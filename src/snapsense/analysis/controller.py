"""Process-wide analysis context: the model handle and the single live session.

The controller implements the two entry actions (camera, upload). Starting a
new session always discards the previous one, and its source, before the
new loop schedules anything.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from snapsense.analysis.loop import PredictionLoop
from snapsense.analysis.scheduler import AsyncioScheduler
from snapsense.analysis.session import AnalysisSession
from snapsense.errors import DeviceUnavailable
from snapsense.sources import camera, upload
from snapsense.sources.base import SourceMode

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

    from snapsense.analysis.noise import Noise
    from snapsense.analysis.scheduler import Scheduler
    from snapsense.analysis.session import SessionSnapshot
    from snapsense.config import Settings
    from snapsense.ml.classifier import PredictionEntry
    from snapsense.ml.inference import InferencePool
    from snapsense.ml.model_loader import ModelLoader
    from snapsense.sources.base import ImageSource

logger = logging.getLogger(__name__)


class AnalysisController:
    """Owns the active session; everything runs on one event loop."""

    def __init__(
        self,
        settings: Settings,
        loader: ModelLoader,
        pool: InferencePool,
        scheduler: Scheduler | None = None,
        noise: Noise | None = None,
        camera_factory: Callable[..., ImageSource] | None = None,
    ) -> None:
        self._settings = settings
        self._loader = loader
        self._pool = pool
        self._scheduler = scheduler or AsyncioScheduler()
        self._noise = noise
        self._camera_factory = camera_factory or camera.acquire

        self._session: AnalysisSession | None = None
        self._loop: PredictionLoop | None = None
        self._source: ImageSource | None = None
        self._start_lock = asyncio.Lock()

    # -- Public API ---------------------------------------------------------

    @property
    def session(self) -> AnalysisSession | None:
        return self._session

    @property
    def loop(self) -> PredictionLoop | None:
        return self._loop

    @property
    def source(self) -> ImageSource | None:
        return self._source

    async def predict(
        self,
        frame: NDArray[np.uint8],
        should_run: Callable[[], bool] | None = None,
    ) -> list[PredictionEntry]:
        """Classify a frame on the inference pool.

        Raises:
            ModelUnavailable: If the model is not loaded.
            PredictionSkipped: If ``should_run`` turned False while the call was queued.
        """
        classifier = self._loader.require()
        return await self._pool.run(classifier.predict, frame, should_run=should_run)

    async def start_camera(self) -> AnalysisSession:
        """Start a camera session.

        Raises:
            ModelUnavailable: If the model is not loaded.
            DeviceUnavailable: If the camera cannot be opened; the new session
                stays idle and no loop starts.
        """
        self._loader.require()
        settings = self._settings
        async with self._start_lock:
            session = self._reset(SourceMode.CAMERA)
            try:
                source = await asyncio.to_thread(
                    self._camera_factory,
                    width=settings.camera_width,
                    height=settings.camera_height,
                    mirror=settings.camera_mirror,
                    index=settings.camera_index,
                )
            except DeviceUnavailable as exc:
                session.error = str(exc)
                logger.warning("Camera session %s not started: %s", session.session_id, exc)
                raise

            self._run(session, source, jitter_max=settings.camera_jitter)
        return session

    async def start_upload(self, file_bytes: bytes) -> AnalysisSession:
        """Start an upload session from raw image bytes.

        Raises:
            ModelUnavailable: If the model is not loaded.
            InvalidImage: If the bytes cannot be decoded; the session stays idle.
        """
        self._loader.require()
        settings = self._settings
        async with self._start_lock:
            session = self._reset(SourceMode.UPLOAD)
            try:
                source = await asyncio.to_thread(
                    upload.decode,
                    file_bytes,
                    size=settings.upload_size,
                    max_file_size=settings.max_file_size,
                    max_image_pixels=settings.max_image_pixels,
                )
            except ValueError as exc:
                session.error = str(exc)
                logger.warning("Upload session %s not started: %s", session.session_id, exc)
                raise

            self._run(session, source, jitter_max=settings.upload_jitter)
        return session

    def snapshot(self) -> SessionSnapshot | None:
        if self._session is None:
            return None
        return self._session.snapshot(self._scheduler.now())

    def shutdown(self) -> None:
        """Discard the active session and release its source."""
        self._discard_current()

    # -- Internal -----------------------------------------------------------

    def _reset(self, mode: SourceMode) -> AnalysisSession:
        self._discard_current()
        self._session = AnalysisSession(mode=mode)
        logger.info("New %s session %s", mode, self._session.session_id)
        return self._session

    def _discard_current(self) -> None:
        if self._loop is not None:
            self._loop.discard()
            self._loop = None
        if self._source is not None:
            self._source.release()
            self._source = None
        self._session = None

    def _run(self, session: AnalysisSession, source: ImageSource, jitter_max: float) -> None:
        self._source = source
        self._loop = PredictionLoop(
            session,
            source,
            self.predict,
            self._scheduler,
            jitter_max=jitter_max,
            tick_interval=self._settings.tick_interval,
            duration=self._settings.analysis_duration,
            noise=self._noise,
        )
        self._loop.start()
