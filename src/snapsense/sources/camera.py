"""OpenCV webcam source.

A daemon reader thread keeps the most recent frame in a small locked buffer;
the prediction loop reads it without blocking.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

import cv2

from snapsense.errors import DeviceUnavailable, FrameUnavailable
from snapsense.sources.base import SourceMode

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# Consecutive failed reads before the device is considered lost.
MAX_READ_FAILURES: int = 10
READ_RETRY_DELAY_SECONDS: float = 0.05
IDLE_DELAY_SECONDS: float = 0.005


class CameraStream:
    """Live frame buffer fed by an OpenCV capture device."""

    def __init__(self, capture: cv2.VideoCapture, width: int, height: int, mirror: bool) -> None:
        self._capture = capture
        self._width = width
        self._height = height
        self._mirror = mirror

        self._lock = threading.Lock()
        self._frame: NDArray[np.uint8] | None = None
        self._lost = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def mode(self) -> SourceMode:
        return SourceMode.CAMERA

    @property
    def is_lost(self) -> bool:
        with self._lock:
            return self._lost

    def current_frame(self) -> NDArray[np.uint8]:
        with self._lock:
            if self._lost:
                raise FrameUnavailable("Camera device lost")
            if self._frame is None:
                raise FrameUnavailable("Camera has not produced a frame")
            return self._frame.copy()

    def release(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
            self._thread = None
        with self._lock:
            self._frame = None
        if self._capture.isOpened():
            self._capture.release()
            logger.info("Camera released")

    def start(self) -> None:
        """Read the first frame and start the reader thread.

        Raises:
            DeviceUnavailable: If the device does not deliver a frame.
        """
        if not self._read_once():
            raise DeviceUnavailable("Camera did not deliver a frame")
        self._thread = threading.Thread(target=self._read_loop, name="camera-reader", daemon=True)
        self._thread.start()

    # -- Internal -----------------------------------------------------------

    def _read_once(self) -> bool:
        ok, raw = self._capture.read()
        if not ok or raw is None:
            return False
        frame = self._convert(raw)
        with self._lock:
            self._frame = frame
        return True

    def _read_loop(self) -> None:
        failures = 0
        while not self._stop.is_set():
            if self._read_once():
                failures = 0
                self._stop.wait(IDLE_DELAY_SECONDS)
                continue

            failures += 1
            if failures >= MAX_READ_FAILURES:
                logger.error("Camera stopped delivering frames after %d failed reads", failures)
                with self._lock:
                    self._lost = True
                return
            self._stop.wait(READ_RETRY_DELAY_SECONDS)

    def _convert(self, raw: NDArray[np.uint8]) -> NDArray[np.uint8]:
        rgb = cv2.cvtColor(raw, cv2.COLOR_BGR2RGB)
        if rgb.shape[1] != self._width or rgb.shape[0] != self._height:
            rgb = cv2.resize(rgb, (self._width, self._height), interpolation=cv2.INTER_AREA)
        if self._mirror:
            rgb = cv2.flip(rgb, 1)
        return rgb


def acquire(width: int, height: int, mirror: bool, index: int = 0) -> CameraStream:
    """Open a webcam and start buffering frames.

    Args:
        width: Output frame width in pixels.
        height: Output frame height in pixels.
        mirror: Flip frames horizontally (selfie view).
        index: OpenCV device index.

    Raises:
        DeviceUnavailable: If the device cannot be opened or yields no frame.
    """
    capture = cv2.VideoCapture(index)
    if not capture.isOpened():
        capture.release()
        raise DeviceUnavailable(f"Could not open camera device {index}")

    capture.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
    capture.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))

    stream = CameraStream(capture, width=width, height=height, mirror=mirror)
    try:
        stream.start()
    except DeviceUnavailable:
        capture.release()
        raise
    logger.info("Camera %d acquired (%dx%d, mirror=%s)", index, width, height, mirror)
    return stream
