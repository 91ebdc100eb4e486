"""Shared test doubles: a virtual-clock scheduler, fake classifier and loader."""

from __future__ import annotations

import asyncio
import io
import itertools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from snapsense.errors import FrameUnavailable, ModelUnavailable, PredictionSkipped
from snapsense.ml.classifier import PredictionEntry
from snapsense.ml.model_loader import ModelSource, ModelStatus
from snapsense.sources.base import SourceMode

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from numpy.typing import NDArray


async def settle(rounds: int = 20) -> None:
    """Let pending callbacks on the event loop run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Scheduler with a virtual clock
# ---------------------------------------------------------------------------


@dataclass
class _Timer:
    start: float
    interval: float
    callback: Callable[[], Awaitable[None]]
    repeat: bool
    order: int
    fired: int = 0
    cancelled: bool = False
    finished: bool = False

    @property
    def when(self) -> float:
        return round(self.start + self.interval * (self.fired + 1), 9)

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Fires callbacks only when the test advances time.

    Timers due at the same instant fire in registration order.
    """

    def __init__(self) -> None:
        self._now = 0.0
        self._timers: list[_Timer] = []
        self._order = itertools.count()
        self.tasks: list[asyncio.Future[None]] = []

    def now(self) -> float:
        return self._now

    def every(self, interval: float, callback: Callable[[], Awaitable[None]]) -> _Timer:
        return self._add(interval, callback, repeat=True)

    def after(self, delay: float, callback: Callable[[], Awaitable[None]]) -> _Timer:
        return self._add(delay, callback, repeat=False)

    @property
    def active_timers(self) -> list[_Timer]:
        return [t for t in self._timers if not t.cancelled and not t.finished]

    async def advance(self, seconds: float) -> None:
        target = round(self._now + seconds, 9)
        while True:
            due = [t for t in self.active_timers if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.order))
            self._now = timer.when
            timer.fired += 1
            if not timer.repeat:
                timer.finished = True
            self.tasks.append(asyncio.ensure_future(timer.callback()))
            await settle()
        self._now = target
        await settle()

    def _add(self, delay: float, callback: Callable[[], Awaitable[None]], *, repeat: bool) -> _Timer:
        timer = _Timer(start=self._now, interval=delay, callback=callback, repeat=repeat, order=next(self._order))
        self._timers.append(timer)
        return timer


# ---------------------------------------------------------------------------
# Classifier, loader, pool and sources
# ---------------------------------------------------------------------------


def entries(*pairs: tuple[str, float]) -> list[PredictionEntry]:
    return [PredictionEntry(label=label, probability=p) for label, p in pairs]


class FakeClassifier:
    """Returns scripted predictions; the last script entry repeats."""

    def __init__(self, *scripted: list[PredictionEntry] | Exception) -> None:
        self._scripted = list(scripted) or [entries(("healthy", 0.7), ("at_risk", 0.3))]
        self.calls = 0

    @property
    def labels(self) -> list[str]:
        first = next(s for s in self._scripted if isinstance(s, list))
        return [e.label for e in first]

    def predict(self, frame: NDArray[np.uint8]) -> list[PredictionEntry]:
        index = min(self.calls, len(self._scripted) - 1)
        self.calls += 1
        result = self._scripted[index]
        if isinstance(result, Exception):
            raise result
        return list(result)


@dataclass
class FakeLoader:
    classifier: FakeClassifier | None = None
    status: ModelStatus = ModelStatus.READY
    error: str | None = None
    source: ModelSource | None = field(
        default_factory=lambda: ModelSource(
            model_url="https://models.example/model.onnx",
            metadata_url="https://models.example/metadata.json",
        )
    )

    @property
    def is_ready(self) -> bool:
        return self.classifier is not None

    def require(self) -> FakeClassifier:
        if self.classifier is None:
            raise ModelUnavailable(f"Model is not ready (status={self.status})")
        return self.classifier


class InlinePool:
    """Runs classifier calls directly on the event loop."""

    active_count = 0
    queue_depth = 0

    async def run(
        self,
        func: Callable[..., object],
        *args: object,
        should_run: Callable[[], bool] | None = None,
    ) -> object:
        if should_run is not None and not should_run():
            raise PredictionSkipped("Prediction no longer needed")
        return func(*args)

    def shutdown(self) -> None:
        return None


class FakeSource:
    """Image source whose frame can be switched off to simulate a lost device."""

    def __init__(self, mode: SourceMode = SourceMode.CAMERA, size: int = 300) -> None:
        self._mode = mode
        self._frame = np.zeros((size, size, 3), dtype=np.uint8)
        self.available = True
        self.released = False

    @property
    def mode(self) -> SourceMode:
        return self._mode

    def current_frame(self) -> NDArray[np.uint8]:
        if not self.available:
            raise FrameUnavailable("device lost")
        return self._frame

    def release(self) -> None:
        self.released = True


def png_bytes(width: int, height: int, color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()
