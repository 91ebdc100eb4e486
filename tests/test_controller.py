"""Tests for the analysis controller (session lifecycle across modes)."""

from __future__ import annotations

import pytest
from conftest import FakeClassifier, FakeLoader, FakeSource, InlinePool, ManualScheduler, entries, png_bytes

from snapsense.analysis.controller import AnalysisController
from snapsense.analysis.noise import zero_noise
from snapsense.analysis.session import AnalysisState, FinalResult
from snapsense.config import Settings
from snapsense.errors import DeviceUnavailable, InvalidImage, ModelUnavailable
from snapsense.ml.model_loader import ModelStatus
from snapsense.sources.base import SourceMode


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "tick_interval": 0.3,
        "analysis_duration": 3.0,
        "camera_jitter": 0.1,
        "upload_jitter": 0.2,
        "upload_size": 300,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


class CameraFactory:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[dict[str, object]] = []
        self.sources: list[FakeSource] = []

    def __call__(self, **kwargs: object) -> FakeSource:
        self.calls.append(kwargs)
        if self.fail:
            raise DeviceUnavailable("Permission denied")
        source = FakeSource(SourceMode.CAMERA)
        self.sources.append(source)
        return source


def _make_controller(
    scheduler: ManualScheduler,
    loader: FakeLoader | None = None,
    camera_factory: CameraFactory | None = None,
    **settings_overrides: object,
) -> AnalysisController:
    return AnalysisController(
        _make_settings(**settings_overrides),
        loader or FakeLoader(classifier=FakeClassifier()),  # type: ignore[arg-type]
        InlinePool(),  # type: ignore[arg-type]
        scheduler=scheduler,
        noise=zero_noise,
        camera_factory=camera_factory or CameraFactory(),
    )


class TestModelUnavailable:
    async def test_camera_rejected_when_model_failed(self, scheduler: ManualScheduler) -> None:
        loader = FakeLoader(classifier=None, status=ModelStatus.FAILED, error="404")
        factory = CameraFactory()
        controller = _make_controller(scheduler, loader, factory)

        with pytest.raises(ModelUnavailable):
            await controller.start_camera()

        assert controller.session is None
        assert factory.calls == []
        assert scheduler.active_timers == []

    async def test_upload_rejected_while_loading(self, scheduler: ManualScheduler) -> None:
        loader = FakeLoader(classifier=None, status=ModelStatus.LOADING)
        controller = _make_controller(scheduler, loader)

        with pytest.raises(ModelUnavailable):
            await controller.start_upload(png_bytes(10, 10))
        assert controller.snapshot() is None


class TestCameraSession:
    async def test_camera_settings_passed_to_factory(self, scheduler: ManualScheduler) -> None:
        factory = CameraFactory()
        controller = _make_controller(
            scheduler, camera_factory=factory, camera_width=320, camera_height=240, camera_mirror=False
        )

        await controller.start_camera()

        assert factory.calls == [{"width": 320, "height": 240, "mirror": False, "index": 0}]

    async def test_camera_session_finalizes_once(self, scheduler: ManualScheduler) -> None:
        controller = _make_controller(scheduler)
        session = await controller.start_camera()
        assert session.state is AnalysisState.RUNNING

        await scheduler.advance(3.0)
        assert session.tick_count == 10
        assert session.final_result == FinalResult(label="healthy", probability=0.7)

        snapshot = controller.snapshot()
        assert snapshot is not None
        assert snapshot.final_result == session.final_result
        assert snapshot.elapsed_seconds == 3.0

    async def test_permission_denied_stays_idle(self, scheduler: ManualScheduler) -> None:
        controller = _make_controller(scheduler, camera_factory=CameraFactory(fail=True))

        with pytest.raises(DeviceUnavailable):
            await controller.start_camera()

        session = controller.session
        assert session is not None
        assert session.state is AnalysisState.IDLE
        assert session.error == "Permission denied"
        assert controller.loop is None
        assert scheduler.active_timers == []

        await scheduler.advance(5.0)
        assert session.tick_count == 0


class TestUploadSession:
    async def test_upload_is_resized_and_finalized_unperturbed(self, scheduler: ManualScheduler) -> None:
        classifier = FakeClassifier(entries(("healthy", 0.55), ("at_risk", 0.45)))
        controller = _make_controller(scheduler, FakeLoader(classifier=classifier))

        session = await controller.start_upload(png_bytes(640, 200))
        source = controller.source
        assert source is not None
        assert source.current_frame().shape == (300, 300, 3)

        await scheduler.advance(3.0)
        assert session.final_result == FinalResult(label="healthy", probability=0.55)
        assert session.latest_predictions == entries(("healthy", 0.55), ("at_risk", 0.45))

    async def test_invalid_upload_stays_idle(self, scheduler: ManualScheduler) -> None:
        controller = _make_controller(scheduler)

        with pytest.raises(InvalidImage):
            await controller.start_upload(b"definitely not an image")

        assert controller.session is not None
        assert controller.session.state is AnalysisState.IDLE
        assert scheduler.active_timers == []


class TestSessionReset:
    async def test_new_session_resets_state_before_first_tick(self, scheduler: ManualScheduler) -> None:
        factory = CameraFactory()
        controller = _make_controller(scheduler, camera_factory=factory)

        first = await controller.start_camera()
        await scheduler.advance(3.0)
        assert first.final_result is not None

        second = await controller.start_upload(png_bytes(50, 50))

        assert second is not first
        assert second.mode is SourceMode.UPLOAD
        assert second.latest_predictions == []
        assert second.final_result is None
        assert second.is_running
        assert second.tick_count == 0
        assert factory.sources[0].released

        snapshot = controller.snapshot()
        assert snapshot is not None
        assert snapshot.predictions == []
        assert snapshot.final_result is None

    async def test_switching_mid_session_discards_old_loop(self, scheduler: ManualScheduler) -> None:
        controller = _make_controller(scheduler)

        first = await controller.start_upload(png_bytes(50, 50))
        await scheduler.advance(1.5)
        first_ticks = first.tick_count

        second = await controller.start_camera()
        await scheduler.advance(3.0)

        assert first.tick_count == first_ticks
        assert first.final_result is None
        assert second.final_result is not None
        assert second.tick_count == 10

    async def test_shutdown_releases_source(self, scheduler: ManualScheduler) -> None:
        factory = CameraFactory()
        controller = _make_controller(scheduler, camera_factory=factory)
        await controller.start_camera()

        controller.shutdown()

        assert factory.sources[0].released
        assert controller.session is None
        assert scheduler.active_timers == []
