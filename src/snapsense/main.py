"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from snapsense.analysis.controller import AnalysisController
from snapsense.api.routes import router
from snapsense.config import get_settings
from snapsense.errors import DeviceUnavailable, FrameUnavailable, InvalidImage, ModelLoadError, ModelUnavailable
from snapsense.ml.inference import InferencePool
from snapsense.ml.model_loader import ModelLoader

logger = logging.getLogger(__name__)


async def _load_model(loader: ModelLoader) -> None:
    try:
        await loader.load()
    except ModelLoadError:
        logger.warning("Analysis is disabled until the service is restarted with a working model source")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SnapSense (device=%s, max_concurrent=%s, tick=%.3fs, duration=%.3fs)",
        settings.device,
        settings.max_concurrent,
        settings.tick_interval,
        settings.analysis_duration,
    )

    inference_pool = InferencePool(settings)
    model_loader = ModelLoader(settings)
    controller = AnalysisController(settings, model_loader, inference_pool)
    app.state.inference_pool = inference_pool
    app.state.model_loader = model_loader
    app.state.controller = controller

    # The model loads in the background; session starts are rejected until it is ready.
    load_task = asyncio.create_task(_load_model(model_loader), name="snapsense-model-load")

    logger.info("SnapSense ready")
    yield

    logger.info("Shutting down SnapSense")
    load_task.cancel()
    with suppress(asyncio.CancelledError):
        await load_task
    controller.shutdown()
    inference_pool.shutdown()
    logger.info("SnapSense shutdown complete")


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def _register_error_handlers(application: FastAPI) -> None:
    @application.exception_handler(ModelUnavailable)
    async def _model_unavailable(request: Request, exc: ModelUnavailable) -> JSONResponse:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)

    @application.exception_handler(DeviceUnavailable)
    async def _device_unavailable(request: Request, exc: DeviceUnavailable) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, exc)

    @application.exception_handler(FrameUnavailable)
    async def _frame_unavailable(request: Request, exc: FrameUnavailable) -> JSONResponse:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)

    @application.exception_handler(InvalidImage)
    async def _invalid_image(request: Request, exc: InvalidImage) -> JSONResponse:
        if exc.too_large:
            return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, exc)
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, exc)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapSense",
        description="Live and single-image classification with a pre-trained model",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(application)
    application.include_router(router)
    return application


app = create_app()
