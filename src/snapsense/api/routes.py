"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status
from fastapi.responses import Response

from snapsense.api.deps import get_controller, get_inference_pool, get_model_loader, get_settings
from snapsense.api.middleware import verify_api_key
from snapsense.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelResponse,
    SessionResponse,
)
from snapsense.errors import ModelUnavailable
from snapsense.sources.base import encode_jpeg

if TYPE_CHECKING:
    from snapsense.analysis.controller import AnalysisController

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _current_snapshot(controller: AnalysisController) -> SessionResponse:
    snapshot = controller.snapshot()
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No analysis session")
    return SessionResponse.from_snapshot(snapshot)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service and model status."""
    settings = get_settings(request)
    pool = get_inference_pool(request)
    loader = get_model_loader(request)
    session = get_controller(request).session
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_status=str(loader.status),
        model_error=loader.error,
        session_state=str(session.state) if session is not None else None,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/model",
    response_model=ModelResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Describe the loaded classifier",
)
async def model_info(request: Request) -> ModelResponse:
    """Return the classifier's labels and where it was loaded from."""
    loader = get_model_loader(request)
    classifier = loader.require()
    source = loader.source
    if source is None:
        raise ModelUnavailable("Model source unknown")
    return ModelResponse(
        labels=classifier.labels,
        model_url=source.model_url,
        metadata_url=source.metadata_url,
    )


@router.post(
    "/sessions/camera",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Start a live camera analysis",
)
async def start_camera_session(request: Request) -> SessionResponse:
    """Discard any running session and start analysing the webcam."""
    controller = get_controller(request)
    await controller.start_camera()
    return _current_snapshot(controller)


@router.post(
    "/sessions/upload",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Start an analysis of an uploaded image",
)
async def start_upload_session(request: Request, file: UploadFile) -> SessionResponse:
    """Discard any running session and start analysing the uploaded image."""
    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Expected an image upload, got '{content_type or 'unknown'}'",
        )

    settings = get_settings(request)
    # One byte past the limit is enough to detect an oversized upload.
    data = await file.read(settings.max_file_size + 1)

    controller = get_controller(request)
    await controller.start_upload(data)
    return _current_snapshot(controller)


@router.get(
    "/sessions/current",
    response_model=SessionResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Current analysis state",
)
async def current_session(request: Request) -> SessionResponse:
    """Return live predictions, and the final result once the analysis is done."""
    return _current_snapshot(get_controller(request))


@router.get(
    "/sessions/current/frame",
    response_class=Response,
    responses={
        status.HTTP_200_OK: {"content": {"image/jpeg": {}}},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Frame being analysed",
)
async def current_frame(request: Request) -> Response:
    """Return the current frame as JPEG, as it is fed to the classifier."""
    source = get_controller(request).source
    if source is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No image source")
    return Response(content=encode_jpeg(source.current_frame()), media_type="image/jpeg")
