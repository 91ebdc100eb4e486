"""Model loader: resolve, download and open the classifier once per process.

The classifier is published as two resources: the ONNX model and a JSON
metadata document carrying the labels. Both URLs come from configuration,
either directly or resolved from a Hugging Face Hub repository.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from huggingface_hub import hf_hub_url
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode
from pydantic import ValidationError

from snapsense.errors import ModelLoadError, ModelUnavailable
from snapsense.ml.classifier import ModelMetadata, OnnxClassifier

if TYPE_CHECKING:
    from snapsense.config import Settings
    from snapsense.ml.classifier import Classifier

logger = logging.getLogger(__name__)

_DOWNLOAD_CHUNK_SIZE: int = 1 << 16


class ModelStatus(StrEnum):
    PENDING = "pending"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ModelSource:
    """The pair of remote resources that identifies one model version."""

    model_url: str
    metadata_url: str


def resolve_model_source(settings: Settings) -> ModelSource:
    """Work out the model and metadata URLs from settings.

    Explicit URLs win over a Hub repository.

    Raises:
        ModelLoadError: If neither complete URL pair nor repository is configured.
    """
    if settings.model_url and settings.metadata_url:
        return ModelSource(model_url=settings.model_url, metadata_url=settings.metadata_url)

    if settings.model_repo:
        return ModelSource(
            model_url=hf_hub_url(
                repo_id=settings.model_repo,
                filename=settings.model_filename,
                revision=settings.model_revision,
            ),
            metadata_url=hf_hub_url(
                repo_id=settings.model_repo,
                filename=settings.metadata_filename,
                revision=settings.model_revision,
            ),
        )

    raise ModelLoadError(
        "No model source configured: set SNAPSENSE_MODEL_URL and SNAPSENSE_METADATA_URL, or SNAPSENSE_MODEL_REPO"
    )


class ModelLoader:
    """Owns the process-wide classifier handle.

    ``load`` is called once at startup. Until it succeeds, ``require`` raises
    ``ModelUnavailable``; after a failure it keeps raising it.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._models_dir = Path(settings.models_dir)

        self._status = ModelStatus.PENDING
        self._classifier: Classifier | None = None
        self._source: ModelSource | None = None
        self._error: str | None = None

    # -- Public API ---------------------------------------------------------

    @property
    def status(self) -> ModelStatus:
        return self._status

    @property
    def error(self) -> str | None:
        """Reason of the last load failure, if any."""
        return self._error

    @property
    def source(self) -> ModelSource | None:
        return self._source

    @property
    def is_ready(self) -> bool:
        return self._status is ModelStatus.READY

    def require(self) -> Classifier:
        """Return the loaded classifier.

        Raises:
            ModelUnavailable: If loading has not finished or has failed.
        """
        if self._classifier is None:
            if self._status is ModelStatus.FAILED:
                raise ModelUnavailable(f"Model failed to load: {self._error}")
            raise ModelUnavailable(f"Model is not ready (status={self._status})")
        return self._classifier

    async def load(self) -> Classifier:
        """Fetch both model resources and open an inference session.

        Raises:
            ModelLoadError: If anything about fetching or parsing the model fails.
            RuntimeError: If called more than once.
        """
        if self._status is not ModelStatus.PENDING:
            raise RuntimeError(f"Model load already attempted (status={self._status})")

        self._status = ModelStatus.LOADING
        try:
            classifier = await self._load()
        except ModelLoadError as exc:
            self._fail(str(exc))
            raise
        except Exception as exc:
            self._fail(f"{type(exc).__name__}: {exc}")
            raise ModelLoadError(self._error) from exc

        self._classifier = classifier
        self._status = ModelStatus.READY
        logger.info("Model ready with %d labels: %s", len(classifier.labels), ", ".join(classifier.labels))
        return classifier

    # -- Internal -----------------------------------------------------------

    async def _load(self) -> Classifier:
        source = resolve_model_source(self._settings)
        self._source = source
        logger.info("Loading model from %s (metadata %s)", source.model_url, source.metadata_url)

        await asyncio.to_thread(self._models_dir.mkdir, parents=True, exist_ok=True)
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self._settings.download_timeout,
            follow_redirects=True,
        ) as client:
            try:
                model_path = await self._ensure_downloaded(client, source.model_url)
                response = await client.get(source.metadata_url)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise ModelLoadError(f"Failed to fetch model resources: {exc}") from exc

        try:
            metadata = ModelMetadata.model_validate_json(response.content)
        except ValidationError as exc:
            raise ModelLoadError(f"Invalid model metadata from {source.metadata_url}: {exc}") from exc

        # Session construction parses and optimizes the whole graph.
        session = await asyncio.to_thread(
            InferenceSession,
            str(model_path),
            sess_options=self._build_session_options(),
            providers=self._build_providers(),
        )
        return OnnxClassifier(session, metadata)

    async def _ensure_downloaded(self, client: httpx.AsyncClient, url: str) -> Path:
        """Download the model file unless a copy for this URL is cached."""
        digest = hashlib.sha256(url.encode()).hexdigest()[:16]
        path = self._models_dir / f"{digest}-{self._settings.model_filename}"
        if path.exists():
            logger.info("Using cached model %s", path)
            return path

        partial = path.with_suffix(path.suffix + ".part")
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            fh = await asyncio.to_thread(partial.open, "wb")
            try:
                async for chunk in response.aiter_bytes(_DOWNLOAD_CHUNK_SIZE):
                    await asyncio.to_thread(fh.write, chunk)
            finally:
                await asyncio.to_thread(fh.close)
        await asyncio.to_thread(partial.replace, path)
        logger.info("Downloaded model to %s", path)
        return path

    def _fail(self, message: str) -> None:
        self._status = ModelStatus.FAILED
        self._error = message
        logger.error("Model load failed: %s", message)

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        return opts
