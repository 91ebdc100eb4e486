"""Environment-based configuration for SnapSense."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from SNAPSENSE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SNAPSENSE_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model source: either explicit URLs or a Hugging Face Hub repository
    model_url: str | None = None
    metadata_url: str | None = None
    model_repo: str | None = None
    model_filename: str = "model.onnx"
    metadata_filename: str = "metadata.json"
    model_revision: str | None = None
    models_dir: str = "models"
    download_timeout: float = Field(default=30.0, gt=0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)
    upload_size: int = Field(default=300, ge=1)

    # Camera
    camera_index: int = Field(default=0, ge=0)
    camera_width: int = Field(default=300, ge=1)
    camera_height: int = Field(default=300, ge=1)
    camera_mirror: bool = True

    # Prediction loop
    tick_interval: float = Field(default=0.3, gt=0)
    analysis_duration: float = Field(default=3.0, gt=0)
    camera_jitter: float = Field(default=0.1, ge=0.0, le=1.0)
    upload_jitter: float = Field(default=0.2, ge=0.0, le=1.0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
