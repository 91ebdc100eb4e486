"""Accessors for the process-wide objects stored on ``app.state``."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from snapsense.analysis.controller import AnalysisController
    from snapsense.config import Settings
    from snapsense.ml.inference import InferencePool
    from snapsense.ml.model_loader import ModelLoader


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def get_model_loader(request: Request) -> ModelLoader:
    loader: ModelLoader = request.app.state.model_loader
    return loader


def get_controller(request: Request) -> AnalysisController:
    controller: AnalysisController = request.app.state.controller
    return controller
