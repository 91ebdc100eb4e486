"""Image classifier handle backed by an ONNX Runtime session.

The model is treated as a black box mapping an RGB frame to one probability
per label. Labels and the expected input size come from a metadata document
in the Teachable Machine layout (``labels``, ``imageSize``).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

# Outputs whose sum is this close to 1.0 are taken as probabilities already.
_DISTRIBUTION_TOLERANCE: float = 1e-3


@dataclass(frozen=True)
class PredictionEntry:
    """A single label with its classifier probability."""

    label: str
    probability: float

    def with_probability(self, probability: float) -> PredictionEntry:
        """Return a copy carrying a different probability."""
        return replace(self, probability=probability)


class Classifier(Protocol):
    """Protocol for image classifiers."""

    @property
    def labels(self) -> list[str]:
        """Return the label names in output order."""
        ...

    def predict(self, frame: NDArray[np.uint8]) -> list[PredictionEntry]:
        """Classify a frame.

        Args:
            frame: HxWx3 RGB uint8 array.

        Returns:
            One entry per label, in the model's label order.
        """
        ...


class ModelMetadata(BaseModel):
    """Metadata document published next to the model weights."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", protected_namespaces=())

    labels: list[str] = Field(min_length=1)
    image_size: int = Field(default=224, alias="imageSize", gt=0)
    model_name: str | None = Field(default=None, alias="modelName")


class OnnxClassifier:
    """Runs a single-input, single-output classification model."""

    def __init__(self, session: InferenceSession, metadata: ModelMetadata) -> None:
        self._session = session
        self._metadata = metadata

        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._output_name: str = session.get_outputs()[0].name
        shape = list(model_input.shape)
        # Channels-first models declare (N, 3, H, W).
        self._channels_first = len(shape) == 4 and shape[1] == 3  # noqa: PLR2004

    @property
    def labels(self) -> list[str]:
        return list(self._metadata.labels)

    @property
    def image_size(self) -> int:
        return self._metadata.image_size

    @property
    def model_name(self) -> str | None:
        return self._metadata.model_name

    def predict(self, frame: NDArray[np.uint8]) -> list[PredictionEntry]:
        tensor = self._prepare(frame)
        (scores,) = self._session.run([self._output_name], {self._input_name: tensor})
        probabilities = np.asarray(scores, dtype=np.float32).reshape(-1)

        labels = self._metadata.labels
        if probabilities.size != len(labels):
            raise ValueError(f"Model returned {probabilities.size} scores for {len(labels)} labels")

        if not _is_distribution(probabilities):
            probabilities = _softmax(probabilities)
        probabilities = np.clip(probabilities, 0.0, 1.0)

        return [
            PredictionEntry(label=label, probability=float(p)) for label, p in zip(labels, probabilities, strict=True)
        ]

    def _prepare(self, frame: NDArray[np.uint8]) -> NDArray[np.float32]:
        size = self._metadata.image_size
        resized = cv2.resize(frame, (size, size), interpolation=cv2.INTER_AREA)
        tensor = resized.astype(np.float32) / 127.5 - 1.0
        if self._channels_first:
            tensor = np.transpose(tensor, (2, 0, 1))
        return np.expand_dims(tensor, axis=0)


def _is_distribution(values: NDArray[np.float32]) -> bool:
    if values.size == 0 or float(values.min()) < 0.0:
        return False
    return abs(float(values.sum()) - 1.0) <= _DISTRIBUTION_TOLERANCE


def _softmax(values: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = np.exp(values - values.max())
    result: NDArray[np.float32] = shifted / shifted.sum()
    return result
