"""Exception types shared across SnapSense."""

from __future__ import annotations


class SnapSenseError(Exception):
    """Base class for all SnapSense errors."""


class ModelLoadError(SnapSenseError):
    """The remote model or its metadata could not be fetched or parsed."""


class ModelUnavailable(SnapSenseError):
    """A prediction was attempted while no classifier is loaded."""


class DeviceUnavailable(SnapSenseError):
    """The camera could not be opened or produced no frames."""


class FrameUnavailable(SnapSenseError):
    """The image source has no frame to hand out right now."""


class InvalidImage(SnapSenseError, ValueError):
    """Uploaded bytes could not be decoded or exceed the configured limits."""

    def __init__(self, message: str, *, too_large: bool = False) -> None:
        super().__init__(message)
        self.too_large = too_large


class PredictionSkipped(SnapSenseError):
    """A queued prediction was no longer wanted when a worker became free."""
