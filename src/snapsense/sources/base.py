"""Image source protocol shared by the camera and upload variants."""

from __future__ import annotations

import io
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from PIL import Image

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray


class SourceMode(StrEnum):
    CAMERA = "camera"
    UPLOAD = "upload"


class ImageSource(Protocol):
    """Hands frames to the prediction loop without knowing where they come from."""

    @property
    def mode(self) -> SourceMode:
        """Return which entry mode produced this source."""
        ...

    def current_frame(self) -> NDArray[np.uint8]:
        """Return the latest frame as an HxWx3 RGB uint8 array.

        Must not block.

        Raises:
            FrameUnavailable: If no frame can be handed out right now.
        """
        ...

    def release(self) -> None:
        """Free any device or buffer held by the source."""
        ...


def encode_jpeg(frame: NDArray[np.uint8], quality: int = 85) -> bytes:
    """Encode an RGB frame as JPEG bytes for display."""
    buf = io.BytesIO()
    Image.fromarray(frame).save(buf, format="JPEG", quality=quality)
    return buf.getvalue()
