"""Uploaded image source.

Decoding policy: Pillow opens the bytes, EXIF orientation is applied, the
image is converted to RGB and stretched to exactly ``size x size`` with
bilinear resampling. The aspect ratio is not preserved and nothing is
cropped, so the same bytes always produce the same frame.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from snapsense.errors import InvalidImage
from snapsense.sources.base import SourceMode

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

DEFAULT_SIZE: int = 300


class StaticImage:
    """A decoded upload; its frame never changes for the session."""

    def __init__(self, frame: NDArray[np.uint8]) -> None:
        frame.setflags(write=False)
        self._frame = frame

    @property
    def mode(self) -> SourceMode:
        return SourceMode.UPLOAD

    @property
    def size(self) -> tuple[int, int]:
        height, width = self._frame.shape[:2]
        return width, height

    def current_frame(self) -> NDArray[np.uint8]:
        return self._frame

    def release(self) -> None:
        return None


def decode(
    file_bytes: bytes,
    size: int = DEFAULT_SIZE,
    *,
    max_file_size: int | None = None,
    max_image_pixels: int | None = None,
) -> StaticImage:
    """Decode uploaded bytes into a ``size x size`` RGB frame.

    Args:
        file_bytes: Raw file contents (any format Pillow understands).
        size: Edge length of the square output frame.
        max_file_size: Reject payloads larger than this many bytes.
        max_image_pixels: Reject images whose width * height exceeds this.

    Raises:
        InvalidImage: If the bytes are empty, too large or not an image.
    """
    if not file_bytes:
        raise InvalidImage("Uploaded file is empty")
    if max_file_size is not None and len(file_bytes) > max_file_size:
        raise InvalidImage(f"Uploaded file exceeds {max_file_size} bytes", too_large=True)

    try:
        with Image.open(io.BytesIO(file_bytes)) as image:
            width, height = image.size
            if max_image_pixels is not None and width * height > max_image_pixels:
                raise InvalidImage(f"Image has {width * height} pixels, limit is {max_image_pixels}", too_large=True)
            oriented = ImageOps.exif_transpose(image)
            rgb = oriented.convert("RGB")
            resized = rgb.resize((size, size), Image.Resampling.BILINEAR)
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise InvalidImage(f"Could not decode image: {exc}") from exc

    logger.info("Decoded upload %dx%d -> %dx%d", width, height, size, size)
    return StaticImage(np.asarray(resized, dtype=np.uint8).copy())
