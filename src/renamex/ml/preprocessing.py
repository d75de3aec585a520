"""Image preprocessing for CLIP.

Decodes raw upload bytes (EXIF orientation, RGB conversion, size
validation) and turns the result into the normalized NCHW float tensor the
CLIP vision encoder expects.
"""

from __future__ import annotations

import io
import mimetypes
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

CLIP_MEAN = np.array([0.48145466, 0.4578275, 0.40821073], dtype=np.float32)
CLIP_STD = np.array([0.26862954, 0.26130258, 0.27577711], dtype=np.float32)


def is_image_upload(content_type: str | None, filename: str | None) -> bool:
    """Accept uploads whose declared (or guessed) media type is ``image/*``."""
    media_type = content_type or ""
    if not media_type or media_type == "application/octet-stream":
        media_type = mimetypes.guess_type(filename or "")[0] or ""
    return media_type.startswith("image/")


class ClipPreprocessor:
    """Decode images and build CLIP input tensors."""

    def __init__(self, image_size: int = 224, max_image_pixels: int = 16_777_216) -> None:
        self._image_size = image_size
        self._max_image_pixels = max_image_pixels

    def decode_image(self, image_bytes: bytes) -> Image.Image:
        """Decode raw image bytes into an upright RGB image.

        Raises:
            ValueError: If the image cannot be decoded or exceeds the pixel limit.
        """
        try:
            image = Image.open(io.BytesIO(image_bytes))
        except UnidentifiedImageError as exc:
            raise ValueError("Unsupported or corrupt image data") from exc

        width, height = image.size
        if width * height > self._max_image_pixels:
            raise ValueError(f"Image has {width * height} pixels, limit is {self._max_image_pixels}")

        image = ImageOps.exif_transpose(image)
        return image.convert("RGB")

    def to_tensor(self, image: Image.Image) -> NDArray[np.float32]:
        """Resize the short side, center-crop and normalize.

        Returns:
            Array of shape (1, 3, image_size, image_size).
        """
        size = self._image_size
        width, height = image.size
        scale = size / min(width, height)
        resized = image.resize(
            (max(size, round(width * scale)), max(size, round(height * scale))),
            Image.Resampling.BICUBIC,
        )
        left = (resized.width - size) // 2
        top = (resized.height - size) // 2
        cropped = resized.crop((left, top, left + size, top + size))

        pixels = np.asarray(cropped, dtype=np.float32) / 255.0
        pixels = (pixels - CLIP_MEAN) / CLIP_STD
        return pixels.transpose(2, 0, 1)[np.newaxis, ...].astype(np.float32)

    def preprocess(self, image_bytes: bytes) -> NDArray[np.float32]:
        return self.to_tensor(self.decode_image(image_bytes))
