"""Image preprocessing for the embedding extractor.

Decodes uploaded or captured bytes with Pillow, applies EXIF orientation,
enforces the pixel limit, and produces the normalized NCHW tensor the ONNX
feature extractors expect.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from teachablex.errors import ExtractionError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from teachablex.ml.model_manager import ModelSpec


class ImagePreprocessor(Protocol):
    """Protocol for image preprocessing."""

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Raises:
            ExtractionError: If the image cannot be decoded or exceeds size limits.
        """
        ...

    def preprocess(self, image: NDArray[np.uint8], spec: ModelSpec) -> NDArray[np.float32]:
        """Resize and normalize an RGB image into a (1, 3, S, S) tensor."""
        ...


class PillowPreprocessor:
    """Pillow-backed decoder and resize/normalize pipeline."""

    def __init__(self, max_image_pixels: int) -> None:
        self._max_image_pixels = max_image_pixels

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        if not image_bytes:
            raise ExtractionError("Empty image payload")
        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise ExtractionError(
                        f"Image too large: {width}x{height} exceeds {self._max_image_pixels} pixels"
                    )
                oriented = ImageOps.exif_transpose(img)
                rgb = oriented.convert("RGB")
                return np.asarray(rgb, dtype=np.uint8)
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
            raise ExtractionError(f"Cannot decode image: {exc}") from exc

    def preprocess(self, image: NDArray[np.uint8], spec: ModelSpec) -> NDArray[np.float32]:
        if image.ndim != 3 or image.shape[2] != 3:
            raise ExtractionError(f"Expected HxWx3 RGB image, got shape {image.shape}")

        size = spec.input_size
        resized = Image.fromarray(image).resize((size, size), Image.Resampling.BICUBIC)
        pixels = np.asarray(resized, dtype=np.float32) / 255.0
        pixels = (pixels - np.asarray(spec.mean, dtype=np.float32)) / np.asarray(spec.std, dtype=np.float32)
        return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
