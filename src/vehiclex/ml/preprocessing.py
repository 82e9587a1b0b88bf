"""Image decoding and preprocessing.

Decoding handles format detection, EXIF orientation and color space
conversion. Preprocessing turns the decoded pixels into the
``(1, size, size, 3)`` float32 batch the classifier expects: bilinear resize
(no corner alignment, no half-pixel centers), division by 255, leading batch
axis. Every intermediate array is owned by the caller's ``BufferScope``.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from vehiclex.errors import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from vehiclex.ml.buffers import BufferScope

logger = logging.getLogger(__name__)

_MAX_CHANNEL_VALUE = np.float32(255.0)


@dataclass(frozen=True)
class ImageResource:
    """A user-selected image, fully decoded to RGB."""

    filename: str
    image: Image.Image = field(repr=False)

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


def decode_image(data: bytes, filename: str = "upload", max_pixels: int | None = None) -> ImageResource:
    """Decode raw image bytes into an RGB ``ImageResource``.

    Raises:
        DecodeError: If the bytes are not a readable image, the image has zero
            area, or it exceeds ``max_pixels``.
    """
    if not data:
        raise DecodeError(f"{filename}: empty image payload")

    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            if width <= 0 or height <= 0:
                raise DecodeError(f"{filename}: image has zero area ({width}x{height})")
            if max_pixels is not None and width * height > max_pixels:
                raise DecodeError(f"{filename}: image has {width * height} pixels, limit is {max_pixels}")
            img.load()
            oriented = ImageOps.exif_transpose(img)
            rgb = oriented.convert("RGB")
    except DecodeError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"{filename}: {exc}") from exc

    logger.info("Decoded %s (%dx%d, %d bytes)", filename, rgb.width, rgb.height, len(data))
    return ImageResource(filename=filename, image=rgb)


def to_pixels(image: ImageResource, scope: BufferScope) -> NDArray[np.uint8]:
    """Return the HxWx3 uint8 pixel buffer of ``image``, owned by ``scope``."""
    pixels = np.asarray(image.image, dtype=np.uint8)
    if pixels.ndim != 3 or pixels.shape[2] != 3 or pixels.size == 0:
        raise DecodeError(f"{image.filename}: unexpected pixel layout {pixels.shape}")
    return scope.track(pixels)


def resize_bilinear(pixels: NDArray[np.generic], size: int) -> NDArray[np.float32]:
    """Resize an HxWxC array to ``size`` x ``size`` with bilinear interpolation.

    Source coordinates are ``dst_index * in_dim / size``; neighbours past the
    last row/column are clamped to the edge.
    """
    in_h, in_w = pixels.shape[:2]
    src = pixels.astype(np.float32, copy=False)

    ys = np.arange(size, dtype=np.float64) * (in_h / size)
    xs = np.arange(size, dtype=np.float64) * (in_w / size)
    y0 = np.minimum(np.floor(ys).astype(np.intp), in_h - 1)
    x0 = np.minimum(np.floor(xs).astype(np.intp), in_w - 1)
    y1 = np.minimum(y0 + 1, in_h - 1)
    x1 = np.minimum(x0 + 1, in_w - 1)
    wy = (ys - y0).astype(np.float32)[:, None, None]
    wx = (xs - x0).astype(np.float32)[None, :, None]

    top = src[y0][:, x0] * (1 - wx) + src[y0][:, x1] * wx
    bottom = src[y1][:, x0] * (1 - wx) + src[y1][:, x1] * wx
    return (top * (1 - wy) + bottom * wy).astype(np.float32, copy=False)


def preprocess(image: ImageResource, size: int, scope: BufferScope) -> NDArray[np.float32]:
    """Build the model input batch for ``image``.

    Returns:
        float32 array of shape ``(1, size, size, 3)`` with values in [0, 1],
        owned by ``scope``. Intermediates are released before returning.
    """
    pixels = to_pixels(image, scope)
    try:
        resized = scope.track(resize_bilinear(pixels, size))
    finally:
        scope.release(pixels)

    try:
        normalized = scope.track(np.clip(resized / _MAX_CHANNEL_VALUE, 0.0, 1.0).astype(np.float32, copy=False))
    finally:
        scope.release(resized)

    try:
        batch = scope.track(np.ascontiguousarray(normalized[np.newaxis, ...]))
    finally:
        scope.release(normalized)

    return batch
