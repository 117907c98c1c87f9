"""Image optimization utilities.

Every captured page, whether photographed or rasterized from a PDF,
passes through :func:`optimize_image`, which produces two WebP
derivatives:

- a "full" image whose longer edge is capped at ``max_dimension``
  (native size is kept when the source is already small enough), and
- a square ``thumbnail_size`` thumbnail, aspect-filled and center
  cropped.

Transparency is flattened onto white and EXIF orientation is applied
before encoding; re-encoding also drops EXIF/ICC metadata from the
stored images. Pillow is used as the imaging backend.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from io import BytesIO
from typing import Optional, Tuple

from PIL import Image, ImageOps, ExifTags, UnidentifiedImageError

from scanflow.core.config import settings
from scanflow.core.exceptions import DecodeError, EncodeError
from scanflow.models.capture import ImagePayload, OptimizedImages

logger = logging.getLogger(__name__)

OUTPUT_FORMAT = "WEBP"
OUTPUT_MIME_TYPE = "image/webp"
BACKGROUND = (255, 255, 255)

try:  # resolve orientation tag id once
    ORIENTATION_TAG_ID: Optional[int] = next(k for k, v in ExifTags.TAGS.items() if v == "Orientation")
except StopIteration:  # pragma: no cover
    ORIENTATION_TAG_ID = None


@dataclass
class OptimizationOptions:
    """Tunables for :func:`optimize_image`; defaults come from settings."""

    max_dimension: int = field(default_factory=lambda: settings.IMAGE_MAX_DIMENSION)
    thumbnail_size: int = field(default_factory=lambda: settings.THUMBNAIL_SIZE)
    quality: float = field(default_factory=lambda: settings.IMAGE_QUALITY)
    thumbnail_quality: float = field(default_factory=lambda: settings.THUMBNAIL_QUALITY)

    def __post_init__(self) -> None:
        if self.max_dimension < 1 or self.thumbnail_size < 1:
            raise ValueError("max_dimension and thumbnail_size must be positive")
        for name in ("quality", "thumbnail_quality"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ValueError(f"{name} must be in (0, 1], got {value}")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_dimensions(width: int, height: int, max_dimension: int) -> Tuple[int, int, bool]:
    """Return ``(width, height, needs_resize)`` for the full derivative.

    When either edge exceeds ``max_dimension`` the image is scaled so the
    longer edge equals it exactly, preserving aspect ratio.
    """
    if width <= max_dimension and height <= max_dimension:
        return width, height, False
    aspect = width / float(height)
    if width > height:
        new_w = max_dimension
        new_h = _round_half_up(max_dimension / aspect)
    else:
        new_h = max_dimension
        new_w = _round_half_up(max_dimension * aspect)
    return max(1, new_w), max(1, new_h), True


def _apply_exif_orientation(img: Image.Image) -> Tuple[Image.Image, bool]:
    """Return a new image with EXIF orientation applied if needed.

    Returns (image, applied_flag). If orientation cannot be determined,
    returns the original image and False.
    """
    if ORIENTATION_TAG_ID is None:
        return img, False
    try:
        exif = img.getexif()
        if not exif or exif.get(ORIENTATION_TAG_ID, 1) == 1:
            return img, False
        transposed = ImageOps.exif_transpose(img)
        if transposed is not None and transposed is not img:
            return transposed, True
        return img, False
    except Exception:  # pragma: no cover - malformed EXIF
        return img, False


def _flatten(img: Image.Image) -> Image.Image:
    """Composite onto an opaque white background and return an RGB image."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, BACKGROUND)
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


def decode_image(data: bytes) -> Image.Image:
    """Decode bytes into an oriented, flattened RGB surface."""
    if not data:
        raise DecodeError("Image payload is empty")
    try:
        with Image.open(BytesIO(data)) as img:
            img.load()
            oriented, _applied = _apply_exif_orientation(img)
            return _flatten(oriented)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Input is not a decodable image: {exc}", cause=exc)


def _encode(img: Image.Image, quality: float) -> bytes:
    buf = BytesIO()
    try:
        img.save(buf, format=OUTPUT_FORMAT, quality=_round_half_up(quality * 100), method=4)
    except (OSError, ValueError, KeyError) as exc:
        raise EncodeError(f"{OUTPUT_FORMAT} encode failed: {exc}", cause=exc)
    data = buf.getvalue()
    if not data:
        raise EncodeError(f"{OUTPUT_FORMAT} encode produced no data")
    return data


def render_full(img: Image.Image, max_dimension: int, quality: float) -> ImagePayload:
    width, height, needs_resize = calculate_dimensions(img.width, img.height, max_dimension)
    surface = img.resize((width, height), Image.LANCZOS) if needs_resize else img
    return ImagePayload(data=_encode(surface, quality), mime_type=OUTPUT_MIME_TYPE, width=width, height=height)


def render_thumbnail(img: Image.Image, size: int, quality: float) -> ImagePayload:
    surface = ImageOps.fit(img, (size, size), method=Image.LANCZOS, centering=(0.5, 0.5))
    return ImagePayload(data=_encode(surface, quality), mime_type=OUTPUT_MIME_TYPE, width=size, height=size)


async def optimize_image(data: bytes, options: Optional[OptimizationOptions] = None) -> OptimizedImages:
    """Produce the full and thumbnail derivatives of ``data``.

    Decode happens first; the two encodes then run concurrently and the
    call returns only once both have completed. Either both derivatives
    are returned or an error is raised.

    :raises DecodeError: input is not a decodable image
    :raises EncodeError: either derivative failed to encode
    """
    opts = options or OptimizationOptions()
    source = await asyncio.to_thread(decode_image, data)
    # Each worker thread gets its own surface
    full, thumbnail = await asyncio.gather(
        asyncio.to_thread(render_full, source.copy(), opts.max_dimension, opts.quality),
        asyncio.to_thread(render_thumbnail, source.copy(), opts.thumbnail_size, opts.thumbnail_quality),
    )
    logger.debug(
        "Image optimized original=%sx%s bytes=%d full=%sx%s bytes=%d thumb_bytes=%d",
        source.width,
        source.height,
        len(data),
        full.width,
        full.height,
        len(full.data),
        len(thumbnail.data),
    )
    return OptimizedImages(full=full, thumbnail=thumbnail)
