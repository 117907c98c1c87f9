from __future__ import annotations

from io import BytesIO

import pytest
from PIL import Image

from scanflow.core.exceptions import DecodeError
from scanflow.utils.image_processing import (
    OUTPUT_MIME_TYPE,
    OptimizationOptions,
    calculate_dimensions,
    optimize_image,
)


def _open(data: bytes) -> Image.Image:
    img = Image.open(BytesIO(data))
    img.load()
    return img


def test_calculate_dimensions_keeps_small_images():
    assert calculate_dimensions(800, 600, 2048) == (800, 600, False)
    assert calculate_dimensions(2048, 2048, 2048) == (2048, 2048, False)


def test_calculate_dimensions_caps_longer_edge():
    assert calculate_dimensions(4000, 3000, 2048) == (2048, 1536, True)
    # 2048 * 1000 / 3000 = 682.67
    assert calculate_dimensions(1000, 3000, 2048) == (683, 2048, True)


@pytest.mark.parametrize("width,height", [(4032, 3024), (3024, 4032), (5000, 700), (2049, 10), (640, 480)])
def test_calculate_dimensions_bounds_and_aspect(width, height):
    new_w, new_h, _ = calculate_dimensions(width, height, 2048)
    assert max(new_w, new_h) == min(max(width, height), 2048)
    assert new_w / new_h == pytest.approx(width / height, rel=0.02)


def test_options_reject_bad_quality():
    with pytest.raises(ValueError):
        OptimizationOptions(quality=0)
    with pytest.raises(ValueError):
        OptimizationOptions(thumbnail_quality=1.5)


@pytest.mark.asyncio
async def test_optimize_large_image_downscales(image_bytes):
    result = await optimize_image(image_bytes(4000, 3000))
    assert (result.full.width, result.full.height) == (2048, 1536)
    assert result.full.mime_type == OUTPUT_MIME_TYPE
    full = _open(result.full.data)
    assert full.format == "WEBP"
    assert full.size == (2048, 1536)
    thumb = _open(result.thumbnail.data)
    assert thumb.format == "WEBP"
    assert thumb.size == (200, 200)


@pytest.mark.asyncio
async def test_optimize_small_image_keeps_native_size(image_bytes):
    result = await optimize_image(image_bytes(640, 480))
    assert _open(result.full.data).size == (640, 480)
    assert _open(result.thumbnail.data).size == (200, 200)


@pytest.mark.asyncio
async def test_optimize_respects_custom_options(image_bytes):
    opts = OptimizationOptions(max_dimension=500, thumbnail_size=64)
    result = await optimize_image(image_bytes(1000, 250), opts)
    assert _open(result.full.data).size == (500, 125)
    assert _open(result.thumbnail.data).size == (64, 64)


@pytest.mark.asyncio
async def test_transparency_is_flattened_onto_white(image_bytes):
    data = image_bytes(100, 100, color=(0, 0, 0, 0), fmt="PNG", mode="RGBA")
    result = await optimize_image(data)
    full = _open(result.full.data).convert("RGB")
    r, g, b = full.getpixel((50, 50))
    assert min(r, g, b) > 240


@pytest.mark.asyncio
async def test_exif_orientation_is_applied(image_bytes):
    exif = Image.Exif()
    exif[0x0112] = 6  # rotate 90 CW on display
    data = image_bytes(300, 200, exif=exif.tobytes())
    result = await optimize_image(data)
    assert (result.full.width, result.full.height) == (200, 300)
    # Metadata does not survive re-encoding
    assert not _open(result.full.data).getexif().get(0x0112)


@pytest.mark.asyncio
async def test_undecodable_input_raises_decode_error():
    with pytest.raises(DecodeError) as exc:
        await optimize_image(b"definitely not an image")
    assert exc.value.retry_safe is True
    with pytest.raises(DecodeError):
        await optimize_image(b"")
