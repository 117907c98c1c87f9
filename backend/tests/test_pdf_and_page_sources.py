from __future__ import annotations

from io import BytesIO

import pytest
from PIL import Image

from scanflow.core import config as cfg
from scanflow.core.exceptions import DecodeError, InvalidUploadError, RasterizationError
from scanflow.services.page_sources import (
    ImageSource,
    PdfSource,
    build_document,
    optimize_pdf_pages,
    source_for_upload,
)
from scanflow.utils.image_processing import OptimizationOptions
from scanflow.utils.pdf import rasterize_pdf


@pytest.mark.asyncio
@pytest.mark.parametrize("page_count", [1, 3])
async def test_rasterize_returns_one_image_per_page(pdf_bytes, page_count):
    pages = await rasterize_pdf(pdf_bytes(page_count))
    assert [p.page_number for p in pages] == list(range(1, page_count + 1))
    for page in pages:
        img = Image.open(BytesIO(page.image_bytes))
        assert img.format == "PNG"
        # 200x300pt page at 2x oversampling
        assert img.size == (400, 600)
        assert img.mode == "RGB"


@pytest.mark.asyncio
async def test_rasterize_respects_scale(pdf_bytes):
    pages = await rasterize_pdf(pdf_bytes(1), scale=1.0)
    assert Image.open(BytesIO(pages[0].image_bytes)).size == (200, 300)


@pytest.mark.asyncio
async def test_rasterize_rejects_garbage():
    with pytest.raises(RasterizationError) as exc:
        await rasterize_pdf(b"%PDF-1.4 truncated nonsense")
    assert exc.value.page_index is None


@pytest.mark.asyncio
async def test_optimize_pdf_pages_yields_webp_pairs(pdf_bytes):
    optimized = await optimize_pdf_pages(pdf_bytes(2))
    assert len(optimized) == 2
    for images in optimized:
        assert Image.open(BytesIO(images.full.data)).format == "WEBP"
        assert (images.thumbnail.width, images.thumbnail.height) == (200, 200)


def test_source_for_upload_dispatches_on_type(image_bytes, pdf_bytes):
    assert isinstance(source_for_upload(image_bytes(), "image/jpeg", "a.jpg"), ImageSource)
    assert isinstance(source_for_upload(pdf_bytes(1), "application/pdf", "a.pdf"), PdfSource)
    # Sniffed even when the browser sends a generic type
    assert isinstance(source_for_upload(pdf_bytes(1), "application/octet-stream", "a.bin"), PdfSource)


def test_source_for_upload_rejects_bad_input(image_bytes, monkeypatch):
    with pytest.raises(InvalidUploadError):
        source_for_upload(b"hello", "text/plain", "notes.txt")
    with pytest.raises(InvalidUploadError):
        source_for_upload(b"", "image/png", "empty.png")
    monkeypatch.setattr(cfg.settings, "MAX_UPLOAD_SIZE", 10)
    with pytest.raises(InvalidUploadError) as exc:
        source_for_upload(image_bytes(), "image/jpeg", "big.jpg")
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_build_document_numbers_pages_across_sources(image_bytes, pdf_bytes):
    sources = [
        ImageSource(image_bytes(300, 200), name="first.jpg"),
        PdfSource(pdf_bytes(2), name="rest.pdf"),
    ]
    document = await build_document(sources)
    assert len(document) == 3
    assert [p.page_number for p in document] == [1, 2, 3]
    assert all(p.preview_uri.startswith("data:image/webp;base64,") for p in document)
    assert not document.frozen


@pytest.mark.asyncio
async def test_build_document_enforces_page_limit(pdf_bytes):
    with pytest.raises(InvalidUploadError):
        await build_document([PdfSource(pdf_bytes(3))], max_pages=2)


@pytest.mark.asyncio
async def test_build_document_propagates_decode_errors():
    with pytest.raises(DecodeError):
        await build_document([ImageSource(b"not an image")])


@pytest.mark.asyncio
async def test_rasterized_pages_are_capped_to_max_dimension(pdf_bytes):
    # 1500x1200pt rendered at 2x is 3000x2400, above the 2048 default cap
    optimized = await PdfSource(pdf_bytes(2, width=1500, height=1200)).optimized_pages()
    assert len(optimized) == 2
    for images in optimized:
        assert max(images.full.width, images.full.height) == 2048
        assert (images.full.width, images.full.height) == Image.open(BytesIO(images.full.data)).size

    small = await PdfSource(pdf_bytes(3)).optimized_pages(OptimizationOptions(max_dimension=300))
    assert [(p.full.width, p.full.height) for p in small] == [(200, 300)] * 3
