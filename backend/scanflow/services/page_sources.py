"""Normalized page producers.

Photos, multi-file selections and PDFs all reach the upload
orchestrator as a :class:`CapturedDocument`.  Each input kind is a
``PageSource`` yielding optimized pages, so nothing downstream needs to
know where a page came from.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from scanflow.core.config import settings
from scanflow.core.exceptions import InvalidUploadError
from scanflow.models.capture import CapturedDocument, CapturedPage, OptimizedImages
from scanflow.utils.image_processing import OptimizationOptions, optimize_image
from scanflow.utils.pdf import PDF_MIME_TYPE, rasterize_pdf

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"


async def optimize_pdf_pages(
    data: bytes,
    options: Optional[OptimizationOptions] = None,
    scale: Optional[float] = None,
) -> List[OptimizedImages]:
    """Rasterize every page of a PDF and optimize each one in page order."""
    optimized: List[OptimizedImages] = []
    for raster in await rasterize_pdf(data, scale):
        optimized.append(await optimize_image(raster.image_bytes, options))
    return optimized


class PageSource:
    """Produces optimized pages in page order."""

    name: str = "source"

    async def optimized_pages(self, options: Optional[OptimizationOptions] = None) -> List[OptimizedImages]:
        raise NotImplementedError


class ImageSource(PageSource):
    """A single photo or image file."""

    def __init__(self, data: bytes, name: str = "image") -> None:
        self.data = data
        self.name = name

    async def optimized_pages(self, options: Optional[OptimizationOptions] = None) -> List[OptimizedImages]:
        return [await optimize_image(self.data, options)]


class PdfSource(PageSource):
    """A paginated document; each page is rasterized then optimized."""

    def __init__(self, data: bytes, name: str = "document.pdf", scale: Optional[float] = None) -> None:
        self.data = data
        self.name = name
        self.scale = scale

    async def optimized_pages(self, options: Optional[OptimizationOptions] = None) -> List[OptimizedImages]:
        optimized = await optimize_pdf_pages(self.data, options, self.scale)
        logger.info("Rasterized %s into %d pages", self.name, len(optimized))
        return optimized


def source_for_upload(data: bytes, content_type: Optional[str], filename: Optional[str] = None) -> PageSource:
    """Validate one uploaded file and wrap it in the matching source.

    :raises InvalidUploadError: unsupported type, empty or oversized payload
    """
    name = filename or "upload"
    if not data:
        raise InvalidUploadError(f"Empty upload payload: {name}")
    if len(data) > settings.MAX_UPLOAD_SIZE:
        raise InvalidUploadError(
            f"File too large: {name}. Maximum size is {settings.MAX_UPLOAD_SIZE // (1024 * 1024)}MB"
        )
    ctype = (content_type or "").lower()
    if ctype == PDF_MIME_TYPE or data.startswith(PDF_MAGIC):
        return PdfSource(data, name=name)
    if ctype.startswith("image/"):
        return ImageSource(data, name=name)
    raise InvalidUploadError(f"Invalid file type (only images or PDFs): {name}")


async def build_document(
    sources: Iterable[PageSource],
    options: Optional[OptimizationOptions] = None,
    max_pages: Optional[int] = None,
) -> CapturedDocument:
    """Run every source in order and collect the pages into one document.

    Sources are processed one at a time; a failure in any of them aborts
    the build before anything is uploaded.
    """
    limit = max_pages or settings.MAX_PAGES_PER_DOCUMENT
    document = CapturedDocument()
    for source in sources:
        for images in await source.optimized_pages(options):
            if len(document) >= limit:
                raise InvalidUploadError(f"Too many pages (max {limit})")
            document.append(CapturedPage.from_optimized(images, page_number=len(document) + 1))
    if not document:
        raise InvalidUploadError("No pages provided")
    return document
