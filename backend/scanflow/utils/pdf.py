"""PDF rasterization.

Each page of a PDF is rendered with PyMuPDF at a fixed oversampling
scale onto an opaque background and encoded as PNG.  The PNG is only an
intermediate: callers pass every page through
:func:`scanflow.utils.image_processing.optimize_image` so a scanned PDF
ends up with the same resolution and format ceiling as a photo.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

import fitz  # PyMuPDF

from scanflow.core.config import settings
from scanflow.core.exceptions import RasterizationError

logger = logging.getLogger(__name__)

RASTER_FORMAT = "png"
PDF_MIME_TYPE = "application/pdf"


@dataclass(frozen=True)
class RasterPage:
    image_bytes: bytes
    page_number: int


def rasterize_pdf_sync(data: bytes, scale: Optional[float] = None) -> List[RasterPage]:
    """Render every page of ``data`` to PNG bytes, ordered from page 1.

    Any page that fails to render aborts the whole call; no partial page
    set is returned.

    :raises RasterizationError: the document cannot be opened (``page_index``
        is ``None``) or a page fails to render (``page_index`` is 0-based)
    """
    zoom = float(scale or settings.PDF_RENDER_SCALE)
    if not data:
        raise RasterizationError("PDF payload is empty")
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise RasterizationError(f"Could not open PDF: {exc}", cause=exc)

    pages: List[RasterPage] = []
    try:
        if doc.page_count < 1:
            raise RasterizationError("PDF has no pages")
        matrix = fitz.Matrix(zoom, zoom)
        for index in range(doc.page_count):
            try:
                page = doc.load_page(index)
                pix = page.get_pixmap(matrix=matrix, alpha=False)
                image_bytes = pix.tobytes(RASTER_FORMAT)
            except Exception as exc:
                raise RasterizationError(
                    f"Failed to render page {index + 1}: {exc}", page_index=index, cause=exc
                )
            if not image_bytes:
                raise RasterizationError(f"Page {index + 1} rendered no data", page_index=index)
            pages.append(RasterPage(image_bytes=image_bytes, page_number=index + 1))
            logger.debug("Rendered PDF page %d/%d bytes=%d", index + 1, doc.page_count, len(image_bytes))
    finally:
        doc.close()
    return pages


async def rasterize_pdf(data: bytes, scale: Optional[float] = None) -> List[RasterPage]:
    """Async wrapper around :func:`rasterize_pdf_sync` (runs off the event loop)."""
    return await asyncio.to_thread(rasterize_pdf_sync, data, scale)
