"""In-memory capture types.

These objects only live for the duration of one capture/upload session
and are never written to the database directly.  ``CapturedDocument``
keeps its pages numbered ``1..N`` at all times.
"""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

from scanflow.core.exceptions import DocumentFrozenError
from .schemas import ExtractionResult


@dataclass(frozen=True)
class ImagePayload:
    """Encoded image bytes plus what is needed to store and display them."""

    data: bytes
    mime_type: str
    width: int
    height: int

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(frozen=True)
class OptimizedImages:
    full: ImagePayload
    thumbnail: ImagePayload


@dataclass
class CapturedPage:
    """One acquired page prior to persistence."""

    full_image: ImagePayload
    thumbnail: ImagePayload
    page_number: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    preview_uri: str = ""

    def __post_init__(self) -> None:
        if not self.preview_uri:
            self.preview_uri = self.full_image.to_data_uri()

    @classmethod
    def from_optimized(cls, images: OptimizedImages, page_number: int) -> "CapturedPage":
        return cls(full_image=images.full, thumbnail=images.thumbnail, page_number=page_number)


class CapturedDocument:
    """Ordered, mutable sequence of pages for one session.

    Once handed to the orchestrator the document is frozen and any
    further mutation raises ``DocumentFrozenError``.
    """

    def __init__(self, pages: Optional[List[CapturedPage]] = None) -> None:
        self._pages: List[CapturedPage] = []
        self._frozen = False
        for page in pages or []:
            self.append(page)

    def __len__(self) -> int:
        return len(self._pages)

    def __iter__(self) -> Iterator[CapturedPage]:
        return iter(tuple(self._pages))

    def __bool__(self) -> bool:
        return bool(self._pages)

    @property
    def pages(self) -> Tuple[CapturedPage, ...]:
        return tuple(self._pages)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_mutable(self) -> None:
        if self._frozen:
            raise DocumentFrozenError("Document has already been handed off for upload")

    def append(self, page: CapturedPage) -> CapturedPage:
        self._check_mutable()
        page.page_number = len(self._pages) + 1
        self._pages.append(page)
        return page

    def remove(self, page_number: int) -> CapturedPage:
        """Remove ``page_number`` and renumber everything after it."""
        self._check_mutable()
        if page_number < 1 or page_number > len(self._pages):
            raise IndexError(f"No page {page_number} in a {len(self._pages)}-page document")
        removed = self._pages.pop(page_number - 1)
        self._renumber()
        return removed

    def clear(self) -> None:
        self._check_mutable()
        self._pages.clear()

    def freeze(self) -> "CapturedDocument":
        self._frozen = True
        return self

    def _renumber(self) -> None:
        for index, page in enumerate(self._pages, start=1):
            page.page_number = index


@dataclass(frozen=True)
class UploadedPageRef:
    """Object keys of one durably stored page."""

    full_object_key: str
    thumbnail_object_key: str

    @property
    def keys(self) -> Tuple[str, str]:
        return (self.full_object_key, self.thumbnail_object_key)


@dataclass
class PersistedReceipt:
    """Result of a completed ingest.

    ``child_ids`` is empty for a single-page receipt.
    """

    receipt_id: str
    collection_id: str
    total_pages: int
    page_refs: List[UploadedPageRef]
    extraction: ExtractionResult
    child_ids: List[str] = field(default_factory=list)

    @property
    def is_multi_page(self) -> bool:
        return self.total_pages > 1


@dataclass
class PendingVerification:
    """A single-page upload awaiting user confirmation of extracted fields."""

    receipt_id: str
    collection_id: str
    uploaded_by: Optional[str]
    page_ref: UploadedPageRef
    extraction: ExtractionResult


@dataclass(frozen=True)
class IngestDestination:
    """Where an ingested document is filed and who uploaded it."""

    collection_id: str
    uploaded_by: Optional[str] = None

    @property
    def owner(self) -> str:
        """Namespace used for object keys."""
        return self.uploaded_by or self.collection_id
