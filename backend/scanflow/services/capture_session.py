"""Camera capture state machine.

A capture session collects photographed pages one at a time::

    CAPTURE --acquire--> PREVIEW --confirm--> REVIEW --add_another--> CAPTURE
                         PREVIEW --retake---> CAPTURE
                         PREVIEW --finish_single (no confirmed pages)--> done
                                              REVIEW --finalize--> done
                                              REVIEW --remove_page (last one)--> CAPTURE

``cancel`` is valid in every mode and discards everything without
touching storage or the database.  Any other action requested in a
mode that does not allow it raises :class:`InvalidTransitionError`.

Sessions are held in memory by :class:`CaptureSessionRegistry`; nothing
about a session is persisted until its document is finalized and handed
to the upload orchestrator.  Sessions left idle for longer than
``settings.CAPTURE_SESSION_TTL_SECONDS`` are cancelled and dropped the
next time a session is opened.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional

from scanflow.core.config import settings
from scanflow.core.exceptions import CaptureBusyError, InvalidTransitionError, SessionNotFoundError
from scanflow.models.capture import CapturedDocument, CapturedPage
from scanflow.models.enums import CaptureMode
from scanflow.models.schemas import CaptureSessionRead, StripEntry
from scanflow.utils.image_processing import OptimizationOptions, optimize_image
from scanflow.utils.thumbnail_strip import build_strip

logger = logging.getLogger(__name__)


class CaptureSession:
    """One in-progress camera capture."""

    def __init__(
        self,
        collection_id: str,
        uploaded_by: Optional[str] = None,
        options: Optional[OptimizationOptions] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.collection_id = collection_id
        self.uploaded_by = uploaded_by
        self.options = options
        self.mode = CaptureMode.CAPTURE
        self.document = CapturedDocument()
        self.pending: Optional[CapturedPage] = None
        self.busy = False
        self.closed = False
        self.last_active = time.monotonic()

    def _require(self, *modes: CaptureMode, action: str) -> None:
        if self.closed:
            raise InvalidTransitionError(f"Cannot {action}: capture session is closed")
        if self.mode not in modes:
            allowed = ", ".join(m.value for m in modes)
            raise InvalidTransitionError(f"Cannot {action} in {self.mode.value} mode (allowed: {allowed})")

    @property
    def confirmed_count(self) -> int:
        return len(self.document)

    @property
    def can_finish_single(self) -> bool:
        return self.mode == CaptureMode.PREVIEW and self.confirmed_count == 0

    async def acquire(self, photo: bytes) -> CapturedPage:
        """Optimize ``photo`` and show it as the pending page.

        While optimization is in flight further captures are rejected.
        If optimization fails the session stays in CAPTURE mode.
        """
        if self.busy:
            raise CaptureBusyError("A photo is already being processed")
        self._require(CaptureMode.CAPTURE, action="capture a photo")
        self.busy = True
        try:
            images = await optimize_image(photo, self.options)
        finally:
            self.busy = False
        if self.closed:
            raise InvalidTransitionError("Capture session was cancelled while processing the photo")
        self.pending = CapturedPage.from_optimized(images, page_number=self.confirmed_count + 1)
        self.mode = CaptureMode.PREVIEW
        logger.debug("Session %s: pending page %d", self.id, self.pending.page_number)
        return self.pending

    def confirm(self) -> CapturedPage:
        self._require(CaptureMode.PREVIEW, action="confirm")
        page = self.document.append(self.pending)
        self.pending = None
        self.mode = CaptureMode.REVIEW
        return page

    def retake(self) -> None:
        self._require(CaptureMode.PREVIEW, action="retake")
        self.pending = None
        self.mode = CaptureMode.CAPTURE

    def finish_single(self) -> CapturedDocument:
        """Finalize with only the pending page (first page only)."""
        self._require(CaptureMode.PREVIEW, action="finish with a single page")
        if self.confirmed_count != 0:
            raise InvalidTransitionError("Finish single is only available for the first page")
        document = CapturedDocument([self.pending]).freeze()
        self.pending = None
        self.closed = True
        return document

    def add_another(self) -> None:
        self._require(CaptureMode.REVIEW, action="add another page")
        self.mode = CaptureMode.CAPTURE

    def remove_page(self, page_number: int) -> CapturedPage:
        """Remove a confirmed page; removing the last one returns to CAPTURE."""
        self._require(CaptureMode.REVIEW, action="remove a page")
        try:
            removed = self.document.remove(page_number)
        except IndexError as e:
            raise InvalidTransitionError(str(e), cause=e)
        if not self.document:
            self.mode = CaptureMode.CAPTURE
        return removed

    def finalize(self) -> CapturedDocument:
        self._require(CaptureMode.REVIEW, action="finalize")
        if not self.document:
            raise InvalidTransitionError("Cannot finalize an empty document")
        self.closed = True
        return self.document.freeze()

    def cancel(self) -> None:
        """Discard all pages; valid from any mode."""
        self.pending = None
        if not self.document.frozen:
            self.document.clear()
        self.mode = CaptureMode.CAPTURE
        self.closed = True

    def strip(self, current_page: Optional[int] = None) -> List[StripEntry]:
        return build_strip(
            self.document.pages,
            current_page=current_page,
            show_remove=self.mode == CaptureMode.REVIEW,
        )

    def to_read(self, current_page: Optional[int] = None) -> CaptureSessionRead:
        return CaptureSessionRead(
            id=self.id,
            collection_id=self.collection_id,
            mode=self.mode,
            page_count=self.confirmed_count,
            busy=self.busy,
            pending_page_number=self.pending.page_number if self.pending else None,
            pending_preview_uri=self.pending.preview_uri if self.pending else None,
            can_finish_single=self.can_finish_single,
            pages=self.strip(current_page),
        )


class CaptureSessionRegistry:
    """In-memory index of open capture sessions.

    Every lookup refreshes a session's ``last_active`` time.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._sessions: Dict[str, CaptureSession] = {}
        self._lock = asyncio.Lock()
        self.ttl_seconds = settings.CAPTURE_SESSION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock

    async def create(self, collection_id: str, uploaded_by: Optional[str] = None) -> CaptureSession:
        session = CaptureSession(collection_id, uploaded_by)
        session.last_active = self._clock()
        async with self._lock:
            self._expire_idle()
            self._sessions[session.id] = session
        logger.info("Capture session %s opened for collection %s", session.id, collection_id)
        return session

    def get(self, session_id: str) -> CaptureSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Capture session not found: {session_id}")
        session.last_active = self._clock()
        return session

    async def discard(self, session_id: str) -> Optional[CaptureSession]:
        async with self._lock:
            return self._sessions.pop(session_id, None)

    async def expire(self) -> List[str]:
        """Cancel and drop idle sessions; returns their ids."""
        async with self._lock:
            return self._expire_idle()

    def _expire_idle(self) -> List[str]:
        if not self.ttl_seconds or self.ttl_seconds <= 0:
            return []
        cutoff = self._clock() - self.ttl_seconds
        # A session mid-optimization is in use
        stale = [s for s in self._sessions.values() if s.last_active < cutoff and not s.busy]
        for session in stale:
            session.cancel()
            del self._sessions[session.id]
        if stale:
            logger.info("Expired %d idle capture sessions", len(stale))
        return [s.id for s in stale]

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = ["CaptureSession", "CaptureSessionRegistry"]
