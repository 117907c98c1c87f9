"""Upload orchestration.

Turns a frozen :class:`CapturedDocument` into stored blobs, extracted
fields and receipt rows::

    pages (sequential) -> upload full + thumbnail (concurrent pair)
                       -> extraction (all full-image keys, page order)
                       -> N == 1: PendingVerification (nothing written yet)
                          N  > 1: parent row, then N child rows

Until persistence succeeds the orchestrator owns every uploaded key.
Any failure during upload or extraction deletes all of them (including
the half of a pair that did succeed) and no row is written; errors from
outside the pipeline are reported as ``UploadError`` or
``ExtractionError`` depending on the step that raised them.  The delete runs
shielded so a cancelled request still cleans up after itself.  A
failure while inserting rows is reported as ``PersistenceError``; the
uploaded blobs are then deleted unless
``settings.CLEANUP_ON_PERSISTENCE_FAILURE`` is turned off, in which case
their keys are reported on the error.  The error is only retry safe when
neither blobs nor rows were left behind.

Single-page results wait in :class:`VerificationRegistry` until the user
confirms or cancels them; entries older than
``settings.VERIFICATION_TTL_SECONDS`` are cancelled by
:meth:`UploadOrchestrator.expire_verifications`.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError

from scanflow.core.config import settings
from scanflow.core.exceptions import (
    ExtractionError,
    InvalidUploadError,
    PersistenceError,
    ScanflowError,
    UploadError,
    VerificationNotFoundError,
)
from scanflow.core.observability import sentry_breadcrumb, sentry_capture, sentry_set_tags
from scanflow.models.capture import (
    CapturedDocument,
    CapturedPage,
    IngestDestination,
    PendingVerification,
    PersistedReceipt,
    UploadedPageRef,
)
from scanflow.models.schemas import ExtractionCorrection
from scanflow.services.extraction_service import ExtractionService
from scanflow.services.receipt_repository import (
    ReceiptRepository,
    build_child_receipts,
    build_flat_receipt,
    build_parent_receipt,
)
from scanflow.services.storage_service import StorageService, build_page_keys

logger = logging.getLogger(__name__)

IngestResult = Union[PersistedReceipt, PendingVerification]


def _all_keys(refs: Sequence[UploadedPageRef]) -> List[str]:
    return [key for ref in refs for key in ref.keys]


class UploadOrchestrator:
    """Runs one document through upload, extraction and persistence."""

    def __init__(
        self,
        storage: StorageService,
        extraction: ExtractionService,
        repository: ReceiptRepository,
        cleanup_on_persistence_failure: Optional[bool] = None,
    ) -> None:
        self.storage = storage
        self.extraction = extraction
        self.repository = repository
        if cleanup_on_persistence_failure is None:
            cleanup_on_persistence_failure = settings.CLEANUP_ON_PERSISTENCE_FAILURE
        self.cleanup_on_persistence_failure = cleanup_on_persistence_failure

    # ------------------------------------------------------------------
    # Rollback helpers

    async def _rollback(self, keys: Sequence[str], reason: str) -> List[str]:
        """Delete ``keys`` even if the calling task is being cancelled."""
        if not keys:
            return []
        sentry_breadcrumb(
            category="ingest",
            message="ingest.rollback",
            level="warning",
            data={"reason": reason, "keys": len(keys)},
        )
        logger.warning("Rolling back %d uploaded objects (%s)", len(keys), reason)
        failed = await asyncio.shield(self.storage.delete(list(keys)))
        if failed:
            logger.error("Rollback left %d objects behind: %s", len(failed), failed)
        return failed

    async def _persistence_failed(
        self,
        receipt_id: str,
        refs: Sequence[UploadedPageRef],
        exc: SQLAlchemyError,
        orphaned_rows: Sequence[str] = (),
    ) -> PersistenceError:
        sentry_capture(exc)
        keys = _all_keys(refs)
        if self.cleanup_on_persistence_failure:
            orphaned = await self._rollback(keys, reason="persistence_failed")
        else:
            orphaned = keys
        logger.error(
            "Persisting receipt %s failed: %s (orphaned keys=%d rows=%d)",
            receipt_id,
            exc,
            len(orphaned),
            len(orphaned_rows),
        )
        return PersistenceError(
            f"Failed to save receipt {receipt_id}: {exc}",
            receipt_id=receipt_id,
            orphaned_keys=orphaned,
            orphaned_rows=orphaned_rows,
            cause=exc,
        )

    # ------------------------------------------------------------------
    # Upload

    async def _upload_page(self, page: CapturedPage, ref: UploadedPageRef, uploaded: List[str]) -> None:
        """Upload the full/thumbnail pair concurrently; record what succeeded."""
        results = await asyncio.gather(
            self.storage.upload(ref.full_object_key, page.full_image.data, page.full_image.mime_type),
            self.storage.upload(ref.thumbnail_object_key, page.thumbnail.data, page.thumbnail.mime_type),
            return_exceptions=True,
        )
        failure: Optional[BaseException] = None
        for key, result in zip(ref.keys, results):
            if isinstance(result, BaseException):
                failure = failure or result
            else:
                uploaded.append(key)
        if failure is not None:
            if isinstance(failure, asyncio.CancelledError):
                raise failure
            raise UploadError(
                f"Failed to upload page {page.page_number}: {failure}",
                page_number=page.page_number,
                cause=failure,
            )

    # ------------------------------------------------------------------
    # Public API

    async def ingest(self, document: CapturedDocument, destination: IngestDestination) -> IngestResult:
        """Upload, extract and (for multi-page documents) persist ``document``.

        Single-page documents stop before persistence and return a
        :class:`PendingVerification`; see :meth:`confirm_verification`.

        :raises UploadError: an object upload failed (rolled back)
        :raises ExtractionError: extraction failed (rolled back)
        :raises PersistenceError: a row insert failed after extraction
        """
        if not document:
            raise InvalidUploadError("Cannot ingest an empty document")
        document.freeze()
        pages = document.pages
        total = len(pages)
        receipt_id = str(uuid.uuid4())
        sentry_set_tags({"ingest.pages": total, "ingest.collection": destination.collection_id})
        logger.info("Ingesting receipt %s pages=%d collection=%s", receipt_id, total, destination.collection_id)

        refs: List[UploadedPageRef] = []
        uploaded: List[str] = []
        in_flight: Sequence[str] = ()
        extracting = False
        try:
            for page in pages:
                ref = build_page_keys(destination.owner, receipt_id, page.page_number)
                in_flight = ref.keys
                await self._upload_page(page, ref, uploaded)
                in_flight = ()
                refs.append(ref)
                sentry_breadcrumb(
                    category="ingest",
                    message="ingest.page_uploaded",
                    data={"receipt_id": receipt_id, "page": page.page_number, "total": total},
                )
            sentry_breadcrumb(category="ingest", message="ingest.extraction_start", data={"receipt_id": receipt_id})
            extracting = True
            extraction = await self.extraction.extract(
                [ref.full_object_key for ref in refs],
                collection_id=destination.collection_id,
                parent_receipt_id=receipt_id if total > 1 else None,
            )
        except asyncio.CancelledError:
            # Pair may have landed without reporting back
            await self._rollback(uploaded + [k for k in in_flight if k not in uploaded], reason="cancelled")
            raise
        except Exception as exc:
            await self._rollback(uploaded, reason=type(exc).__name__)
            if isinstance(exc, ScanflowError):
                raise
            sentry_capture(exc)
            if extracting:
                raise ExtractionError(f"Extraction failed for receipt {receipt_id}: {exc}", cause=exc)
            raise UploadError(f"Upload failed for receipt {receipt_id}: {exc}", cause=exc)

        if total == 1:
            logger.info("Receipt %s awaiting verification", receipt_id)
            return PendingVerification(
                receipt_id=receipt_id,
                collection_id=destination.collection_id,
                uploaded_by=destination.uploaded_by,
                page_ref=refs[0],
                extraction=extraction,
            )
        return await self._persist_multi_page(receipt_id, destination, refs, extraction)

    async def _persist_multi_page(self, receipt_id, destination, refs, extraction) -> PersistedReceipt:
        parent = build_parent_receipt(
            receipt_id, destination.collection_id, destination.uploaded_by, len(refs), extraction
        )
        try:
            await self.repository.insert(parent)
        except SQLAlchemyError as exc:
            raise await self._persistence_failed(receipt_id, refs, exc)

        children = build_child_receipts(receipt_id, destination.collection_id, destination.uploaded_by, refs)
        try:
            await self.repository.insert_many(children)
        except SQLAlchemyError as exc:
            orphaned_rows: List[str] = []
            try:
                await self.repository.delete([receipt_id])
            except SQLAlchemyError as cleanup_exc:
                logger.error("Could not remove parent receipt %s: %s", receipt_id, cleanup_exc)
                orphaned_rows.append(receipt_id)
            raise await self._persistence_failed(receipt_id, refs, exc, orphaned_rows)

        logger.info("Receipt %s saved with %d pages", receipt_id, len(children))
        return PersistedReceipt(
            receipt_id=receipt_id,
            collection_id=destination.collection_id,
            total_pages=len(refs),
            page_refs=list(refs),
            extraction=extraction,
            child_ids=[child.id for child in children],
        )

    async def confirm_verification(
        self, pending: PendingVerification, correction: Optional[ExtractionCorrection] = None
    ) -> PersistedReceipt:
        """Insert the flat row for a verified single-page receipt."""
        extraction = correction.apply(pending.extraction) if correction else pending.extraction
        record = build_flat_receipt(
            pending.receipt_id, pending.collection_id, pending.uploaded_by, pending.page_ref, extraction
        )
        try:
            await self.repository.insert(record)
        except SQLAlchemyError as exc:
            raise await self._persistence_failed(pending.receipt_id, [pending.page_ref], exc)
        logger.info("Receipt %s verified and saved", pending.receipt_id)
        return PersistedReceipt(
            receipt_id=pending.receipt_id,
            collection_id=pending.collection_id,
            total_pages=1,
            page_refs=[pending.page_ref],
            extraction=extraction,
        )

    async def cancel_verification(self, pending: PendingVerification) -> None:
        """Discard a single-page upload: its blobs are deleted, no row is written."""
        await self._rollback(list(pending.page_ref.keys), reason="verification_cancelled")
        logger.info("Receipt %s verification cancelled", pending.receipt_id)

    async def expire_verifications(self, registry: VerificationRegistry) -> int:
        """Cancel verifications nobody confirmed in time; returns how many."""
        stale = registry.pop_expired()
        for pending in stale:
            await self.cancel_verification(pending)
        if stale:
            logger.info("Expired %d unconfirmed verifications", len(stale))
        return len(stale)


class VerificationRegistry:
    """Pending single-page verifications, keyed by receipt id.

    Entries older than ``ttl_seconds`` are handed out by
    :meth:`pop_expired` so their blobs can be deleted.  A ``ttl_seconds``
    of 0 keeps entries until they are confirmed or cancelled.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._pending: Dict[str, PendingVerification] = {}
        self._added_at: Dict[str, float] = {}
        self.ttl_seconds = settings.VERIFICATION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock

    def add(self, pending: PendingVerification) -> PendingVerification:
        self._pending[pending.receipt_id] = pending
        self._added_at[pending.receipt_id] = self._clock()
        return pending

    def get(self, receipt_id: str) -> PendingVerification:
        pending = self._pending.get(receipt_id)
        if pending is None:
            raise VerificationNotFoundError(f"No pending verification: {receipt_id}")
        return pending

    def pop(self, receipt_id: str) -> PendingVerification:
        pending = self.get(receipt_id)
        del self._pending[receipt_id]
        self._added_at.pop(receipt_id, None)
        return pending

    def pop_expired(self) -> List[PendingVerification]:
        if not self.ttl_seconds or self.ttl_seconds <= 0:
            return []
        cutoff = self._clock() - self.ttl_seconds
        stale = [rid for rid, added in self._added_at.items() if added < cutoff]
        return [self.pop(rid) for rid in stale]

    def __len__(self) -> int:
        return len(self._pending)


__all__ = ["UploadOrchestrator", "VerificationRegistry", "IngestResult"]
