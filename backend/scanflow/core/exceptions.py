"""Error taxonomy for the capture and ingestion pipeline.

Every error carries the pipeline ``stage`` it happened in and whether
retrying is safe.  The distinction matters to the user: anything that
fails before upload (or is rolled back) left no trace and can simply be
tried again, while a persistence failure after a successful upload may
leave stored blobs behind and must not be blindly retried.
"""

from __future__ import annotations

from typing import Iterable, Optional


STAGE_PRE_UPLOAD = "pre_upload"
STAGE_PRE_PERSISTENCE = "pre_persistence"
STAGE_POST_UPLOAD = "post_upload"

RETRY_MESSAGE = "Nothing was saved. Please try again."
SUPPORT_MESSAGE = (
    "Your receipt was uploaded but could not be saved. "
    "Please contact support before retrying."
)


class ScanflowError(Exception):
    """Base class for all pipeline errors."""

    stage: str = STAGE_PRE_UPLOAD
    retry_safe: bool = True
    status_code: int = 400

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        if cause is not None:
            self.__cause__ = cause

    @property
    def user_message(self) -> str:
        return RETRY_MESSAGE if self.retry_safe else SUPPORT_MESSAGE

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "detail": self.message,
            "stage": self.stage,
            "retry_safe": self.retry_safe,
            "message": self.user_message,
        }


class DecodeError(ScanflowError):
    """Input bytes are not a decodable image."""

    status_code = 422


class EncodeError(ScanflowError):
    """An optimized derivative could not be encoded."""

    status_code = 500


class RasterizationError(ScanflowError):
    """A page of a paginated document failed to render."""

    status_code = 422

    def __init__(self, message: str, *, page_index: Optional[int] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, cause=cause)
        self.page_index = page_index

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["page_index"] = self.page_index
        return body


class UploadError(ScanflowError):
    """An object storage upload failed; already-uploaded blobs were removed."""

    stage = STAGE_PRE_PERSISTENCE
    status_code = 502

    def __init__(self, message: str, *, page_number: Optional[int] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, cause=cause)
        self.page_number = page_number


class ExtractionError(ScanflowError):
    """The extraction service failed or reported ``success: false``."""

    stage = STAGE_PRE_PERSISTENCE
    status_code = 502


class PersistenceError(ScanflowError):
    """Database insert failed after blobs were uploaded and extracted.

    Retrying is only safe when the failure left nothing behind: no stored
    blobs (``orphaned_keys``) and no partially written rows
    (``orphaned_rows``).
    """

    stage = STAGE_POST_UPLOAD
    retry_safe = False
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        receipt_id: Optional[str] = None,
        orphaned_keys: Iterable[str] = (),
        orphaned_rows: Iterable[str] = (),
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.receipt_id = receipt_id
        self.orphaned_keys = list(orphaned_keys)
        self.orphaned_rows = list(orphaned_rows)
        self.retry_safe = not (self.orphaned_keys or self.orphaned_rows)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["receipt_id"] = self.receipt_id
        body["orphaned_keys"] = self.orphaned_keys
        body["orphaned_rows"] = self.orphaned_rows
        return body


class InvalidTransitionError(ScanflowError):
    """A capture action was requested in a mode that does not allow it."""

    status_code = 409


class CaptureBusyError(ScanflowError):
    """A photo is still being optimized; further captures are blocked."""

    status_code = 409


class DocumentFrozenError(ScanflowError):
    """The document was handed to the orchestrator and can no longer change."""

    status_code = 409


class SessionNotFoundError(ScanflowError):
    status_code = 404


class VerificationNotFoundError(ScanflowError):
    status_code = 404


class InvalidUploadError(ScanflowError):
    """Rejected input: wrong content type, too large, or too many pages."""

    status_code = 400
