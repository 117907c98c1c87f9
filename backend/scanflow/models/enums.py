"""Enumeration types used throughout the capture pipeline.

Enumerations make it easier to constrain the values that can be
stored in the database or passed through the API. When modifying these
enums you should update any corresponding database columns or Pydantic
validators so that new values are accepted where appropriate.
"""

from enum import Enum


class CaptureMode(str, Enum):
    """Mode of a camera capture session."""

    CAPTURE = "capture"
    PREVIEW = "preview"
    REVIEW = "review"


class ExtractionStatus(str, Enum):
    """Extraction state stored on a receipt row."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class IngestStatus(str, Enum):
    """Outcome of an ingest call as reported to the client."""

    CREATED = "created"
    VERIFICATION_REQUIRED = "verification_required"
