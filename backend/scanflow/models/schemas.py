"""Pydantic schemas for request and response models.

Pydantic models are used for validating and serialising data that
crosses the boundary of the API or of the extraction service. This
module defines both the domain schemas (``ExtractionResult`` and the
extraction request/response envelope) and API facing schemas for
receipts, capture sessions and pending verifications.

Schemas are intentionally separate from the ORM models so that the
shapes exposed through the API can differ from what is stored in the
database.
"""

from __future__ import annotations

import datetime as dt
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import CaptureMode, ExtractionStatus, IngestStatus


_AMOUNT_STRIP = re.compile(r"[^0-9.+-]")


def parse_amount(value: Any) -> Optional[float]:
    """Parse a monetary amount that may arrive as a string with symbols."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _AMOUNT_STRIP.sub("", str(value).replace(",", ""))
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Extraction service contract


class ExtractionResult(BaseModel):
    """Structured receipt fields guessed by the extraction service."""

    model_config = ConfigDict(extra="ignore")

    vendor_name: Optional[str] = None
    vendor_address: Optional[str] = None
    transaction_date: Optional[dt.date] = None
    transaction_time: Optional[str] = None
    subtotal: Optional[float] = None
    gst_amount: Optional[float] = None
    pst_amount: Optional[float] = None
    gst_percent: Optional[float] = None
    pst_percent: Optional[float] = None
    total_amount: float = Field(description="Receipt total; the only required field")
    category: Optional[str] = None
    payment_method: Optional[str] = None
    card_last_digits: Optional[str] = None
    customer_name: Optional[str] = None

    @field_validator("subtotal", "gst_amount", "pst_amount", "gst_percent", "pst_percent", mode="before")
    def _optional_amount(cls, v):
        return parse_amount(v)

    @field_validator("total_amount", mode="before")
    def _required_amount(cls, v):
        amount = parse_amount(v)
        if amount is None:
            raise ValueError("total_amount is required")
        return amount

    @field_validator("transaction_date", mode="before")
    def _lenient_date(cls, v):
        if v in (None, ""):
            return None
        if isinstance(v, (dt.date, dt.datetime)):
            return v
        try:
            return dt.date.fromisoformat(str(v)[:10])
        except ValueError:
            return None

    @field_validator("card_last_digits", mode="before")
    def _last_four(cls, v):
        if v in (None, ""):
            return None
        digits = "".join(c for c in str(v) if c.isdigit())
        return digits[-4:] or None


class ExtractionCorrection(BaseModel):
    """User corrections applied during single-page verification."""

    vendor_name: Optional[str] = None
    vendor_address: Optional[str] = None
    transaction_date: Optional[dt.date] = None
    transaction_time: Optional[str] = None
    subtotal: Optional[float] = None
    gst_amount: Optional[float] = None
    pst_amount: Optional[float] = None
    gst_percent: Optional[float] = None
    pst_percent: Optional[float] = None
    total_amount: Optional[float] = None
    category: Optional[str] = None
    payment_method: Optional[str] = None
    card_last_digits: Optional[str] = None
    customer_name: Optional[str] = None

    def apply(self, result: ExtractionResult) -> ExtractionResult:
        updates = self.model_dump(exclude_unset=True, exclude_none=True)
        return result.model_copy(update=updates)


class ExtractionRequest(BaseModel):
    """Wire request sent to the extraction service."""

    model_config = ConfigDict(populate_by_name=True)

    object_keys: List[str] = Field(alias="objectKeys")
    is_multi_page: bool = Field(alias="isMultiPage")
    collection_id: str = Field(alias="collectionId")
    parent_receipt_id: Optional[str] = Field(default=None, alias="parentReceiptId")


class ExtractionResponse(BaseModel):
    """Wire response returned by the extraction service."""

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# API request/response schemas


class PageRead(BaseModel):
    id: str
    page_number: Optional[int] = None
    file_path: Optional[str] = None
    thumbnail_path: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ReceiptRead(BaseModel):
    id: str
    collection_id: str
    uploaded_by: Optional[str] = None
    file_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    vendor_name: Optional[str] = None
    vendor_address: Optional[str] = None
    transaction_date: Optional[dt.date] = None
    total_amount: Optional[float] = None
    subtotal: Optional[float] = None
    gst_amount: Optional[float] = None
    pst_amount: Optional[float] = None
    category: Optional[str] = None
    payment_method: Optional[str] = None
    extraction_status: ExtractionStatus
    extraction_data: Optional[Dict[str, Any]] = None
    is_parent: bool = False
    parent_receipt_id: Optional[str] = None
    page_number: Optional[int] = None
    total_pages: Optional[int] = None
    created_at: dt.datetime
    pages: List[PageRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class SignedPageUrls(BaseModel):
    page_number: int
    url: str
    thumbnail_url: str
    expires_in: int


class VerificationRead(BaseModel):
    verification_id: str
    collection_id: str
    file_path: str
    thumbnail_path: str
    data: ExtractionResult


class IngestResponse(BaseModel):
    status: IngestStatus
    receipt: Optional[ReceiptRead] = None
    verification: Optional[VerificationRead] = None


class StripEntry(BaseModel):
    id: str
    page_number: int
    preview_uri: str
    selected: bool = False
    removable: bool = False


class CaptureSessionRead(BaseModel):
    id: str
    collection_id: str
    mode: CaptureMode
    page_count: int
    busy: bool = False
    pending_page_number: Optional[int] = None
    pending_preview_uri: Optional[str] = None
    can_finish_single: bool = False
    pages: List[StripEntry] = Field(default_factory=list)


class CaptureSessionCreate(BaseModel):
    collection_id: str
    uploaded_by: Optional[str] = None
