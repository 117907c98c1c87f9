"""Receipt extraction client.

Structured fields are extracted by an external service that reads the
uploaded page images straight from object storage.  This module only
speaks its wire contract::

    POST {EXTRACTION_URL}
    {"objectKeys": [...], "isMultiPage": bool, "collectionId": str,
     "parentReceiptId": str | absent}

    -> {"success": bool, "data": {...}, "error": str}

Any transport, HTTP or decoding failure, as well as an explicit
``success: false``, is raised as :class:`ExtractionError` so the
orchestrator can roll back the uploaded pages.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

import httpx
from pydantic import ValidationError

from scanflow.core.config import settings
from scanflow.core.exceptions import ExtractionError
from scanflow.models.schemas import ExtractionRequest, ExtractionResponse, ExtractionResult


logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Miscellaneous"
DEFAULT_PAYMENT_METHOD = "Unknown"


def normalise_extraction(data: Dict[str, Any]) -> ExtractionResult:
    """Validate raw extracted fields and fill the display defaults."""
    result = ExtractionResult.model_validate(data)
    updates: Dict[str, Any] = {}
    if not result.category:
        updates["category"] = DEFAULT_CATEGORY
    if not result.payment_method:
        updates["payment_method"] = DEFAULT_PAYMENT_METHOD
    return result.model_copy(update=updates) if updates else result


class ExtractionService:
    """Client for the receipt extraction endpoint.

    A custom ``transport`` can be passed for testing (``httpx.MockTransport``).
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url or settings.EXTRACTION_URL
        self.api_key = api_key if api_key is not None else settings.EXTRACTION_API_KEY
        self.timeout = float(timeout or settings.EXTRACTION_TIMEOUT_SECONDS)
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def extract(
        self,
        object_keys: Sequence[str],
        *,
        collection_id: str,
        parent_receipt_id: Optional[str] = None,
    ) -> ExtractionResult:
        """Extract fields for the pages stored under ``object_keys`` (page order).

        :raises ExtractionError: on any failure; no partial result is returned
        """
        if not object_keys:
            raise ExtractionError("No object keys to extract from")
        request = ExtractionRequest(
            object_keys=list(object_keys),
            is_multi_page=len(object_keys) > 1,
            collection_id=collection_id,
            parent_receipt_id=parent_receipt_id if len(object_keys) > 1 else None,
        )
        payload = request.model_dump(by_alias=True, exclude_none=True)
        logger.info(
            "[extraction] request pages=%d collection=%s parent=%s",
            len(object_keys),
            collection_id,
            request.parent_receipt_id,
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise ExtractionError(f"Extraction request failed: {e}", cause=e)

        if resp.status_code >= 400:
            raise ExtractionError(f"Extraction service returned HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            body = ExtractionResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise ExtractionError(f"Malformed extraction response: {e}", cause=e)

        if not body.success:
            raise ExtractionError(body.error or "Failed to extract receipt data")
        if not body.data:
            raise ExtractionError("Extraction succeeded but returned no data")

        try:
            result = normalise_extraction(body.data)
        except ValidationError as e:
            raise ExtractionError(f"Extraction data is invalid: {e}", cause=e)
        logger.info("[extraction] ok vendor=%s total=%s", result.vendor_name, result.total_amount)
        return result


__all__ = ["ExtractionService", "normalise_extraction", "DEFAULT_CATEGORY", "DEFAULT_PAYMENT_METHOD"]
