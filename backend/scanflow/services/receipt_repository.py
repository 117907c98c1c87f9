"""Data access for the ``receipts`` table.

The repository owns the commit boundary: each write method commits on
success and rolls the session back before re-raising on failure, so a
failed insert never leaves half-flushed rows in the session.  Callers
translate ``SQLAlchemyError`` into the pipeline's ``PersistenceError``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scanflow.models.enums import ExtractionStatus
from scanflow.models.schemas import ExtractionResult
from scanflow.models.tables import Receipt
from scanflow.models.capture import UploadedPageRef

logger = logging.getLogger(__name__)

PAGE_FILE_TYPE = "image/webp"

# Fields with their own column; everything else extracted goes to extraction_data
_CONTENT_COLUMNS = (
    "vendor_name",
    "vendor_address",
    "transaction_date",
    "total_amount",
    "subtotal",
    "gst_amount",
    "pst_amount",
    "category",
    "payment_method",
)
_SECONDARY_FIELDS = (
    "transaction_time",
    "gst_percent",
    "pst_percent",
    "card_last_digits",
    "customer_name",
)


def content_values(extraction: ExtractionResult) -> Dict[str, Any]:
    """Column values for a flat or parent row built from extracted fields."""
    values: Dict[str, Any] = {name: getattr(extraction, name) for name in _CONTENT_COLUMNS}
    values["extraction_data"] = {
        name: getattr(extraction, name) for name in _SECONDARY_FIELDS if getattr(extraction, name) is not None
    }
    values["extraction_status"] = ExtractionStatus.COMPLETED
    return values


def build_flat_receipt(
    receipt_id: str,
    collection_id: str,
    uploaded_by: Optional[str],
    page_ref: UploadedPageRef,
    extraction: ExtractionResult,
) -> Receipt:
    return Receipt(
        id=receipt_id,
        collection_id=collection_id,
        uploaded_by=uploaded_by,
        file_path=page_ref.full_object_key,
        thumbnail_path=page_ref.thumbnail_object_key,
        file_type=PAGE_FILE_TYPE,
        is_parent=False,
        **content_values(extraction),
    )


def build_parent_receipt(
    receipt_id: str,
    collection_id: str,
    uploaded_by: Optional[str],
    total_pages: int,
    extraction: ExtractionResult,
) -> Receipt:
    """Parent row: content only, no object keys."""
    return Receipt(
        id=receipt_id,
        collection_id=collection_id,
        uploaded_by=uploaded_by,
        is_parent=True,
        total_pages=total_pages,
        page_number=1,
        **content_values(extraction),
    )


def build_child_receipts(
    parent_id: str,
    collection_id: str,
    uploaded_by: Optional[str],
    page_refs: Sequence[UploadedPageRef],
) -> List[Receipt]:
    """One row per page, in page order; no content fields."""
    total = len(page_refs)
    return [
        Receipt(
            id=str(uuid.uuid4()),
            collection_id=collection_id,
            uploaded_by=uploaded_by,
            parent_receipt_id=parent_id,
            page_number=index,
            total_pages=total,
            file_path=ref.full_object_key,
            thumbnail_path=ref.thumbnail_object_key,
            file_type=PAGE_FILE_TYPE,
            is_parent=False,
            extraction_status=ExtractionStatus.COMPLETED,
        )
        for index, ref in enumerate(page_refs, start=1)
    ]


class ReceiptRepository:
    """Async repository over one ``AsyncSession``."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise

    async def insert(self, record: Receipt) -> Receipt:
        self.session.add(record)
        await self._commit()
        logger.debug("Inserted receipt id=%s parent=%s", record.id, record.is_parent)
        return record

    async def insert_many(self, records: Iterable[Receipt]) -> List[Receipt]:
        """Insert all ``records`` in one transaction (all or nothing)."""
        rows = list(records)
        self.session.add_all(rows)
        await self._commit()
        logger.debug("Inserted %d receipt rows", len(rows))
        return rows

    async def update(self, receipt_id: str, values: Dict[str, Any]) -> Optional[Receipt]:
        if values:
            await self.session.execute(update(Receipt).where(Receipt.id == receipt_id).values(**values))
            await self._commit()
        return await self.get(receipt_id, refresh=True)

    async def delete(self, ids: Iterable[str]) -> int:
        """Delete rows by id (children first), returning the number removed."""
        id_list = list(ids)
        if not id_list:
            return 0
        children = await self.session.execute(delete(Receipt).where(Receipt.parent_receipt_id.in_(id_list)))
        rows = await self.session.execute(delete(Receipt).where(Receipt.id.in_(id_list)))
        await self._commit()
        return int(children.rowcount or 0) + int(rows.rowcount or 0)

    async def get(self, receipt_id: str, refresh: bool = False) -> Optional[Receipt]:
        query = select(Receipt).where(Receipt.id == receipt_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_children(self, parent_id: str) -> List[Receipt]:
        result = await self.session.execute(
            select(Receipt).where(Receipt.parent_receipt_id == parent_id).order_by(Receipt.page_number)
        )
        return list(result.scalars().all())


__all__ = [
    "ReceiptRepository",
    "build_flat_receipt",
    "build_parent_receipt",
    "build_child_receipts",
    "content_values",
]
