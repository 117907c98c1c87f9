"""SQLAlchemy ORM models for receipt storage.

A single-page receipt is one flat row carrying both the extracted
content and its object keys.  A multi-page receipt is one parent row
(content only, ``is_parent`` set, ``total_pages`` = N) plus N child rows
that point back at the parent and carry the object keys of one page
each.

If you extend or modify these models remember to call the ``init_db``
helper during development to recreate the tables.
"""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Date,
    Boolean,
    Enum,
    Float,
    ForeignKey,
    Index,
    JSON,
)
from sqlalchemy.orm import relationship

from scanflow.core.database import Base
from .enums import ExtractionStatus


def _new_id() -> str:
    return str(uuid.uuid4())


class Receipt(Base):
    """Flat, parent or child receipt row."""

    __tablename__ = "receipts"

    id = Column(String(36), primary_key=True, default=_new_id)
    collection_id = Column(String, nullable=False, index=True)
    uploaded_by = Column(String, nullable=True)

    # Object storage keys (flat and child rows only)
    file_path = Column(String, nullable=True)
    thumbnail_path = Column(String, nullable=True)
    file_type = Column(String, nullable=True)

    # Content fields (flat and parent rows only)
    vendor_name = Column(String, nullable=True)
    vendor_address = Column(String, nullable=True)
    transaction_date = Column(Date, nullable=True)
    total_amount = Column(Float, nullable=True)
    subtotal = Column(Float, nullable=True)
    gst_amount = Column(Float, nullable=True)
    pst_amount = Column(Float, nullable=True)
    category = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    extraction_status = Column(Enum(ExtractionStatus), default=ExtractionStatus.COMPLETED, nullable=False)
    # Secondary extracted fields (time, tax percents, card digits, customer)
    extraction_data = Column(JSON, nullable=True)

    # Multi-page linkage
    is_parent = Column(Boolean, default=False, nullable=False)
    parent_receipt_id = Column(String(36), ForeignKey("receipts.id", ondelete="CASCADE"), nullable=True, index=True)
    page_number = Column(Integer, nullable=True)
    total_pages = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False)

    children = relationship(
        "Receipt",
        back_populates="parent",
        order_by="Receipt.page_number",
        cascade="all, delete-orphan",
    )
    parent = relationship("Receipt", back_populates="children", remote_side=[id])

    __table_args__ = (
        Index("ix_receipts_parent_page", "parent_receipt_id", "page_number", unique=True),
    )
