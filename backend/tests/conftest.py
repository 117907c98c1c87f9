from __future__ import annotations

import asyncio
import sys
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from urllib3.exceptions import MaxRetryError

# Add backend folder to sys.path so `import scanflow...` works in tests when running from the repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import fitz  # noqa: E402
from PIL import Image  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from scanflow.core.database import Base  # noqa: E402
from scanflow.core.exceptions import ExtractionError  # noqa: E402
from scanflow.models import tables  # noqa: E402,F401
from scanflow.models.schemas import ExtractionResult  # noqa: E402


def make_image_bytes(width: int = 300, height: int = 200, color=(200, 30, 30), fmt: str = "JPEG", mode: str = "RGB", exif=None) -> bytes:
    img = Image.new(mode, (width, height), color)
    buf = BytesIO()
    kwargs = {}
    if exif is not None:
        kwargs["exif"] = exif
    img.save(buf, format=fmt, **kwargs)
    return buf.getvalue()


def make_pdf_bytes(pages: int = 2, width: int = 200, height: int = 300) -> bytes:
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=width, height=height)
        page.insert_text((20, 50), f"Receipt page {i + 1}")
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def image_bytes():
    return make_image_bytes


@pytest.fixture
def pdf_bytes():
    return make_pdf_bytes


class RecordingStorage:
    """In-memory stand-in for StorageService that records every call."""

    backend = "memory"

    def __init__(self, fail_keys: Optional[List[str]] = None) -> None:
        self.objects: Dict[str, bytes] = {}
        self.uploads: List[str] = []
        self.deleted: List[str] = []
        self.events: List[tuple] = []
        self.fail_keys = fail_keys or []

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        self.uploads.append(key)
        self.events.append(("start", key))
        await asyncio.sleep(0)
        if any(fragment in key for fragment in self.fail_keys):
            self.events.append(("fail", key))
            raise RuntimeError(f"simulated upload failure for {key}")
        self.objects[key] = data
        self.events.append(("end", key))
        return key

    async def download(self, key: str) -> bytes:
        if key not in self.objects:
            raise FileNotFoundError(key)
        return self.objects[key]

    async def delete(self, keys) -> List[str]:
        for key in keys:
            self.deleted.append(key)
            self.objects.pop(key, None)
        return []

    async def signed_url(self, key: str, expires_in: Optional[int] = None) -> str:
        return f"memory://{key}?expires_in={expires_in}"


class UnreachableMinio:
    """Minio client stand-in whose endpoint refuses connections.

    Uploads fail only for keys containing ``fail_fragment``; every
    download and delete fails.
    """

    def __init__(self, fail_fragment: Optional[str] = None) -> None:
        self.fail_fragment = fail_fragment
        self.stored: Dict[str, bytes] = {}
        self.remove_calls: List[str] = []

    def _refuse(self, key: str):
        raise MaxRetryError(None, f"/receipts/{key}", reason=ConnectionRefusedError("connection refused"))

    def bucket_exists(self, bucket: str) -> bool:
        return True

    def put_object(self, bucket, key, data, length, content_type=None):
        if self.fail_fragment and self.fail_fragment in key:
            self._refuse(key)
        self.stored[key] = data.read()

    def get_object(self, bucket, key):
        self._refuse(key)

    def remove_object(self, bucket, key):
        self.remove_calls.append(key)
        self._refuse(key)


class FakeExtraction:
    """Extraction stand-in returning a fixed result (or raising)."""

    def __init__(self, result: Optional[ExtractionResult] = None, error: Optional[Exception] = None) -> None:
        self.result = result or ExtractionResult(
            vendor_name="Corner Store",
            total_amount=42.5,
            category="Groceries",
            payment_method="Card",
            gst_percent=5,
            card_last_digits="4242",
        )
        self.error = error
        self.calls: List[dict] = []

    async def extract(self, object_keys, *, collection_id, parent_receipt_id=None):
        self.calls.append(
            {"object_keys": list(object_keys), "collection_id": collection_id, "parent_receipt_id": parent_receipt_id}
        )
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def storage():
    return RecordingStorage()


@pytest.fixture
def extraction():
    return FakeExtraction()


@pytest.fixture
def failing_extraction():
    return FakeExtraction(error=ExtractionError("Failed to extract receipt data"))


@pytest_asyncio.fixture
async def db_session():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    async with Session() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def make_storage():
    return RecordingStorage


@pytest.fixture
def make_extraction():
    return FakeExtraction


@pytest.fixture
def unreachable_minio():
    return UnreachableMinio
