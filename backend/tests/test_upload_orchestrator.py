from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from scanflow.core.exceptions import (
    DocumentFrozenError,
    ExtractionError,
    PersistenceError,
    UploadError,
    VerificationNotFoundError,
)
from scanflow.models.capture import (
    CapturedDocument,
    CapturedPage,
    IngestDestination,
    PendingVerification,
    PersistedReceipt,
)
from scanflow.models.schemas import ExtractionCorrection
from scanflow.models.tables import Receipt
from scanflow.services.page_sources import PdfSource, build_document
from scanflow.services.receipt_repository import ReceiptRepository
from scanflow.services.storage_service import StorageService
from scanflow.services.upload_orchestrator import UploadOrchestrator, VerificationRegistry
from scanflow.utils.image_processing import optimize_image

DEST = IngestDestination(collection_id="col-1", uploaded_by="user-1")


async def _document(image_bytes, pages: int) -> CapturedDocument:
    document = CapturedDocument()
    for i in range(pages):
        images = await optimize_image(image_bytes(120 + i, 80))
        document.append(CapturedPage.from_optimized(images, page_number=i + 1))
    return document


async def _row_count(session) -> int:
    return (await session.execute(select(func.count(Receipt.id)))).scalar()


class FailingChildrenRepository(ReceiptRepository):
    async def insert_many(self, records):
        raise SQLAlchemyError("simulated insert failure")


class StuckParentRepository(FailingChildrenRepository):
    async def delete(self, ids):
        raise SQLAlchemyError("simulated delete failure")


@pytest.mark.asyncio
async def test_single_page_goes_through_verification(image_bytes, storage, extraction, db_session):
    orchestrator = UploadOrchestrator(storage, extraction, ReceiptRepository(db_session))
    document = await _document(image_bytes, 1)

    result = await orchestrator.ingest(document, DEST)

    assert isinstance(result, PendingVerification)
    assert sorted(storage.objects) == sorted(result.page_ref.keys)
    assert result.page_ref.full_object_key.startswith(f"user-1/{result.receipt_id}/page_1_")
    assert result.page_ref.thumbnail_object_key.endswith("_thumb.webp")
    assert extraction.calls == [
        {"object_keys": [result.page_ref.full_object_key], "collection_id": "col-1", "parent_receipt_id": None}
    ]
    # Nothing written until the user confirms
    assert await _row_count(db_session) == 0

    saved = await orchestrator.confirm_verification(result, ExtractionCorrection(vendor_name="Fixed Name"))
    assert isinstance(saved, PersistedReceipt)
    assert not saved.is_multi_page

    row = await ReceiptRepository(db_session).get(result.receipt_id)
    assert row.is_parent is False
    assert row.parent_receipt_id is None
    assert row.file_path == result.page_ref.full_object_key
    assert row.thumbnail_path == result.page_ref.thumbnail_object_key
    assert row.vendor_name == "Fixed Name"
    assert row.total_amount == 42.5
    assert row.extraction_data == {"gst_percent": 5.0, "card_last_digits": "4242"}
    assert storage.deleted == []


@pytest.mark.asyncio
async def test_multi_page_persists_parent_and_children(image_bytes, storage, extraction, db_session):
    repo = ReceiptRepository(db_session)
    orchestrator = UploadOrchestrator(storage, extraction, repo)
    document = await _document(image_bytes, 3)

    result = await orchestrator.ingest(document, DEST)

    assert isinstance(result, PersistedReceipt)
    assert result.total_pages == 3 and len(result.child_ids) == 3
    assert len(storage.objects) == 6

    call = extraction.calls[0]
    assert call["object_keys"] == [ref.full_object_key for ref in result.page_refs]
    assert call["parent_receipt_id"] == result.receipt_id
    assert [f"page_{n}_" in key for n, key in enumerate(call["object_keys"], start=1)] == [True] * 3

    parent = await repo.get(result.receipt_id)
    assert parent.is_parent is True
    assert parent.total_pages == 3
    assert parent.file_path is None
    assert parent.vendor_name == "Corner Store"

    children = await repo.get_children(result.receipt_id)
    assert [c.page_number for c in children] == [1, 2, 3]
    assert [c.file_path for c in children] == [ref.full_object_key for ref in result.page_refs]
    assert all(c.total_pages == 3 and c.vendor_name is None for c in children)
    assert await _row_count(db_session) == 4


@pytest.mark.asyncio
async def test_pages_upload_sequentially_with_concurrent_pairs(image_bytes, storage, extraction, db_session):
    orchestrator = UploadOrchestrator(storage, extraction, ReceiptRepository(db_session))
    await orchestrator.ingest(await _document(image_bytes, 2), DEST)

    def index(kind, fragment, thumb):
        for i, (k, key) in enumerate(storage.events):
            if k == kind and fragment in key and key.endswith("_thumb.webp") == thumb:
                return i
        raise AssertionError(f"{kind} {fragment} not recorded")

    page_1_done = max(index("end", "page_1_", False), index("end", "page_1_", True))
    page_2_start = min(index("start", "page_2_", False), index("start", "page_2_", True))
    assert page_2_start > page_1_done
    # Both halves of a pair are in flight together
    assert index("start", "page_1_", True) < index("end", "page_1_", False)


@pytest.mark.asyncio
async def test_upload_failure_rolls_back_everything(image_bytes, make_storage, extraction, db_session):
    storage = make_storage(fail_keys=["page_2_"])
    orchestrator = UploadOrchestrator(storage, extraction, ReceiptRepository(db_session))
    document = await _document(image_bytes, 3)

    with pytest.raises(UploadError) as exc:
        await orchestrator.ingest(document, DEST)

    assert exc.value.page_number == 2
    assert exc.value.retry_safe is True
    assert storage.objects == {}
    assert len(storage.deleted) == 2
    assert all("page_1_" in key for key in storage.deleted)
    assert not any("page_3_" in key for key in storage.uploads)
    assert extraction.calls == []
    assert await _row_count(db_session) == 0


@pytest.mark.asyncio
async def test_half_failed_pair_is_deleted(image_bytes, make_storage, extraction, db_session):
    # Only the thumbnail upload fails
    storage = make_storage(fail_keys=["_thumb.webp"])
    orchestrator = UploadOrchestrator(storage, extraction, ReceiptRepository(db_session))

    with pytest.raises(UploadError):
        await orchestrator.ingest(await _document(image_bytes, 1), DEST)

    assert len(storage.deleted) == 1
    assert storage.deleted[0].endswith(".webp") and not storage.deleted[0].endswith("_thumb.webp")
    assert storage.objects == {}


@pytest.mark.asyncio
async def test_extraction_failure_rolls_back_all_pages(image_bytes, storage, failing_extraction, db_session):
    orchestrator = UploadOrchestrator(storage, failing_extraction, ReceiptRepository(db_session))

    with pytest.raises(ExtractionError) as exc:
        await orchestrator.ingest(await _document(image_bytes, 2), DEST)

    assert exc.value.stage == "pre_persistence"
    assert sorted(storage.deleted) == sorted(storage.uploads)
    assert storage.objects == {}
    assert await _row_count(db_session) == 0


@pytest.mark.asyncio
async def test_cancel_verification_deletes_blobs(image_bytes, storage, extraction, db_session):
    orchestrator = UploadOrchestrator(storage, extraction, ReceiptRepository(db_session))
    pending = await orchestrator.ingest(await _document(image_bytes, 1), DEST)

    await orchestrator.cancel_verification(pending)

    assert sorted(storage.deleted) == sorted(pending.page_ref.keys)
    assert storage.objects == {}
    assert await _row_count(db_session) == 0


@pytest.mark.asyncio
async def test_persistence_failure_cleans_up_blobs_and_parent(image_bytes, storage, extraction, db_session):
    orchestrator = UploadOrchestrator(
        storage, extraction, FailingChildrenRepository(db_session), cleanup_on_persistence_failure=True
    )

    with pytest.raises(PersistenceError) as exc:
        await orchestrator.ingest(await _document(image_bytes, 2), DEST)

    err = exc.value
    assert err.stage == "post_upload"
    assert err.orphaned_keys == [] and err.orphaned_rows == []
    # Nothing was left behind so a retry is safe
    assert err.retry_safe is True
    assert err.to_dict()["message"] == "Nothing was saved. Please try again."
    assert storage.objects == {}
    assert await _row_count(db_session) == 0


@pytest.mark.asyncio
async def test_persistence_failure_reports_orphans_when_cleanup_disabled(image_bytes, storage, extraction, db_session):
    orchestrator = UploadOrchestrator(
        storage, extraction, FailingChildrenRepository(db_session), cleanup_on_persistence_failure=False
    )

    with pytest.raises(PersistenceError) as exc:
        await orchestrator.ingest(await _document(image_bytes, 2), DEST)

    assert sorted(exc.value.orphaned_keys) == sorted(storage.uploads)
    assert storage.deleted == []
    assert len(storage.objects) == 4
    assert exc.value.retry_safe is False
    assert exc.value.to_dict()["message"].startswith("Your receipt was uploaded")


@pytest.mark.asyncio
async def test_document_is_frozen_after_handoff(image_bytes, storage, extraction, db_session):
    orchestrator = UploadOrchestrator(storage, extraction, ReceiptRepository(db_session))
    document = await _document(image_bytes, 2)
    await orchestrator.ingest(document, DEST)
    with pytest.raises(DocumentFrozenError):
        document.remove(1)


@pytest.mark.asyncio
async def test_cancelled_ingest_still_rolls_back(image_bytes, storage, extraction, db_session):
    started = asyncio.Event()
    never = asyncio.Event()
    original_upload = storage.upload

    async def blocking_upload(key, data, content_type):
        if "page_2_" in key:
            started.set()
            await never.wait()
        return await original_upload(key, data, content_type)

    storage.upload = blocking_upload
    orchestrator = UploadOrchestrator(storage, extraction, ReceiptRepository(db_session))
    task = asyncio.create_task(orchestrator.ingest(await _document(image_bytes, 2), DEST))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert storage.objects == {}
    assert any("page_1_" in key for key in storage.deleted)
    assert extraction.calls == []


def test_verification_registry_roundtrip():
    registry = VerificationRegistry()
    pending = PendingVerification("r1", "col-1", None, page_ref=None, extraction=None)
    registry.add(pending)
    assert registry.get("r1") is pending
    assert registry.pop("r1") is pending
    with pytest.raises(VerificationNotFoundError):
        registry.get("r1")


def test_verification_registry_expires_old_entries():
    now = [0.0]
    registry = VerificationRegistry(ttl_seconds=60, clock=lambda: now[0])
    old = registry.add(PendingVerification("old", "col-1", None, page_ref=None, extraction=None))
    now[0] = 30.0
    registry.add(PendingVerification("new", "col-1", None, page_ref=None, extraction=None))

    now[0] = 61.0
    assert registry.pop_expired() == [old]
    assert len(registry) == 1
    with pytest.raises(VerificationNotFoundError):
        registry.get("old")
    assert VerificationRegistry(ttl_seconds=0).pop_expired() == []


@pytest.mark.asyncio
async def test_expired_verification_blobs_are_deleted(image_bytes, storage, extraction, db_session):
    now = [0.0]
    registry = VerificationRegistry(ttl_seconds=60, clock=lambda: now[0])
    orchestrator = UploadOrchestrator(storage, extraction, ReceiptRepository(db_session))
    pending = registry.add(await orchestrator.ingest(await _document(image_bytes, 1), DEST))

    assert await orchestrator.expire_verifications(registry) == 0
    now[0] = 120.0
    assert await orchestrator.expire_verifications(registry) == 1

    assert sorted(storage.deleted) == sorted(pending.page_ref.keys)
    assert storage.objects == {}
    assert len(registry) == 0
    assert await _row_count(db_session) == 0


@pytest.mark.asyncio
async def test_leftover_parent_row_is_not_retry_safe(image_bytes, storage, extraction, db_session):
    orchestrator = UploadOrchestrator(
        storage, extraction, StuckParentRepository(db_session), cleanup_on_persistence_failure=True
    )

    with pytest.raises(PersistenceError) as exc:
        await orchestrator.ingest(await _document(image_bytes, 2), DEST)

    err = exc.value
    assert err.orphaned_keys == []
    assert err.orphaned_rows == [err.receipt_id]
    assert err.retry_safe is False
    assert err.to_dict()["orphaned_rows"] == [err.receipt_id]


@pytest.mark.asyncio
async def test_unexpected_extraction_error_still_rolls_back(image_bytes, storage, make_extraction, db_session):
    orchestrator = UploadOrchestrator(storage, make_extraction(error=KeyError("data")), ReceiptRepository(db_session))

    with pytest.raises(ExtractionError) as exc:
        await orchestrator.ingest(await _document(image_bytes, 2), DEST)

    assert isinstance(exc.value.__cause__, KeyError)
    assert exc.value.retry_safe is True
    assert sorted(storage.deleted) == sorted(storage.uploads)
    assert storage.objects == {}
    assert await _row_count(db_session) == 0


@pytest.mark.asyncio
async def test_upload_error_survives_unreachable_storage(image_bytes, unreachable_minio, extraction, db_session):
    client = unreachable_minio(fail_fragment="page_2_")
    orchestrator = UploadOrchestrator(
        StorageService(backend="minio", client=client), extraction, ReceiptRepository(db_session)
    )

    with pytest.raises(UploadError) as exc:
        await orchestrator.ingest(await _document(image_bytes, 2), DEST)

    assert exc.value.page_number == 2
    assert exc.value.retry_safe is True
    # Page 1 made it up; rolling it back was attempted even though it failed
    assert sorted(client.remove_calls) == sorted(client.stored)
    assert len(client.remove_calls) == 2
    assert extraction.calls == []


@pytest.mark.asyncio
async def test_four_page_pdf_becomes_parent_with_four_children(pdf_bytes, storage, extraction, db_session):
    repo = ReceiptRepository(db_session)
    orchestrator = UploadOrchestrator(storage, extraction, repo)
    document = await build_document([PdfSource(pdf_bytes(4), name="statement.pdf")])

    result = await orchestrator.ingest(document, DEST)

    assert isinstance(result, PersistedReceipt)
    assert len(extraction.calls[0]["object_keys"]) == 4
    assert len(storage.objects) == 8

    parent = await repo.get(result.receipt_id)
    assert parent.is_parent is True
    assert parent.total_pages == 4
    children = await repo.get_children(result.receipt_id)
    assert [c.page_number for c in children] == [1, 2, 3, 4]
    assert all(c.parent_receipt_id == result.receipt_id and c.total_pages == 4 for c in children)
    assert await _row_count(db_session) == 5
