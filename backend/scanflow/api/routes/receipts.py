"""API routes for receipt upload, verification and retrieval."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, File, Form, HTTPException, UploadFile, status

from scanflow.api.dependencies import (
    get_orchestrator,
    get_repository,
    get_storage,
    get_verification_registry,
)
from scanflow.core.config import settings
from scanflow.core.observability import sentry_breadcrumb
from scanflow.models.capture import IngestDestination, PendingVerification
from scanflow.models.enums import IngestStatus
from scanflow.models.schemas import (
    ExtractionCorrection,
    IngestResponse,
    PageRead,
    ReceiptRead,
    SignedPageUrls,
    VerificationRead,
)
from scanflow.models.tables import Receipt
from scanflow.services.page_sources import build_document, source_for_upload
from scanflow.services.receipt_repository import ReceiptRepository
from scanflow.services.storage_service import StorageService
from scanflow.services.upload_orchestrator import IngestResult, UploadOrchestrator, VerificationRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/receipts", tags=["receipts"])


async def _load_receipt(repository: ReceiptRepository, receipt_id: str) -> ReceiptRead:
    receipt = await repository.get(receipt_id)
    if not receipt:
        raise HTTPException(status_code=404, detail="Receipt not found")
    read = ReceiptRead.model_validate(receipt)
    if receipt.is_parent:
        children = await repository.get_children(receipt.id)
        read.pages = [PageRead.model_validate(child) for child in children]
    else:
        read.pages = [PageRead.model_validate(receipt)]
    return read


async def ingest_response(
    result: IngestResult,
    repository: ReceiptRepository,
    verifications: VerificationRegistry,
) -> IngestResponse:
    """Render an orchestrator result; pending verifications are registered."""
    if isinstance(result, PendingVerification):
        verifications.add(result)
        return IngestResponse(
            status=IngestStatus.VERIFICATION_REQUIRED,
            verification=VerificationRead(
                verification_id=result.receipt_id,
                collection_id=result.collection_id,
                file_path=result.page_ref.full_object_key,
                thumbnail_path=result.page_ref.thumbnail_object_key,
                data=result.extraction,
            ),
        )
    return IngestResponse(status=IngestStatus.CREATED, receipt=await _load_receipt(repository, result.receipt_id))


@router.post("/upload", response_model=IngestResponse, status_code=status.HTTP_201_CREATED)
async def upload_receipt(
    files: List[UploadFile] = File(...),
    collection_id: str = Form(...),
    uploaded_by: Optional[str] = Form(None),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
    repository: ReceiptRepository = Depends(get_repository),
    verifications: VerificationRegistry = Depends(get_verification_registry),
) -> IngestResponse:
    """Upload one receipt from one or more images and/or PDFs.

    Files are combined into a single document in the order given; every
    PDF page becomes its own receipt page.
    """
    await orchestrator.expire_verifications(verifications)
    sources = []
    for upload in files:
        data = await upload.read()
        sources.append(source_for_upload(data, upload.content_type, upload.filename))
    document = await build_document(sources, max_pages=settings.MAX_PAGES_PER_DOCUMENT)
    sentry_breadcrumb(
        category="upload",
        message="upload_receipt.document_built",
        data={"files": len(files), "pages": len(document), "route": "POST /receipts/upload"},
    )
    result = await orchestrator.ingest(document, IngestDestination(collection_id, uploaded_by))
    return await ingest_response(result, repository, verifications)


@router.post("/verifications/{verification_id}/confirm", response_model=IngestResponse)
async def confirm_verification(
    verification_id: str,
    correction: Optional[ExtractionCorrection] = Body(None),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
    repository: ReceiptRepository = Depends(get_repository),
    verifications: VerificationRegistry = Depends(get_verification_registry),
) -> IngestResponse:
    """Save a single-page receipt, optionally with corrected fields."""
    pending = verifications.pop(verification_id)
    saved = await orchestrator.confirm_verification(pending, correction)
    return await ingest_response(saved, repository, verifications)


@router.delete("/verifications/{verification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_verification(
    verification_id: str,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
    verifications: VerificationRegistry = Depends(get_verification_registry),
):
    """Discard a single-page upload and delete its stored images."""
    pending = verifications.pop(verification_id)
    await orchestrator.cancel_verification(pending)


@router.get("/{receipt_id}", response_model=ReceiptRead)
async def get_receipt(
    receipt_id: str,
    repository: ReceiptRepository = Depends(get_repository),
) -> ReceiptRead:
    """Get a receipt with its pages (children for a multi-page receipt)."""
    return await _load_receipt(repository, receipt_id)


@router.get("/{receipt_id}/pages", response_model=List[SignedPageUrls])
async def get_receipt_page_urls(
    receipt_id: str,
    expires_in: int = settings.SIGNED_URL_TTL_SECONDS,
    repository: ReceiptRepository = Depends(get_repository),
    storage: StorageService = Depends(get_storage),
) -> List[SignedPageUrls]:
    """Short-lived URLs for every page image and thumbnail, in page order."""
    receipt = await repository.get(receipt_id)
    if not receipt:
        raise HTTPException(status_code=404, detail="Receipt not found")
    rows: List[Receipt] = await repository.get_children(receipt.id) if receipt.is_parent else [receipt]
    expires_in = max(60, min(int(expires_in), 86400))
    urls: List[SignedPageUrls] = []
    for index, row in enumerate(rows, start=1):
        if not row.file_path or not row.thumbnail_path:
            raise HTTPException(status_code=409, detail="Receipt file not ready")
        urls.append(
            SignedPageUrls(
                page_number=row.page_number or index,
                url=await storage.signed_url(row.file_path, expires_in),
                thumbnail_url=await storage.signed_url(row.thumbnail_path, expires_in),
                expires_in=expires_in,
            )
        )
    return urls
