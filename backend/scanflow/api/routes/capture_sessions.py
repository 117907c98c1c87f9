"""API routes driving the camera capture state machine.

Each route maps to one transition of :class:`CaptureSession`.  Finishing
a session (``finalize`` or ``finish-single``) hands the document to the
upload orchestrator and removes the session from the registry.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile, status

from scanflow.api.dependencies import (
    get_capture_registry,
    get_orchestrator,
    get_repository,
    get_verification_registry,
)
from scanflow.api.routes.receipts import ingest_response
from scanflow.core.config import settings
from scanflow.core.exceptions import InvalidUploadError
from scanflow.models.capture import CapturedDocument, IngestDestination
from scanflow.models.schemas import CaptureSessionCreate, CaptureSessionRead, IngestResponse
from scanflow.services.capture_session import CaptureSession, CaptureSessionRegistry
from scanflow.services.receipt_repository import ReceiptRepository
from scanflow.services.upload_orchestrator import UploadOrchestrator, VerificationRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/capture-sessions", tags=["capture"])


@router.post("", response_model=CaptureSessionRead, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: CaptureSessionCreate,
    registry: CaptureSessionRegistry = Depends(get_capture_registry),
) -> CaptureSessionRead:
    session = await registry.create(body.collection_id, body.uploaded_by)
    return session.to_read()


@router.get("/{session_id}", response_model=CaptureSessionRead)
async def get_session(
    session_id: str,
    current_page: Optional[int] = None,
    registry: CaptureSessionRegistry = Depends(get_capture_registry),
) -> CaptureSessionRead:
    """Session state plus the thumbnail strip (``current_page`` is highlighted)."""
    return registry.get(session_id).to_read(current_page)


@router.post("/{session_id}/photo", response_model=CaptureSessionRead)
async def capture_photo(
    session_id: str,
    file: UploadFile = File(...),
    registry: CaptureSessionRegistry = Depends(get_capture_registry),
) -> CaptureSessionRead:
    session = registry.get(session_id)
    data = await file.read()
    if len(data) > settings.MAX_UPLOAD_SIZE:
        raise InvalidUploadError("File too large")
    await session.acquire(data)
    return session.to_read()


@router.post("/{session_id}/confirm", response_model=CaptureSessionRead)
async def confirm_page(session_id: str, registry: CaptureSessionRegistry = Depends(get_capture_registry)):
    session = registry.get(session_id)
    if len(session.document) >= settings.MAX_PAGES_PER_DOCUMENT:
        raise InvalidUploadError(f"Too many pages (max {settings.MAX_PAGES_PER_DOCUMENT})")
    session.confirm()
    return session.to_read()


@router.post("/{session_id}/retake", response_model=CaptureSessionRead)
async def retake_page(session_id: str, registry: CaptureSessionRegistry = Depends(get_capture_registry)):
    session = registry.get(session_id)
    session.retake()
    return session.to_read()


@router.post("/{session_id}/add-another", response_model=CaptureSessionRead)
async def add_another_page(session_id: str, registry: CaptureSessionRegistry = Depends(get_capture_registry)):
    session = registry.get(session_id)
    session.add_another()
    return session.to_read()


@router.delete("/{session_id}/pages/{page_number}", response_model=CaptureSessionRead)
async def remove_page(
    session_id: str,
    page_number: int,
    registry: CaptureSessionRegistry = Depends(get_capture_registry),
) -> CaptureSessionRead:
    session = registry.get(session_id)
    session.remove_page(page_number)
    return session.to_read()


async def _hand_off(
    session: CaptureSession,
    document: CapturedDocument,
    registry: CaptureSessionRegistry,
    orchestrator: UploadOrchestrator,
    repository: ReceiptRepository,
    verifications: VerificationRegistry,
) -> IngestResponse:
    await registry.discard(session.id)
    await orchestrator.expire_verifications(verifications)
    logger.info("Capture session %s finished with %d pages", session.id, len(document))
    result = await orchestrator.ingest(document, IngestDestination(session.collection_id, session.uploaded_by))
    return await ingest_response(result, repository, verifications)


@router.post("/{session_id}/finalize", response_model=IngestResponse, status_code=status.HTTP_201_CREATED)
async def finalize_session(
    session_id: str,
    registry: CaptureSessionRegistry = Depends(get_capture_registry),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
    repository: ReceiptRepository = Depends(get_repository),
    verifications: VerificationRegistry = Depends(get_verification_registry),
) -> IngestResponse:
    session = registry.get(session_id)
    document = session.finalize()
    return await _hand_off(session, document, registry, orchestrator, repository, verifications)


@router.post("/{session_id}/finish-single", response_model=IngestResponse, status_code=status.HTTP_201_CREATED)
async def finish_single(
    session_id: str,
    registry: CaptureSessionRegistry = Depends(get_capture_registry),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
    repository: ReceiptRepository = Depends(get_repository),
    verifications: VerificationRegistry = Depends(get_verification_registry),
) -> IngestResponse:
    session = registry.get(session_id)
    document = session.finish_single()
    return await _hand_off(session, document, registry, orchestrator, repository, verifications)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_session(session_id: str, registry: CaptureSessionRegistry = Depends(get_capture_registry)):
    """Discard the session; nothing was stored so nothing is deleted."""
    session = registry.get(session_id)
    session.cancel()
    await registry.discard(session_id)
