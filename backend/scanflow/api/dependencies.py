"""Common dependencies for FastAPI routes.

Database sessions are scoped to the request.  Storage, the extraction
client and the in-memory registries (capture sessions and pending
verifications) are process-wide singletons created on first use; tests
replace them through ``app.dependency_overrides``.
"""

from __future__ import annotations

from typing import AsyncGenerator, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from scanflow.core.database import get_db
from scanflow.services.capture_session import CaptureSessionRegistry
from scanflow.services.extraction_service import ExtractionService
from scanflow.services.receipt_repository import ReceiptRepository
from scanflow.services.storage_service import StorageService
from scanflow.services.upload_orchestrator import UploadOrchestrator, VerificationRegistry


# -----------------------------------------------------------------------------
# Shared resources

_storage: Optional[StorageService] = None
_extraction: Optional[ExtractionService] = None
_capture_sessions = CaptureSessionRegistry()
_verifications = VerificationRegistry()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Alias for `get_db` to be imported in routers."""
    async for session in get_db():
        yield session


def get_storage() -> StorageService:
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage


def get_extraction_service() -> ExtractionService:
    global _extraction
    if _extraction is None:
        _extraction = ExtractionService()
    return _extraction


def get_capture_registry() -> CaptureSessionRegistry:
    return _capture_sessions


def get_verification_registry() -> VerificationRegistry:
    return _verifications


def get_repository(db: AsyncSession = Depends(get_db_session)) -> ReceiptRepository:
    return ReceiptRepository(db)


def get_orchestrator(
    storage: StorageService = Depends(get_storage),
    extraction: ExtractionService = Depends(get_extraction_service),
    repository: ReceiptRepository = Depends(get_repository),
) -> UploadOrchestrator:
    """Orchestrator bound to the request's database session."""
    return UploadOrchestrator(storage, extraction, repository)
