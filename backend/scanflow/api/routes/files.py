"""Signed download route for the filesystem storage backend.

MinIO serves presigned URLs itself; with the filesystem backend
``StorageService.signed_url`` points here instead.  Access is controlled
only by the HMAC-signed, short-lived token, so no Authorization header
is required and browsers can load the images directly.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse, Response

from scanflow.api.dependencies import get_storage
from scanflow.services.storage_service import StorageService, verify_object_signature

router = APIRouter(tags=["files"])

MEDIA_TYPES = {".webp": "image/webp", ".png": "image/png", ".jpg": "image/jpeg", ".jpeg": "image/jpeg"}


@router.get("/files")
async def download_file(
    key: str,
    exp: int,
    sig: str,
    storage: StorageService = Depends(get_storage),
):
    """Stream a stored object if the token is valid and not expired."""
    if not verify_object_signature(key, exp, sig):
        raise HTTPException(status_code=401, detail="Invalid or expired link")

    if storage.backend != "filesystem":
        try:
            data = await storage.download(key)
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail="File not found")
        except RuntimeError:
            raise HTTPException(status_code=502, detail="Storage unavailable")
        return Response(content=data, media_type="application/octet-stream")

    try:
        full_path = storage.get_full_path(key)
    except ValueError:
        raise HTTPException(status_code=404, detail="File not found")
    if not full_path.exists():
        raise HTTPException(status_code=404, detail="File not found")
    media_type = MEDIA_TYPES.get(full_path.suffix.lower(), "application/octet-stream")
    return FileResponse(path=str(full_path), media_type=media_type)
