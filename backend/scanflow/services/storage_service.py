"""Storage service abstraction.

Supports two backends selected via ``settings.STORAGE_BACKEND``:

1. **minio** (default): Uses the MinIO S3‑compatible object storage.
2. **filesystem**: Stores files under ``settings.STORAGE_DIRECTORY`` on disk.

Objects are addressed by an opaque *key* chosen by the caller (see
:func:`build_page_keys`).  Keys are persisted on receipt rows and are
later turned into short-lived URLs with :meth:`StorageService.signed_url`:
presigned GETs for MinIO, HMAC-signed links to the ``/files`` route for
the filesystem backend.

The MinIO SDK is synchronous, so every call is pushed to a worker
thread to keep the event loop free while pages upload.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import time
from datetime import datetime, timedelta, timezone
from io import BytesIO
from pathlib import Path
from typing import Iterable, List, Optional
from urllib.parse import urlencode

from minio import Minio
from minio.error import S3Error

from scanflow.core.config import settings
from scanflow.models.capture import UploadedPageRef

logger = logging.getLogger(__name__)

FILES_ROUTE = "/files"
PAGE_EXTENSION = "webp"
_MISSING_CODES = {"NoSuchKey", "NoSuchObject", "NoSuchBucket"}


def _safe_segment(value: str) -> str:
    """Remove potentially dangerous characters from one key segment."""
    keepchars = {"-", "_", "."}
    cleaned = "".join(c for c in str(value) if c.isalnum() or c in keepchars).strip(".")
    return cleaned or "anonymous"


def build_page_keys(owner: str, receipt_id: str, page_number: int, timestamp: Optional[int] = None) -> UploadedPageRef:
    """Return the object keys for one page of a receipt.

    Keys are namespaced by owner and receipt so that every page of a
    document sits under a common prefix::

        {owner}/{receipt_id}/page_{n}_{timestamp}.webp
        {owner}/{receipt_id}/page_{n}_{timestamp}_thumb.webp
    """
    ts = timestamp if timestamp is not None else int(time.time() * 1000)
    prefix = f"{_safe_segment(owner)}/{_safe_segment(receipt_id)}/page_{page_number}_{ts}"
    return UploadedPageRef(
        full_object_key=f"{prefix}.{PAGE_EXTENSION}",
        thumbnail_object_key=f"{prefix}_thumb.{PAGE_EXTENSION}",
    )


def sign_object_key(key: str, exp_ts: int, secret: Optional[str] = None) -> str:
    msg = f"{key}:{exp_ts}".encode()
    digest = hmac.new((secret or settings.SECRET_KEY).encode(), msg, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def verify_object_signature(key: str, exp_ts: int, sig: str, secret: Optional[str] = None) -> bool:
    """True when ``sig`` matches ``key``/``exp_ts`` and the link has not expired."""
    now_ts = int(datetime.now(timezone.utc).timestamp())
    if now_ts > int(exp_ts):
        return False
    expected = sign_object_key(key, int(exp_ts), secret)
    return hmac.compare_digest(expected, sig)


class StorageService:
    """Unified storage service (MinIO or filesystem)."""

    def __init__(
        self,
        backend: Optional[str] = None,
        base_dir: str | Path | None = None,
        client: Optional[Minio] = None,
    ) -> None:
        self.backend = (backend or settings.STORAGE_BACKEND or "minio").lower()
        if self.backend == "minio":
            self._client = client or Minio(
                settings.MINIO_ENDPOINT,
                access_key=settings.MINIO_ACCESS_KEY,
                secret_key=settings.MINIO_SECRET_KEY,
                secure=bool(settings.MINIO_USE_SSL),
            )
            self.bucket = settings.MINIO_BUCKET_NAME
            self._bucket_ready = False
        elif self.backend == "filesystem":
            base_path = Path(base_dir or settings.STORAGE_DIRECTORY)
            if not base_path.is_absolute():
                repo_root = Path(__file__).resolve().parents[3]
                base_path = (repo_root / base_path).resolve()
            self.base_dir = base_path.resolve()
            self.base_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Filesystem storage base_dir: %s", self.base_dir)
        else:
            raise ValueError(f"Unknown storage backend: {self.backend}")

    # ------------------------------------------------------------------
    # MinIO helpers

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        if not self._client.bucket_exists(self.bucket):
            self._client.make_bucket(self.bucket)
        self._bucket_ready = True

    def _minio_put(self, key: str, data: bytes, content_type: str) -> None:
        self._ensure_bucket()
        self._client.put_object(self.bucket, key, BytesIO(data), len(data), content_type=content_type)

    def _minio_get(self, key: str) -> bytes:
        try:
            resp = self._client.get_object(self.bucket, key)
        except S3Error as e:
            if e.code in _MISSING_CODES:
                raise FileNotFoundError(key) from e
            raise
        try:
            return resp.read()
        finally:
            resp.close()
            resp.release_conn()

    def _minio_exists(self, key: str) -> bool:
        try:
            self._client.stat_object(self.bucket, key)
            return True
        except S3Error as e:
            if e.code in _MISSING_CODES:
                return False
            raise

    # ------------------------------------------------------------------
    # Filesystem helpers

    def get_full_path(self, key: str) -> Path:
        """Resolve a stored object's full path (filesystem only)."""
        path = (self.base_dir / key).resolve()
        if self.base_dir not in path.parents:
            raise ValueError(f"Object key escapes storage directory: {key}")
        return path

    def _fs_put(self, key: str, data: bytes) -> None:
        path = self.get_full_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def _fs_delete(self, key: str) -> None:
        self.get_full_path(key).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Public API

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``key`` and return the key.

        Overwrites any existing object with the same key.  Backend failures
        (including an unreachable MinIO endpoint) surface as ``RuntimeError``.
        """
        if not data:
            raise RuntimeError(f"Refusing to store empty object: {key}")
        try:
            if self.backend == "minio":
                await asyncio.to_thread(self._minio_put, key, data, content_type)
            else:
                await asyncio.to_thread(self._fs_put, key, data)
        except Exception as e:
            raise RuntimeError(f"{self.backend} upload failed for {key}: {e}") from e
        logger.debug("Stored object key=%s bytes=%d backend=%s", key, len(data), self.backend)
        return key

    async def download(self, key: str) -> bytes:
        """Return the bytes stored under ``key``.

        :raises FileNotFoundError: no such object
        :raises RuntimeError: the backend could not be read
        """
        try:
            if self.backend == "minio":
                return await asyncio.to_thread(self._minio_get, key)
            return await asyncio.to_thread(self.get_full_path(key).read_bytes)
        except FileNotFoundError:
            raise
        except Exception as e:
            raise RuntimeError(f"{self.backend} download failed for {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        if self.backend == "minio":
            return await asyncio.to_thread(self._minio_exists, key)
        return self.get_full_path(key).exists()

    async def delete(self, keys: Iterable[str]) -> List[str]:
        """Delete every key, best effort.

        Failures of any kind are logged and do not stop the remaining
        deletes; nothing is raised.
        Returns the keys that could not be deleted.
        """
        failed: List[str] = []
        for key in keys:
            try:
                if self.backend == "minio":
                    await asyncio.to_thread(self._client.remove_object, self.bucket, key)
                else:
                    await asyncio.to_thread(self._fs_delete, key)
                logger.debug("Deleted object key=%s", key)
            except Exception as e:
                logger.warning("Failed to delete object key=%s: %s", key, e)
                failed.append(key)
        return failed

    async def signed_url(self, key: str, expires_in: Optional[int] = None) -> str:
        """Return a time-limited URL that serves ``key`` without further auth."""
        ttl = int(expires_in or settings.SIGNED_URL_TTL_SECONDS)
        if self.backend == "minio":
            return await asyncio.to_thread(
                self._client.presigned_get_object, self.bucket, key, expires=timedelta(seconds=ttl)
            )
        exp_ts = int((datetime.now(timezone.utc) + timedelta(seconds=ttl)).timestamp())
        q = urlencode({"key": key, "exp": exp_ts, "sig": sign_object_key(key, exp_ts)})
        return f"{FILES_ROUTE}?{q}"


__all__ = [
    "StorageService",
    "build_page_keys",
    "sign_object_key",
    "verify_object_signature",
]
