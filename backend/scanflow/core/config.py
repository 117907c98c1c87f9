"""Simple configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.

Image optimization constants live here rather than as literals in the
capture code so that deployments can tune output size and quality
without touching the pipeline.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

_LOCAL_ENV = (_THIS_FILE.parent.parent.parent / ".env").as_posix()
if os.path.exists(_LOCAL_ENV) and _LOCAL_ENV not in _candidate_envs:
    _candidate_envs.append(_LOCAL_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    PROJECT_NAME: str = "Scanflow Receipt Capture"
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)

    # Storage
    STORAGE_BACKEND: str = Field(default="minio")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="receipts")
    MINIO_USE_SSL: bool = Field(default=False)
    STORAGE_DIRECTORY: str = Field(default="./storage")
    # Used to sign filesystem download links
    SECRET_KEY: str = Field(default="changeme")
    SIGNED_URL_TTL_SECONDS: int = Field(default=3600)

    # Extraction service
    EXTRACTION_URL: str = Field(default="http://localhost:54321/functions/v1/extract-receipt-data")
    EXTRACTION_API_KEY: Optional[str] = Field(default=None)
    EXTRACTION_TIMEOUT_SECONDS: float = Field(default=60.0)

    # Image optimization
    IMAGE_MAX_DIMENSION: int = Field(default=2048)
    THUMBNAIL_SIZE: int = Field(default=200)
    IMAGE_QUALITY: float = Field(default=0.92)
    THUMBNAIL_QUALITY: float = Field(default=0.85)
    PDF_RENDER_SCALE: float = Field(default=2.0)

    # File Upload
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
    MAX_PAGES_PER_DOCUMENT: int = Field(default=20)

    # Delete uploaded blobs when the final database insert fails
    CLEANUP_ON_PERSISTENCE_FAILURE: bool = Field(default=True)

    # Idle capture sessions and unconfirmed single-page uploads are
    # discarded after this many seconds (0 disables expiry)
    CAPTURE_SESSION_TTL_SECONDS: int = Field(default=3600)
    VERIFICATION_TTL_SECONDS: int = Field(default=3600)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)


# Instantiate global settings
settings = Settings()
