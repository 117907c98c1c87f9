"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the application.  ``DATABASE_URL`` selects the database;
when it is unset a local SQLite file is used so the capture pipeline
can run on a developer machine without a Postgres instance.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base

from scanflow.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_URL = "sqlite+aiosqlite:///./scanflow.db"


def normalise_database_url(raw_url: Optional[str]) -> str:
    """Return an async-driver URL for ``raw_url``.

    SQLite URLs are upgraded to ``aiosqlite``; Postgres URLs (plain,
    psycopg2 or asyncpg) are normalised to ``psycopg`` with TLS required
    unless the URL says otherwise.
    """
    if not raw_url:
        return DEFAULT_SQLITE_URL
    try:
        url_obj = make_url(raw_url)
    except Exception:
        return raw_url
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        return url_obj.set(drivername="sqlite+aiosqlite").render_as_string(hide_password=False)
    if driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        if not q.get("sslmode"):
            q["sslmode"] = "require"
        return url_obj.set(drivername="postgresql+psycopg", query=q).render_as_string(hide_password=False)
    return raw_url


db_url = normalise_database_url(settings.DATABASE_URL)

engine = create_async_engine(db_url, echo=False, pool_pre_ping=True)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session.

    This function is intended for FastAPI dependency injection.  Each
    session is scoped to the request and closed after use.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create all tables defined on the declarative ``Base``.

    Typically called during application startup.
    """
    try:
        async with engine.begin() as conn:
            # Import all models to ensure metadata is populated
            from scanflow.models import tables  # noqa: F401
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.error("Database initialisation failed: %s", e)
        raise
