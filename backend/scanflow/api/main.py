"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and
sets up startup and shutdown events. When run with uvicorn it
initialises the database and loads configuration from
``scanflow.core.config``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from scanflow.api.error_handlers import (
    generic_exception_handler,
    scanflow_exception_handler,
    validation_exception_handler,
)
from scanflow.api.routes.capture_sessions import router as capture_sessions_router
from scanflow.api.routes.files import router as files_router
from scanflow.api.routes.receipts import router as receipts_router
from scanflow.core.config import settings
from scanflow.core.database import init_db
from scanflow.core.exceptions import ScanflowError
from scanflow.core.observability import init_sentry, sentry_set_tags

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    # Startup
    logger.info("Starting up...")
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    yield
    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Scanflow API",
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def sentry_context_middleware(request: Request, call_next):  # type: ignore
    sentry_set_tags({"path": request.url.path, "method": request.method})
    return await call_next(request)


# In development allow all origins; otherwise use BACKEND_CORS_ORIGINS
env_is_dev = (settings.ENVIRONMENT or "development").lower() == "development"
allow_origins = ["*"] if env_is_dev else list(settings.BACKEND_CORS_ORIGINS or [])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=not env_is_dev,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register custom exception handlers
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(ScanflowError, scanflow_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Include routers
app.include_router(receipts_router)
app.include_router(capture_sessions_router)
app.include_router(files_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Welcome to the Scanflow receipt capture API"}


@app.api_route("/health", methods=["GET", "HEAD"])
async def health_check():
    """Health check endpoint (supports GET & HEAD)."""
    return {"status": "healthy"}

