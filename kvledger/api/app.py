"""
FastAPI application factory for the kvledger admin API.

This module creates the FastAPI app with:
- CORS configuration for an admin frontend
- Ledger lifecycle management (store connect/close)
- Admin routes under /v1
- Error mapping for consistency layer exceptions
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..errors import (
    ConcurrentTransactionError,
    EntityNotFoundError,
    LinkValidationError,
    StoreUnavailableError,
    UnknownIndexError,
)
from ..ledger import Ledger
from .config import Settings
from .routes import router

logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (UnknownIndexError, 404, "UNKNOWN_INDEX"),
    (EntityNotFoundError, 404, "NOT_FOUND"),
    (LinkValidationError, 400, "INVALID_LINK"),
    (ConcurrentTransactionError, 409, "TRANSACTION_ACTIVE"),
    (StoreUnavailableError, 503, "STORE_UNAVAILABLE"),
)


def create_app(ledger: Ledger | None = None, settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        ledger: Ledger to serve; built from environment when omitted
        settings: API settings; loaded from environment when omitted
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage ledger lifecycle."""
        served = ledger or Ledger()
        await served.start()
        app.state.ledger = served
        app.state.settings = settings

        yield

        await served.stop()

    app = FastAPI(
        title="kvledger admin",
        description="Reconciliation, repair and workflow endpoints for the kvledger consistency layer.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    for error_type, status, code in _ERROR_STATUS:
        app.add_exception_handler(error_type, _error_handler(status, code))

    app.include_router(router, prefix="/v1")
    return app


def _error_handler(status: int, code: str):
    async def handle(request: Request, exc: Exception) -> JSONResponse:
        if status >= 500:
            logger.error(f"Admin request failed: {exc}", extra={"path": request.url.path})
        return JSONResponse(status_code=status, content={"error": str(exc), "error_code": code})

    return handle
