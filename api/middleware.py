"""
Global middleware and error mapping.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from connectors.errors import (
    ConcurrentLinkModification,
    ConnectorError,
    GrantValidationError,
    InvalidPageToken,
    LinkNotFound,
    LinkRevoked,
    ProviderListingFailed,
    ProviderNotRegistered,
    TokenRefreshFailed,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = {
    ProviderNotRegistered: status.HTTP_404_NOT_FOUND,
    LinkNotFound: status.HTTP_404_NOT_FOUND,
    LinkRevoked: status.HTTP_409_CONFLICT,
    ConcurrentLinkModification: status.HTTP_409_CONFLICT,
    GrantValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidPageToken: status.HTTP_422_UNPROCESSABLE_ENTITY,
    TokenRefreshFailed: status.HTTP_502_BAD_GATEWAY,
    ProviderListingFailed: status.HTTP_502_BAD_GATEWAY,
}


def status_for_error(exc: ConnectorError) -> int:
    for error_type, code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware and exception handlers."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s — %.3fs", request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(ConnectorError)
    async def connector_error(request: Request, exc: ConnectorError) -> JSONResponse:
        code = status_for_error(exc)
        if code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=code,
            content={
                "error": type(exc).__name__,
                "detail": exc.reason,
                "provider": exc.provider,
            },
        )
