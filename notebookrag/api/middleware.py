"""API middleware: CORS, request logging, and error handling.

Starlette middleware is a stack (last added, first executed).  main.py adds
``ErrorHandlingMiddleware`` first and ``RequestLoggingMiddleware`` second,
so a request flows

    Client -> RequestLogging -> ErrorHandling -> route handler

and the request log sees the final status code after errors have been
converted into structured :class:`ErrorResponse` bodies.
"""

from __future__ import annotations

import time

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from notebookrag.api.schemas import ErrorResponse
from notebookrag.utils.errors import (
    ConfigurationError,
    ConsistencyError,
    NotebookRAGError,
    NotFoundError,
    PartialFailure,
    ProviderError,
    ProviderFatalError,
    ValidationError,
)
from notebookrag.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

# Most specific first: NotFoundError before ConsistencyError.
_STATUS_CODES: tuple[tuple[type[NotebookRAGError], int], ...] = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConsistencyError, 409),
    (ProviderFatalError, 502),
    (ProviderError, 503),
    (PartialFailure, 500),
    (ConfigurationError, 500),
)


def status_code_for(exc: NotebookRAGError) -> int:
    for error_type, status in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status
    return 500


def error_response(exc: NotebookRAGError) -> JSONResponse:
    """Build the JSON error response for an application error."""
    body = ErrorResponse(
        error=type(exc).__name__,
        detail=exc.message,
        provider=exc.provider_name,
    )
    if isinstance(exc, PartialFailure):
        body = body.model_copy(update={"succeeded": exc.succeeded, "failed": exc.failed})
    return JSONResponse(status_code=status_code_for(exc), content=body.model_dump(exclude_none=True))


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------


def configure_cors(app: FastAPI, *, allowed_origins: list[str] | None = None) -> None:
    """Add CORS middleware; all origins unless *allowed_origins* is given."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ---------------------------------------------------------------------------
# Request Logging
# ---------------------------------------------------------------------------


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every HTTP request with method, path, status code, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        response: Response | None = None

        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            status_code = response.status_code if response else 500
            _logger.info(
                "http_request",
                method=request.method,
                path=str(request.url.path),
                status=status_code,
                duration_ms=duration_ms,
            )


# ---------------------------------------------------------------------------
# Error Handling
# ---------------------------------------------------------------------------


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Convert :class:`NotebookRAGError` subclasses into structured JSON errors.

    Stack traces stay in the server log; the client sees the error kind,
    message and (for partial failures) the succeeded/failed split.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        try:
            return await call_next(request)
        except NotebookRAGError as exc:
            status = status_code_for(exc)
            log = _logger.warning if status < 500 else _logger.error
            log(
                "application_error",
                error_type=type(exc).__name__,
                message=exc.message,
                provider=exc.provider_name,
                path=str(request.url.path),
                status=status,
            )
            return error_response(exc)
