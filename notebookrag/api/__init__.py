"""notebook-rag API layer - routes, schemas, WebSocket, and middleware."""

from notebookrag.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from notebookrag.api.routes import router
from notebookrag.api.schemas import (
    ChatRequest,
    ErrorResponse,
    HealthResponse,
    SearchRequest,
    SearchResponse,
    UploadResponse,
)
from notebookrag.api.websocket import websocket_job_events

__all__ = [
    "ErrorHandlingMiddleware",
    "RequestLoggingMiddleware",
    "configure_cors",
    "router",
    "websocket_job_events",
    "ChatRequest",
    "ErrorResponse",
    "HealthResponse",
    "SearchRequest",
    "SearchResponse",
    "UploadResponse",
]
