"""notebook-rag FastAPI application entry point.

Wires together stores, providers, and services via
:func:`notebookrag.cli._factory.build_components`.  Loads configuration
from ``.env`` and ``config/config.yaml``, configures structured logging,
and starts the background job workers inside the API process unless
``START_WORKERS=false`` (workers then run via ``python -m notebookrag.cli
worker``).
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI, WebSocket

from notebookrag.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from notebookrag.api.routes import router as api_router
from notebookrag.api.websocket import websocket_job_events
from notebookrag.cli._factory import build_components, initialize_components
from notebookrag.config.loader import load_config
from notebookrag.config.settings import Settings
from notebookrag.utils.concurrency import reset_throttles
from notebookrag.utils.logging import configure_logging, get_logger

_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Module-level settings & logging
# ---------------------------------------------------------------------------

settings = Settings()
config = load_config(settings=settings)

configure_logging(
    log_level=settings.log_level,
    json_output=(settings.app_env == "production"),
)
_logger: structlog.BoundLogger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(components: dict[str, Any] | None = None) -> FastAPI:
    """Build and configure the FastAPI application.

    *components* replaces the default wiring; tests pass a dict built from
    fake providers.
    """

    @asynccontextmanager
    async def _lifespan(application: FastAPI):  # noqa: ANN202
        built = components or build_components(settings, config)
        await initialize_components(built)
        for key, value in built.items():
            setattr(application.state, key, value)

        orchestrator = built["orchestrator"]
        if built["settings"].start_workers:
            await orchestrator.start()

        _logger.info(
            "app_startup",
            version=_VERSION,
            environment=built["settings"].app_env,
            llm=built["llm"].get_provider_name(),
            workers=orchestrator.is_running,
        )

        yield

        await orchestrator.stop()
        reset_throttles()
        _logger.info("app_shutdown")

    application = FastAPI(
        title="notebook-rag API",
        version=_VERSION,
        description=(
            "Upload documents into notebooks, search them semantically, chat "
            "with them, and generate sectioned reports grounded in their content."
        ),
        lifespan=_lifespan,
    )

    # -- Middleware (order matters: last added = first executed) --
    application.add_middleware(ErrorHandlingMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    configure_cors(application)

    # -- API routes --
    application.include_router(api_router)

    # -- WebSocket --
    @application.websocket("/ws/jobs/{job_id}")
    async def ws_jobs(websocket: WebSocket, job_id: str) -> None:
        await websocket_job_events(websocket, job_id)

    return application


app = create_app()

# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    uvicorn.run(
        "notebookrag.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=(settings.app_env == "development"),
    )
