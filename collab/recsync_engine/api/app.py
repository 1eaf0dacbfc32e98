"""
RecSync HTTP gateway.

A FastAPI app exposing editing sessions over HTTP: one session per actor
(X-Actor header) over shared record and change log stores.

Usage:
    recsync-gateway
    uvicorn collab.recsync_engine.api.app:create_app --factory --port 8090
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..config import EngineConfig
from ..errors import (
    NotFoundError,
    PersistenceError,
    RecSyncError,
    RestoreError,
    StoreError,
    ValidationError,
    ViewNotOpenError,
)
from ..schema import get_record_type
from ..stores import create_stores
from ..stores.base import ChangeLogStore, RecordStore
from ..sync.timer import TimerFactory
from .routes import router
from .sessions import SessionManager
from .settings import GatewaySettings

logger = logging.getLogger(__name__)


def status_for(error: RecSyncError) -> int:
    """HTTP status code for an engine error."""
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (ViewNotOpenError, RestoreError)):
        return 409
    if isinstance(error, (PersistenceError, StoreError)):
        return 503
    return 500


def create_app(
    settings: GatewaySettings | None = None,
    engine_config: EngineConfig | None = None,
    stores: tuple[RecordStore, ChangeLogStore] | None = None,
    timers: TimerFactory | None = None,
) -> FastAPI:
    """Create the gateway FastAPI app.

    Args:
        settings: Gateway settings (loaded from environment by default)
        engine_config: Engine configuration (loaded from environment by default)
        stores: Record and change log stores (created from engine_config by default)
        timers: Timer factory for the sessions' schedulers
    """
    settings = settings or GatewaySettings()
    engine_config = engine_config or EngineConfig.from_env()
    record_type = get_record_type(settings.record_type)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage store and session lifecycle."""
        record_store, change_log = stores or create_stores(engine_config)
        sessions = SessionManager(
            record_store,
            change_log,
            engine_config,
            record_type=record_type,
            timers=timers,
            event_buffer_size=settings.event_buffer_size,
        )

        app.state.settings = settings
        app.state.record_type = record_type
        app.state.record_store = record_store
        app.state.change_log = change_log
        app.state.sessions = sessions
        logger.info("Gateway started", extra={"record_type": settings.record_type})

        yield

        await sessions.close_all()
        logger.info("Gateway stopped")

    app = FastAPI(
        title="RecSync Gateway",
        description="Field-level editing sessions with change history and restore.",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RecSyncError)
    async def recsync_error_handler(request: Request, exc: RecSyncError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "error_code": exc.code, "error": exc.message},
            )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    # API routes
    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health(request: Request):
        sessions = getattr(request.app.state, "sessions", None)
        return {
            "status": "healthy",
            "service": "recsync-gateway",
            "version": __version__,
            **(sessions.stats if sessions else {}),
        }

    return app
