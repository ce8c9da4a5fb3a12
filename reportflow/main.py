"""
Reportflow Engine - FastAPI Application

Main application entry point. Creates the FastAPI app, wires the upload
router, initializes the database pool and the upload session reaper on
startup.

Run with: uvicorn reportflow.main:app --reload

Middleware order: CORS is added first (outermost) so preflight requests are
answered before request logging runs.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .core.config import Settings, get_settings, log_startup_diagnostics
from .core.errors import setup_error_handlers
from .core.logging import configure_logging
from .core.middleware import RequestLoggingMiddleware
from .core.transactions import PsycopgStorage
from .db import check_db_ready, close_db_pool, init_db_pool
from .ingest.orchestrator import IngestionService
from .ingest.sessions import UploadSessionStore
from .routers.upload import router as upload_router

logger = logging.getLogger(__name__)


def build_ingestion_service(settings: Settings) -> IngestionService:
    """Ingestion service backed by the shared PostgreSQL pool."""
    return IngestionService(
        storage=PsycopgStorage(),
        sessions=UploadSessionStore(ttl_seconds=settings.UPLOAD_SESSION_TTL_SECONDS),
        batch_size=settings.INGEST_BATCH_SIZE,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    - Startup: initialize the database pool, start the session reaper
    - Shutdown: stop the reaper, close the database pool
    """
    settings: Settings = app.state.settings
    service: IngestionService = app.state.ingestion_service

    logger.info(f"Starting Reportflow Engine v{__version__}")
    log_startup_diagnostics()

    # init_db_pool never raises; /readyz reports a failed pool
    await init_db_pool(settings)

    reaper = asyncio.create_task(
        service.sessions.run_reaper(settings.UPLOAD_SESSION_REAP_INTERVAL_SECONDS),
        name="upload-session-reaper",
    )

    try:
        yield
    finally:
        logger.info("Shutting down Reportflow Engine...")
        reaper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reaper
        await close_db_pool()
        logger.info("Shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[IngestionService] = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        settings: Settings to use (defaults to get_settings())
        service: Ingestion service; defaults to one backed by PostgreSQL

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)

    app = FastAPI(
        title="Reportflow Engine",
        description="Chunked spreadsheet report ingestion into PostgreSQL.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.ingestion_service = service or build_ingestion_service(settings)

    # 1. CORS (outermost)
    logger.info(f"[CORS] Startup origins: {settings.cors_allowed_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 2. Request logging + X-Request-ID
    app.add_middleware(RequestLoggingMiddleware)

    setup_error_handlers(app)

    app.include_router(upload_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        """Liveness probe - no DB access."""
        return {"service": "Reportflow Engine", "status": "ok", "version": __version__}

    @app.get("/readyz", tags=["health"])
    async def readyz() -> JSONResponse:
        """Readiness probe - 200 when SELECT 1 succeeds, 503 otherwise."""
        ready, message = await check_db_ready()
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"status": "ready" if ready else "not_ready", "database": message},
        )

    logger.info(f"FastAPI app created: {app.title}")

    return app


# Create the application instance
app = create_app()


# =============================================================================
# CLI Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "reportflow.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower(),
    )
