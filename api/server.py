"""FastAPI server for the ERP sync engine.

Main entry point for the API server.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import errors, health, sync
from core import __version__
from core.config import load_settings
from core.observability.logging import configure_logging, get_logger
from core.sync.orchestrator import SyncOrchestrator
from core.sync.runtime import build_orchestrator

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = build_orchestrator()
    orchestrator: SyncOrchestrator = app.state.orchestrator
    await orchestrator.gateway.connect()
    logger.info("ERP Sync API starting up...")

    yield

    await orchestrator.gateway.disconnect()
    logger.info("ERP Sync API shutting down...")


def create_app(orchestrator: Optional[SyncOrchestrator] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="ERP Sync API",
        description="Bidirectional synchronization between local records and an external ERP",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.orchestrator = orchestrator

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(sync.router, prefix="/sync", tags=["Sync"])
    app.include_router(errors.router, prefix="/sync-errors", tags=["Sync Errors"])

    return app


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    configure_logging(
        level=getattr(logging, settings.log_level, logging.INFO),
        json_format=settings.log_json,
    )
    uvicorn.run("api.server:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
