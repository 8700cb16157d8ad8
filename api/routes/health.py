"""Health check endpoints."""

import sqlite3
from datetime import datetime
from typing import Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from api.dependencies import get_orchestrator
from core import __version__
from core.sync.orchestrator import SyncOrchestrator


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> HealthResponse:
    """Health check endpoint."""
    try:
        orchestrator.store.count_by_status("__health__", "sales_document")
        storage = "up"
    except sqlite3.Error:
        storage = "down"

    return HealthResponse(
        status="healthy" if storage == "up" else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        version=__version__,
        services={
            "api": "up",
            "storage": storage,
            "gateway": orchestrator.gateway.connection_status.value.lower(),
        }
    )


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """Readiness probe for Kubernetes."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check(response: Response) -> Dict[str, str]:
    """Liveness probe for Kubernetes."""
    return {"status": "alive"}
