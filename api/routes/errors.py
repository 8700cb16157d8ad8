"""Sync error log endpoints.

Operational view of failed attempts: list, statistics and resolution.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from api.dependencies import get_auth_context, get_orchestrator
from core.sync.error_log import ErrorLogEntry, ErrorStatistics
from core.sync.models import AuthContext, EntityType, SyncErrorKind
from core.sync.orchestrator import SyncOrchestrator


router = APIRouter()


class ResolveErrorRequest(BaseModel):
    """Request to mark an error entry resolved."""
    notes: Optional[str] = None


class ResolveErrorResponse(BaseModel):
    id: int
    resolved: bool


@router.get("", response_model=List[ErrorLogEntry])
async def list_errors(
    entity_type: Optional[EntityType] = Query(default=None),
    local_id: Optional[str] = Query(default=None),
    kind: Optional[SyncErrorKind] = Query(default=None),
    resolved: Optional[bool] = Query(default=None),
    days: Optional[int] = Query(default=None, ge=1, le=365),
    limit: int = Query(default=100, ge=1, le=1000),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> List[ErrorLogEntry]:
    """Error entries for the caller's organization, newest first."""
    since = datetime.utcnow() - timedelta(days=days) if days else None
    return orchestrator.error_log.query(
        auth.organization_id,
        entity_type=entity_type,
        local_id=local_id,
        kind=kind,
        resolved=resolved,
        since=since,
        limit=limit,
    )


@router.get("/statistics", response_model=ErrorStatistics)
async def error_statistics(
    days: int = Query(default=7, ge=1, le=365),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ErrorStatistics:
    return orchestrator.error_log.statistics(auth.organization_id, days=days)


@router.post("/{entry_id}/resolve", response_model=ResolveErrorResponse)
async def resolve_error(
    entry_id: int,
    body: ResolveErrorRequest = ResolveErrorRequest(),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ResolveErrorResponse:
    entry = orchestrator.error_log.get(entry_id, auth.organization_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Error entry {entry_id} not found")
    if entry.resolved:
        raise HTTPException(status_code=409, detail=f"Error entry {entry_id} already resolved")

    changed = orchestrator.error_log.resolve(entry_id, auth.organization_id, body.notes)
    return ResolveErrorResponse(id=entry_id, resolved=changed)
