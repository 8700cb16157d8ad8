"""Sync endpoints.

Expose the orchestrator operations over HTTP. Sync failures come back as
outcomes in a 200 response; only malformed or impossible requests get
error status codes.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.dependencies import get_auth_context, get_orchestrator
from core.observability.metrics import get_metrics
from core.sync.models import (
    AuthContext,
    BulkOutcome,
    EntityType,
    StatusSummary,
    SyncAction,
    SyncDirection,
    SyncErrorKind,
    SyncMapping,
    SyncOutcome,
    SyncSide,
    SyncStatus,
)
from core.sync.orchestrator import RemoteListing, SyncOrchestrator


router = APIRouter()


class SyncRequest(BaseModel):
    """Request to sync one record."""
    direction: SyncDirection = SyncDirection.AUTO


class BulkSyncRequest(BaseModel):
    """Request to sync every due or changed record."""
    direction: SyncDirection = SyncDirection.PUSH
    cursor: Optional[str] = Field(default=None, description="Pull cursor from a previous run")


class ResolveConflictRequest(BaseModel):
    """Explicit conflict resolution."""
    winner: SyncSide


# Fixed paths are declared before the {local_id} routes they would otherwise shadow

@router.get("/metrics")
async def sync_metrics() -> Dict[str, Any]:
    """Process-local sync metrics."""
    return get_metrics().get_summary()


@router.post("/{entity_type}/bulk", response_model=BulkOutcome)
async def request_bulk_sync(
    entity_type: EntityType,
    body: BulkSyncRequest = BulkSyncRequest(),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> BulkOutcome:
    return await orchestrator.request_bulk_sync(auth, entity_type, body.direction, cursor=body.cursor)


@router.get("/{entity_type}/summary", response_model=StatusSummary)
async def status_summary(
    entity_type: EntityType,
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> StatusSummary:
    return orchestrator.get_status_summary(auth, entity_type)


@router.get("/{entity_type}/unsynced-remote", response_model=RemoteListing)
async def unsynced_remote(
    entity_type: EntityType,
    cursor: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> RemoteListing:
    """Remote records with no local counterpart yet."""
    return await orchestrator.list_unsynced_remote(auth, entity_type, cursor=cursor, limit=limit)


@router.post("/{entity_type}/{local_id}", response_model=SyncOutcome)
async def request_sync(
    entity_type: EntityType,
    local_id: str,
    body: SyncRequest = SyncRequest(),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncOutcome:
    return await orchestrator.request_sync(auth, entity_type, local_id, body.direction)


@router.get("/{entity_type}/{local_id}", response_model=SyncMapping)
async def sync_status(
    entity_type: EntityType,
    local_id: str,
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncMapping:
    mapping = orchestrator.get_sync_status(auth, entity_type, local_id)
    if mapping is None:
        raise HTTPException(
            status_code=404,
            detail=f"No sync mapping for {entity_type.value} '{local_id}'"
        )
    return mapping


@router.post("/{entity_type}/{local_id}/resolve", response_model=SyncOutcome)
async def resolve_conflict(
    entity_type: EntityType,
    local_id: str,
    body: ResolveConflictRequest,
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncOutcome:
    if orchestrator.get_sync_status(auth, entity_type, local_id) is None:
        raise HTTPException(
            status_code=404,
            detail=f"No sync mapping for {entity_type.value} '{local_id}'"
        )

    outcome = await orchestrator.resolve_conflict(auth, entity_type, local_id, body.winner)
    not_in_conflict = (
        outcome.action == SyncAction.FAILED
        and outcome.error is not None
        and outcome.error.kind == SyncErrorKind.REJECTED
        and outcome.status != SyncStatus.CONFLICT
    )
    if not_in_conflict:
        raise HTTPException(status_code=409, detail=outcome.error.message)
    return outcome


@router.post("/{entity_type}/{local_id}/retry", response_model=SyncOutcome)
async def retry_sync(
    entity_type: EntityType,
    local_id: str,
    body: SyncRequest = SyncRequest(),
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncOutcome:
    return await orchestrator.retry_sync(auth, entity_type, local_id, body.direction)
