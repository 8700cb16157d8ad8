"""
Sync Activities for the ERP Sync Engine

Activities that drive the orchestrator from Temporal:
- run_bulk_sync: One push/pull/auto sweep for an organization and entity type
- sync_entity: Single-entity sync on demand

Per-item failures are reported in the result, never raised. The only
failure raised out of an activity is an authentication failure that hit
every item of a sweep, as a non-retryable AuthFailureError.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from temporalio import activity
from temporalio.exceptions import ApplicationError

from core.observability.logging import (
    log_activity_complete,
    log_activity_error,
    log_activity_start,
    with_correlation,
)
from core.sync.models import AuthContext, EntityType, SyncDirection, SyncErrorKind
from core.sync.orchestrator import SyncOrchestrator
from core.sync.runtime import build_orchestrator


# =============================================================================
# Orchestrator wiring
# =============================================================================

_orchestrator: Optional[SyncOrchestrator] = None


def configure_orchestrator(orchestrator: Optional[SyncOrchestrator]) -> None:
    """Install the orchestrator activities use (None resets to lazy default)."""
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> SyncOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


class _HeartbeatCancellation:
    """Cancellation flag for bulk runs: heartbeats, then reports activity cancellation."""

    def is_set(self) -> bool:
        activity.heartbeat()
        return activity.is_cancelled()


# =============================================================================
# Activity Input/Output Models
# =============================================================================

@dataclass
class BulkSyncInput:
    """Input for run_bulk_sync activity"""
    organization_id: str
    principal_id: str
    entity_type: str
    direction: str = "auto"
    cursor: Optional[str] = None


@dataclass
class BulkSyncResult:
    """Output from run_bulk_sync activity"""
    synced: int = 0
    pending: int = 0
    conflict: int = 0
    error: int = 0
    cancelled: bool = False
    next_cursor: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SyncEntityInput:
    """Input for sync_entity activity"""
    organization_id: str
    principal_id: str
    entity_type: str
    local_id: str
    direction: str = "auto"


# =============================================================================
# Activities
# =============================================================================

@activity.defn
async def run_bulk_sync(input: BulkSyncInput) -> BulkSyncResult:
    """
    Run one bulk sweep.

    Raises:
        ApplicationError: type AuthFailureError, non-retryable, when every
            item failed authentication
    """
    auth = AuthContext(principal_id=input.principal_id, organization_id=input.organization_id)
    info = activity.info()

    with with_correlation(workflow_id=info.workflow_id, activity_name=info.activity_type):
        log_activity_start(
            "run_bulk_sync",
            entity_type=input.entity_type,
            direction=input.direction,
            cursor=input.cursor,
        )
        outcome = await get_orchestrator().request_bulk_sync(
            auth,
            EntityType(input.entity_type),
            SyncDirection(input.direction),
            cancel_event=_HeartbeatCancellation(),
            cursor=input.cursor,
        )

        errors = [item.model_dump(mode="json") for item in outcome.errors]
        auth_failures = [e for e in outcome.errors if e.error.kind == SyncErrorKind.AUTH_FAILURE]
        if auth_failures and len(auth_failures) == len(outcome.errors) and outcome.synced == 0:
            message = auth_failures[0].error.message
            log_activity_error("run_bulk_sync", message, failures=len(auth_failures))
            raise ApplicationError(
                f"ERP authentication failed: {message}",
                {"failures": len(auth_failures)},
                type="AuthFailureError",
                non_retryable=True,
            )

        result = BulkSyncResult(
            synced=outcome.synced,
            pending=outcome.pending,
            conflict=outcome.conflict,
            error=outcome.error,
            cancelled=outcome.cancelled,
            next_cursor=outcome.next_cursor,
            errors=errors,
        )
        log_activity_complete(
            "run_bulk_sync",
            synced=result.synced,
            pending=result.pending,
            conflict=result.conflict,
            error=result.error,
        )
        return result


@activity.defn
async def sync_entity(input: SyncEntityInput) -> Dict[str, Any]:
    """Sync one local record and return the outcome as JSON."""
    auth = AuthContext(principal_id=input.principal_id, organization_id=input.organization_id)
    activity.logger.info(f"Syncing {input.entity_type}:{input.local_id} ({input.direction})")

    outcome = await get_orchestrator().request_sync(
        auth,
        EntityType(input.entity_type),
        input.local_id,
        SyncDirection(input.direction),
    )
    return outcome.model_dump(mode="json")
