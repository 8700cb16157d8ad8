"""Sync data model - mappings, jobs and outcomes.

These types are ERP-neutral: payloads are opaque JSON-shaped dicts and
versions are opaque markers supplied by either side.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================

class EntityType(str, Enum):
    """Kinds of records the engine synchronizes."""
    SALES_DOCUMENT = "sales_document"
    CONTACT = "contact"
    PRODUCT = "product"


class SyncStatus(str, Enum):
    """Lifecycle state of a mapping."""
    UNSYNCED = "unsynced"
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"
    ERROR = "error"


class SyncSide(str, Enum):
    """Which store authored the current state."""
    LOCAL = "local"
    REMOTE = "remote"


class SyncDirection(str, Enum):
    """Requested direction of a sync attempt."""
    PUSH = "push"
    PULL = "pull"
    AUTO = "auto"


class SyncErrorKind(str, Enum):
    """Error taxonomy recorded on mappings and in the error log."""
    TRANSIENT = "transient"
    REJECTED = "rejected"
    AUTH_FAILURE = "auth_failure"
    VERSION_CONFLICT = "version_conflict"
    RETRY_EXHAUSTED = "retry_exhausted"
    DATA_CONFLICT = "data_conflict"
    COUNTERPART_MISSING = "counterpart_missing"


class SyncAction(str, Enum):
    """What a single attempt actually did."""
    CREATED_REMOTE = "created_remote"
    UPDATED_REMOTE = "updated_remote"
    CREATED_LOCAL = "created_local"
    UPDATED_LOCAL = "updated_local"
    NOOP = "noop"
    CONFLICT = "conflict"
    CONFLICT_RESOLVED = "conflict_resolved"
    DEFERRED = "deferred"
    FAILED = "failed"


# =============================================================================
# Helpers
# =============================================================================

def content_version(payload: Dict[str, Any]) -> str:
    """Stable checksum of a payload, usable as a version marker."""
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:16]


def reservation_local_id(remote_id: str) -> str:
    """Placeholder local id held by a mapping while a pull creates the local record."""
    return f"remote:{remote_id}"


# =============================================================================
# Models
# =============================================================================

class SyncError(BaseModel):
    """Structured error summary stored on a mapping."""
    kind: SyncErrorKind
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=datetime.utcnow)


class AuthContext(BaseModel):
    """Authenticated caller every core operation runs on behalf of.

    Supplied by the upstream auth layer and trusted as-is.
    """
    model_config = ConfigDict(frozen=True)

    principal_id: str = Field(..., min_length=1)
    organization_id: str = Field(..., min_length=1)


class SyncMapping(BaseModel):
    """Durable correspondence between a local record and its remote counterpart.

    Attributes:
        row_version: Optimistic-concurrency counter, bumped by every write
        claimed_by / claim_expires_at: Lease held by the job currently
            attempting this mapping
    """
    id: Optional[int] = None
    organization_id: str
    entity_type: EntityType
    local_id: str
    remote_id: Optional[str] = None
    status: SyncStatus = SyncStatus.UNSYNCED
    direction_of_truth: Optional[SyncSide] = None
    local_version: Optional[str] = None
    remote_version: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    attempt_count: int = 0
    next_retry_at: Optional[datetime] = None
    last_error: Optional[SyncError] = None
    row_version: int = 0
    claimed_by: Optional[str] = None
    claim_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def is_claimed(self, now: datetime, job_id: Optional[str] = None) -> bool:
        """True when another job holds a live lease on this mapping."""
        if not self.claimed_by or self.claimed_by == job_id:
            return False
        return self.claim_expires_at is not None and self.claim_expires_at > now

    @property
    def is_reservation(self) -> bool:
        return self.remote_id is not None and self.local_id == reservation_local_id(self.remote_id)


class LocalRecord(BaseModel):
    """A business record as held by the local store."""
    local_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    version: str
    modified_at: Optional[datetime] = None


class RemoteSummary(BaseModel):
    """A remote record not yet mapped to any local record."""
    remote_id: str
    version: str
    modified_at: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class SyncOutcome(BaseModel):
    """Result of one single-entity sync attempt."""
    entity_type: EntityType
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    status: SyncStatus
    action: SyncAction
    mapping: Optional[SyncMapping] = None
    error: Optional[SyncError] = None


class BulkItemError(BaseModel):
    """One failed item of a bulk run."""
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    status: SyncStatus
    error: SyncError


class BulkOutcome(BaseModel):
    """Per-item counts and itemized errors of a bulk run."""
    entity_type: EntityType
    direction: SyncDirection
    synced: int = 0
    pending: int = 0
    conflict: int = 0
    error: int = 0
    errors: List[BulkItemError] = Field(default_factory=list)
    cancelled: bool = False
    next_cursor: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.synced + self.pending + self.conflict + self.error

    def record(self, outcome: SyncOutcome) -> None:
        """Fold one item outcome into the counts."""
        if outcome.status == SyncStatus.SYNCED:
            self.synced += 1
        elif outcome.status in (SyncStatus.PENDING, SyncStatus.UNSYNCED):
            self.pending += 1
        elif outcome.status == SyncStatus.CONFLICT:
            self.conflict += 1
        else:
            self.error += 1

        if outcome.error is not None and outcome.status in (SyncStatus.ERROR, SyncStatus.CONFLICT):
            self.errors.append(BulkItemError(
                local_id=outcome.local_id,
                remote_id=outcome.remote_id,
                status=outcome.status,
                error=outcome.error,
            ))


class StatusSummary(BaseModel):
    """Mapping counts per status for one organization and entity type."""
    entity_type: EntityType
    counts: Dict[SyncStatus, int] = Field(default_factory=dict)
    total: int = 0


# =============================================================================
# Sync Job
# =============================================================================

@dataclass
class SyncJob:
    """Transient unit of work for a single attempt; discarded afterwards."""
    auth: AuthContext
    entity_type: EntityType
    local_id: Optional[str]
    direction: SyncDirection
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    remote_id: Optional[str] = None
