"""Sync Orchestrator - bidirectional synchronization between local store and ERP.

Each single-entity attempt runs as a small saga over the mapping row:

1. Read (or lazily create) the mapping for (organization, entity_type, local_id)
2. Claim it with a conditional write (claimed_by / claim_expires_at); a job
   that finds a live claim waits for it instead of repeating the remote call
3. Compare local and remote versions against the last synced baseline and
   create/update the side that is behind, or detect a conflict
4. Write the result back and release the claim in the same write

Failures never escape the public operations: transient failures move the
mapping to `pending` with a retry time, rejected/auth failures and retry
exhaustion move it to `error`, both-sides-changed moves it to `conflict`.
When the Conflict Resolver picks a winner and auto-resolution is on, the
winner is applied in the same attempt and the mapping moves on to `synced`.
Every failure is written to the Error Log.

Lost optimistic-concurrency races (VersionConflictError) are retried as
local read-modify-write loops and never repeat a gateway call.
"""

import asyncio
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from connectors.erp_base import (
    AuthFailureError,
    GatewayError,
    RejectedError,
    RemoteGateway,
    RemoteNotFoundError,
    RemoteRecord,
    TransientGatewayError,
)
from core.config import SyncSettings
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import SyncMetrics, get_metrics
from core.sync.conflicts import ConflictResolver
from core.sync.content import EntityContentProvider, LocalRecordNotFoundError
from core.sync.error_log import ErrorLogEntry, SyncErrorLog
from core.sync.mapping_store import MappingStore, MappingStoreError, VersionConflictError
from core.sync.models import (
    AuthContext,
    BulkItemError,
    BulkOutcome,
    EntityType,
    LocalRecord,
    RemoteSummary,
    StatusSummary,
    SyncAction,
    SyncDirection,
    SyncError,
    SyncErrorKind,
    SyncJob,
    SyncMapping,
    SyncOutcome,
    SyncSide,
    SyncStatus,
    content_version,
)
from core.sync.retry import BackoffPolicy, RetryScheduler

logger = get_logger(__name__)

CLAIM_POLL_SECONDS = 0.05
MAX_WRITE_TRIES = 16
RESOLVE_BATCH_SIZE = 500


class RemoteListing(BaseModel):
    """Remote records not yet mapped locally."""
    items: List[RemoteSummary] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    error: Optional[SyncError] = None


def _classify_exception(exc: Exception) -> Tuple[SyncErrorKind, str, Dict[str, Any]]:
    """Map a collaborator exception onto the sync error taxonomy."""
    if isinstance(exc, GatewayError):
        details = dict(exc.details)
        if exc.status_code:
            details["status_code"] = exc.status_code
        if isinstance(exc, RemoteNotFoundError):
            return SyncErrorKind.COUNTERPART_MISSING, exc.message, details
        if isinstance(exc, RejectedError):
            return SyncErrorKind.REJECTED, exc.message, details
        if isinstance(exc, AuthFailureError):
            return SyncErrorKind.AUTH_FAILURE, exc.message, details
        return SyncErrorKind.TRANSIENT, exc.message, details
    if isinstance(exc, LocalRecordNotFoundError):
        return SyncErrorKind.COUNTERPART_MISSING, str(exc), {}
    return SyncErrorKind.TRANSIENT, f"{type(exc).__name__}: {exc}", {}


class SyncOrchestrator:
    """Top-level driver of the sync engine.

    Args:
        store: Mapping Store
        error_log: Error Log
        gateway: Remote System Gateway
        provider: Local entity content provider
        settings: Engine settings (timeouts, concurrency, retry policy)
        resolver: Conflict Resolver
        scheduler: Retry Scheduler (defaults to one built from settings)
        clock: Returns naive-UTC "now"; injectable for tests
        metrics: Metrics collector
    """

    def __init__(
        self,
        store: MappingStore,
        error_log: SyncErrorLog,
        gateway: RemoteGateway,
        provider: EntityContentProvider,
        settings: Optional[SyncSettings] = None,
        resolver: Optional[ConflictResolver] = None,
        scheduler: Optional[RetryScheduler] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        metrics: Optional[SyncMetrics] = None,
    ):
        self.store = store
        self.error_log = error_log
        self.gateway = gateway
        self.provider = provider
        self.settings = settings or SyncSettings()
        self.resolver = resolver or ConflictResolver()
        self.scheduler = scheduler or RetryScheduler(BackoffPolicy.from_settings(self.settings))
        self.clock = clock
        self.metrics = metrics or get_metrics()

        self._gateway_slots: Optional[asyncio.Semaphore] = None
        self._gateway_slots_loop = None

    # =========================================================================
    # Public operations
    # =========================================================================

    async def request_sync(
        self,
        auth: AuthContext,
        entity_type: EntityType,
        local_id: str,
        direction: SyncDirection = SyncDirection.AUTO,
    ) -> SyncOutcome:
        """Synchronize one local record. Never raises for sync failures."""
        job = SyncJob(
            auth=auth,
            entity_type=EntityType(entity_type),
            local_id=local_id,
            direction=SyncDirection(direction),
        )
        return await self._guarded(job, self._request_sync(job))

    async def retry_sync(
        self,
        auth: AuthContext,
        entity_type: EntityType,
        local_id: str,
        direction: SyncDirection = SyncDirection.AUTO,
    ) -> SyncOutcome:
        """Re-arm an `error` or `pending` mapping and attempt it immediately."""
        job = SyncJob(
            auth=auth,
            entity_type=EntityType(entity_type),
            local_id=local_id,
            direction=SyncDirection(direction),
        )
        return await self._guarded(job, self._retry_sync(job))

    async def resolve_conflict(
        self,
        auth: AuthContext,
        entity_type: EntityType,
        local_id: str,
        winner: SyncSide,
    ) -> SyncOutcome:
        """Settle a `conflict` mapping by overwriting the losing side with the winner."""
        job = SyncJob(
            auth=auth,
            entity_type=EntityType(entity_type),
            local_id=local_id,
            direction=SyncDirection.PUSH if SyncSide(winner) == SyncSide.LOCAL else SyncDirection.PULL,
        )
        return await self._guarded(job, self._resolve_conflict(job, SyncSide(winner)))

    def get_sync_status(
        self,
        auth: AuthContext,
        entity_type: EntityType,
        local_id: str,
    ) -> Optional[SyncMapping]:
        return self.store.get(auth.organization_id, EntityType(entity_type), local_id)

    def get_status_summary(self, auth: AuthContext, entity_type: EntityType) -> StatusSummary:
        counts = self.store.count_by_status(auth.organization_id, EntityType(entity_type))
        return StatusSummary(
            entity_type=EntityType(entity_type),
            counts=counts,
            total=sum(counts.values()),
        )

    async def list_unsynced_remote(
        self,
        auth: AuthContext,
        entity_type: EntityType,
        cursor: Optional[str] = None,
        limit: int = 500,
    ) -> RemoteListing:
        """Remote records that no mapping refers to yet.

        Listing stops once at least `limit` items are collected. Pages are
        returned whole, so `next_cursor` never skips an unreturned record.
        """
        entity_type = EntityType(entity_type)
        listing = RemoteListing(next_cursor=cursor)
        with with_correlation(organization_id=auth.organization_id, entity_type=entity_type.value):
            while len(listing.items) < limit:
                try:
                    changes = await self._call_gateway(
                        "list_changed_since", entity_type.value, listing.next_cursor
                    )
                except GatewayError as e:
                    kind, message, details = _classify_exception(e)
                    listing.error = SyncError(kind=kind, message=message, details=details)
                    logger.warning(f"Listing remote records failed: {message}")
                    break

                if not changes.records:
                    break

                mapped = self.store.mapped_remote_ids(
                    auth.organization_id, entity_type, [r.remote_id for r in changes.records]
                )
                for record in changes.records:
                    if record.remote_id not in mapped:
                        listing.items.append(RemoteSummary(
                            remote_id=record.remote_id,
                            version=record.version,
                            modified_at=record.modified_at,
                            payload=record.payload,
                        ))

                if changes.next_cursor is None or changes.next_cursor == listing.next_cursor:
                    break
                listing.next_cursor = changes.next_cursor

        return listing

    async def request_bulk_sync(
        self,
        auth: AuthContext,
        entity_type: EntityType,
        direction: SyncDirection = SyncDirection.PUSH,
        cancel_event=None,
        cursor: Optional[str] = None,
    ) -> BulkOutcome:
        """Apply the single-entity algorithm to every due (push) or changed (pull) record.

        Item failures are isolated and counted. `cancel_event` is anything
        with `is_set()`; it is checked before each item. For pulls, `cursor`
        resumes a previous run and the outcome's next_cursor continues it.
        """
        entity_type = EntityType(entity_type)
        direction = SyncDirection(direction)
        outcome = BulkOutcome(entity_type=entity_type, direction=direction, next_cursor=cursor)
        started = time.perf_counter()
        self.metrics.record_bulk_started()

        with with_correlation(
            organization_id=auth.organization_id,
            principal_id=auth.principal_id,
            entity_type=entity_type.value,
            direction=direction.value,
        ):
            logger.info("Bulk sync started")
            try:
                if direction in (SyncDirection.PULL, SyncDirection.AUTO):
                    await self._bulk_pull(auth, entity_type, outcome, cancel_event, cursor)
                if direction in (SyncDirection.PUSH, SyncDirection.AUTO) and not outcome.cancelled:
                    await self._bulk_push(auth, entity_type, outcome, cancel_event)
            except Exception as e:
                logger.exception(f"Bulk sync aborted: {e}")
                outcome.errors.append(BulkItemError(
                    status=SyncStatus.ERROR,
                    error=SyncError(kind=SyncErrorKind.TRANSIENT, message=f"Bulk sync aborted: {e}"),
                ))

            outcome.completed_at = self.clock()
            duration_ms = (time.perf_counter() - started) * 1000
            self.metrics.record_bulk_completed(cancelled=outcome.cancelled, duration_ms=duration_ms)
            logger.info(
                "Bulk sync completed",
                extra_fields={
                    "synced": outcome.synced,
                    "pending": outcome.pending,
                    "conflict": outcome.conflict,
                    "error": outcome.error,
                    "cancelled": outcome.cancelled,
                    "duration_ms": round(duration_ms, 1),
                },
            )
        return outcome

    # =========================================================================
    # Single-entity flow
    # =========================================================================

    async def _guarded(self, job: SyncJob, work) -> SyncOutcome:
        """Run work under the job's correlation IDs, converting crashes to an error outcome."""
        with with_correlation(
            organization_id=job.auth.organization_id,
            principal_id=job.auth.principal_id,
            entity_type=job.entity_type.value,
            local_id=job.local_id,
            remote_id=job.remote_id,
            job_id=job.job_id,
            direction=job.direction.value,
        ):
            try:
                return await work
            except Exception as e:
                logger.exception(f"Sync attempt crashed: {e}")
                try:
                    return self._recover_crashed(job, e)
                except Exception as cleanup_error:
                    logger.exception(f"Recording crashed attempt failed: {cleanup_error}")
                error = SyncError(kind=SyncErrorKind.TRANSIENT, message=f"Internal error: {e}")
                self.metrics.record_sync_outcome(
                    job.entity_type.value, SyncAction.FAILED.value, SyncStatus.ERROR.value, error.kind.value
                )
                return SyncOutcome(
                    entity_type=job.entity_type,
                    local_id=job.local_id,
                    remote_id=job.remote_id,
                    status=SyncStatus.ERROR,
                    action=SyncAction.FAILED,
                    error=error,
                )

    def _recover_crashed(self, job: SyncJob, exc: Exception) -> SyncOutcome:
        """Release every claim the crashed job still holds and record the failure.

        Held mappings go through the normal failure path, so a transient crash
        leaves them pending with a retry time. A crash before any claim only
        adds an Error Log entry.
        """
        org = job.auth.organization_id
        outcome = None
        for held in self.store.list_claimed_by(org, job.entity_type, job.job_id):
            if held.is_reservation:
                outcome = self._abandon_reservation(job, held, exc)
            else:
                outcome = self._fail(job, held, held.status, exc)
        if outcome is not None:
            return outcome

        mapping = None
        if job.local_id is not None:
            mapping = self.store.get(org, job.entity_type, job.local_id)
        elif job.remote_id is not None:
            mapping = self.store.find_by_remote(org, job.entity_type, job.remote_id)
        kind, message, details = _classify_exception(exc)
        error = SyncError(kind=kind, message=message, details=details, occurred_at=self.clock())
        self._log_error(job, mapping, error)
        return self._outcome(job, mapping, SyncAction.FAILED, error)

    async def _request_sync(self, job: SyncJob) -> SyncOutcome:
        org = job.auth.organization_id
        local = await self.provider.get_local(job.auth, job.entity_type, job.local_id)
        if local is None:
            mapping = self.store.get(org, job.entity_type, job.local_id)
            if mapping is None:
                error = SyncError(
                    kind=SyncErrorKind.COUNTERPART_MISSING,
                    message=f"Local record {job.local_id} not found",
                )
                logger.warning(error.message)
                return self._outcome(job, None, SyncAction.FAILED, error, status=SyncStatus.ERROR)
            return await self._sync_mapping(job, mapping)

        mapping = self.store.get_or_create(org, job.entity_type, job.local_id)
        return await self._sync_mapping(job, mapping, local=local)

    async def _retry_sync(self, job: SyncJob) -> SyncOutcome:
        mapping = self.store.get(job.auth.organization_id, job.entity_type, job.local_id)
        if mapping is not None:
            if mapping.status == SyncStatus.CONFLICT:
                return self._outcome(job, mapping, SyncAction.NOOP, mapping.last_error)
            if mapping.status in (SyncStatus.ERROR, SyncStatus.PENDING):
                now = self.clock()

                def rearm(m: SyncMapping) -> None:
                    m.status = SyncStatus.PENDING
                    m.attempt_count = 0
                    m.next_retry_at = now
                    m.last_error = None

                self._write(mapping, rearm)
                logger.info("Mapping re-armed for retry")
        return await self._request_sync(job)

    async def _sync_mapping(
        self,
        job: SyncJob,
        mapping: SyncMapping,
        local: Optional[LocalRecord] = None,
        remote: Optional[RemoteRecord] = None,
    ) -> SyncOutcome:
        """Claim mapping and run one attempt against it."""
        job.remote_id = job.remote_id or mapping.remote_id
        blocked = self._blocked_outcome(job, mapping)
        if blocked is not None:
            return blocked

        read_version = mapping.row_version
        claimed = await self._claim(job, mapping)
        if claimed is None:
            return self._outcome(job, mapping, SyncAction.DEFERRED, status=SyncStatus.PENDING)

        blocked = self._blocked_outcome(job, claimed)
        if blocked is not None:
            self._release(job, claimed)
            return blocked

        # Someone else wrote between our read and our claim; prefetched data is stale
        if claimed.row_version != read_version + 1:
            local = None
            remote = None

        start_status = claimed.status
        try:
            if local is None:
                local = await self.provider.get_local(job.auth, job.entity_type, claimed.local_id)
            if local is None:
                raise LocalRecordNotFoundError(f"Local record {claimed.local_id} not found")
            return await self._attempt(job, claimed, local, remote)
        except MappingStoreError:
            raise
        except Exception as e:
            return self._fail(job, claimed, start_status, e)

    def _blocked_outcome(self, job: SyncJob, mapping: SyncMapping) -> Optional[SyncOutcome]:
        """Mappings in error or conflict wait for an explicit retry or resolution."""
        if mapping.status == SyncStatus.ERROR:
            return self._outcome(job, mapping, SyncAction.NOOP, mapping.last_error)
        if mapping.status == SyncStatus.CONFLICT:
            return self._outcome(job, mapping, SyncAction.NOOP, mapping.last_error)
        return None

    async def _attempt(
        self,
        job: SyncJob,
        mapping: SyncMapping,
        local: LocalRecord,
        remote: Optional[RemoteRecord],
    ) -> SyncOutcome:
        start_status = mapping.status
        org = job.auth.organization_id
        et = job.entity_type

        if mapping.remote_id is None:
            if job.direction == SyncDirection.PULL:
                return self._outcome(job, self._release(job, mapping), SyncAction.NOOP)

            logger.info("Creating remote record")
            result = await self._call_gateway(
                "create_remote",
                et.value,
                local.payload,
                idempotency_key=f"{org}:{et.value}:{mapping.local_id}",
            )
            job.remote_id = result.remote_id
            return self._succeed(
                job, mapping, start_status, SyncAction.CREATED_REMOTE,
                remote_id=result.remote_id,
                local_version=local.version,
                remote_version=result.version or content_version(local.payload),
                side=SyncSide.LOCAL,
            )

        local_changed = local.version != mapping.local_version
        if job.direction == SyncDirection.PUSH and not local_changed and start_status == SyncStatus.SYNCED:
            return self._outcome(job, self._release(job, mapping), SyncAction.NOOP)

        if remote is None:
            remote = await self._call_gateway("fetch_remote", et.value, mapping.remote_id)
        remote_changed = remote.version != mapping.remote_version

        if local_changed and remote_changed:
            return await self._handle_conflict(job, mapping, local, remote)

        if local_changed:
            if job.direction == SyncDirection.PULL:
                return self._outcome(job, self._release(job, mapping), SyncAction.NOOP)
            logger.info("Updating remote record")
            result = await self._call_gateway("update_remote", et.value, mapping.remote_id, local.payload)
            return self._succeed(
                job, mapping, start_status, SyncAction.UPDATED_REMOTE,
                local_version=local.version,
                remote_version=result.version or content_version(local.payload),
                side=SyncSide.LOCAL,
            )

        if remote_changed:
            if job.direction == SyncDirection.PUSH:
                return self._outcome(job, self._release(job, mapping), SyncAction.NOOP)
            logger.info("Updating local record from remote")
            updated = await self.provider.update_local(
                job.auth, et, mapping.local_id, remote.payload, modified_at=remote.modified_at
            )
            return self._succeed(
                job, mapping, start_status, SyncAction.UPDATED_LOCAL,
                local_version=updated.version,
                remote_version=remote.version,
                side=SyncSide.REMOTE,
            )

        # Both sides already match the baseline
        now = self.clock()

        def settle(m: SyncMapping) -> None:
            m.status = SyncStatus.SYNCED
            m.next_retry_at = None
            m.last_error = None
            m.claimed_by = None
            m.claim_expires_at = None
            if m.last_synced_at is None:
                m.last_synced_at = now

        return self._outcome(job, self._write(mapping, settle), SyncAction.NOOP)

    async def _handle_conflict(
        self,
        job: SyncJob,
        mapping: SyncMapping,
        local: LocalRecord,
        remote: RemoteRecord,
    ) -> SyncOutcome:
        """Both sides changed since the last sync."""
        self.metrics.record_conflict("detected")
        decision = self.resolver.decide(local.modified_at, remote.modified_at)
        details = {
            "reason": decision.reason,
            "local_version": local.version,
            "remote_version": remote.version,
            "local_modified_at": local.modified_at.isoformat() if local.modified_at else None,
            "remote_modified_at": remote.modified_at.isoformat() if remote.modified_at else None,
        }

        if decision.winner is None or not self.settings.auto_resolve_conflicts:
            now = self.clock()
            error = SyncError(
                kind=SyncErrorKind.DATA_CONFLICT,
                message=f"Both sides changed since last sync ({decision.reason})",
                details=details,
                occurred_at=now,
            )

            def park(m: SyncMapping) -> None:
                m.status = SyncStatus.CONFLICT
                m.next_retry_at = None
                m.last_error = error
                m.claimed_by = None
                m.claim_expires_at = None

            updated = self._write(mapping, park)
            self._log_error(job, updated, error, extra={
                "local_payload": local.payload,
                "remote_payload": remote.payload,
            })
            return self._outcome(job, updated, SyncAction.CONFLICT, error)

        def mark_conflict(m: SyncMapping) -> None:
            m.status = SyncStatus.CONFLICT
            m.next_retry_at = None

        # The claim stays held while the winner is applied
        parked = self._write(mapping, mark_conflict)
        outcome = await self._apply_winner(job, parked, decision.winner, local, remote, mapping.status)
        self._log_error(
            job,
            outcome.mapping,
            SyncError(
                kind=SyncErrorKind.DATA_CONFLICT,
                message=f"Conflict auto-resolved in favour of {decision.winner.value} ({decision.reason})",
                details={**details, "winner": decision.winner.value},
                occurred_at=self.clock(),
            ),
            extra=self._discarded(decision.winner, local, remote),
        )
        self.metrics.record_conflict("auto_resolved")
        return outcome

    async def _apply_winner(
        self,
        job: SyncJob,
        mapping: SyncMapping,
        winner: SyncSide,
        local: LocalRecord,
        remote: RemoteRecord,
        start_status: SyncStatus,
    ) -> SyncOutcome:
        et = job.entity_type
        if winner == SyncSide.LOCAL:
            result = await self._call_gateway("update_remote", et.value, mapping.remote_id, local.payload)
            local_version = local.version
            remote_version = result.version or content_version(local.payload)
        else:
            updated = await self.provider.update_local(
                job.auth, et, mapping.local_id, remote.payload, modified_at=remote.modified_at
            )
            local_version = updated.version
            remote_version = remote.version

        return self._succeed(
            job, mapping, start_status, SyncAction.CONFLICT_RESOLVED,
            local_version=local_version,
            remote_version=remote_version,
            side=winner,
            count_attempt=start_status != SyncStatus.CONFLICT,
        )

    @staticmethod
    def _discarded(winner: SyncSide, local: LocalRecord, remote: RemoteRecord) -> Dict[str, Any]:
        if winner == SyncSide.LOCAL:
            return {"discarded_side": "remote", "discarded_payload": remote.payload,
                    "discarded_version": remote.version}
        return {"discarded_side": "local", "discarded_payload": local.payload,
                "discarded_version": local.version}

    async def _resolve_conflict(self, job: SyncJob, winner: SyncSide) -> SyncOutcome:
        org = job.auth.organization_id
        mapping = self.store.get(org, job.entity_type, job.local_id)
        if mapping is None or mapping.status != SyncStatus.CONFLICT:
            error = SyncError(
                kind=SyncErrorKind.REJECTED,
                message=f"Mapping for {job.local_id} is not in conflict",
            )
            return self._outcome(
                job, mapping, SyncAction.FAILED, error,
                status=mapping.status if mapping else SyncStatus.ERROR,
            )

        job.remote_id = mapping.remote_id
        claimed = await self._claim(job, mapping)
        if claimed is None:
            return self._outcome(job, mapping, SyncAction.DEFERRED, mapping.last_error)
        if claimed.status != SyncStatus.CONFLICT:
            self._release(job, claimed)
            return self._outcome(job, claimed, SyncAction.NOOP)

        try:
            local = await self.provider.get_local(job.auth, job.entity_type, claimed.local_id)
            if local is None:
                raise LocalRecordNotFoundError(f"Local record {claimed.local_id} not found")
            remote = await self._call_gateway("fetch_remote", job.entity_type.value, claimed.remote_id)
            outcome = await self._apply_winner(job, claimed, winner, local, remote, SyncStatus.CONFLICT)
        except MappingStoreError:
            raise
        except Exception as e:
            kind, message, details = _classify_exception(e)
            if kind == SyncErrorKind.COUNTERPART_MISSING:
                return self._fail(job, claimed, SyncStatus.CONFLICT, e)
            # The conflict stands; the caller can resolve again later
            error = SyncError(kind=kind, message=message, details=details, occurred_at=self.clock())
            released = self._release(job, claimed)
            logger.warning(f"Conflict resolution failed: {message}")
            return self._outcome(job, released, SyncAction.FAILED, error)

        notes = f"Resolved in favour of {winner.value} by {job.auth.principal_id}"
        while True:
            open_entries = self.error_log.query(
                org,
                entity_type=job.entity_type,
                local_id=job.local_id,
                kind=SyncErrorKind.DATA_CONFLICT,
                resolved=False,
                limit=RESOLVE_BATCH_SIZE,
            )
            if not open_entries:
                break
            for entry in open_entries:
                self.error_log.resolve(entry.id, org, notes=notes)
        self.metrics.record_conflict("manually_resolved")
        logger.info(f"Conflict resolved in favour of {winner.value}")
        return outcome

    # =========================================================================
    # Claims and writes
    # =========================================================================

    async def _claim(self, job: SyncJob, mapping: SyncMapping) -> Optional[SyncMapping]:
        """Take the attempt lease on mapping, waiting out a live claim held by another job.

        Returns None when the other job's claim outlives our lease period.
        """
        lease = timedelta(seconds=self.settings.claim_lease_seconds)
        wait_deadline = time.monotonic() + self.settings.claim_lease_seconds
        current = mapping
        waited = False

        while True:
            now = self.clock()
            if current.is_claimed(now, job.job_id):
                if time.monotonic() >= wait_deadline:
                    logger.warning(f"Mapping still claimed by {current.claimed_by}; deferring")
                    return None
                if not waited:
                    logger.info(f"Waiting for in-flight attempt {current.claimed_by}")
                    waited = True
                await asyncio.sleep(CLAIM_POLL_SECONDS)
                current = self._reload(current)
                continue

            claimed = current.model_copy(update={
                "claimed_by": job.job_id,
                "claim_expires_at": now + lease,
            })
            try:
                return self.store.update(claimed, current.row_version)
            except VersionConflictError:
                self.metrics.record_version_conflict()
                current = self._reload(current)

    def _reload(self, mapping: SyncMapping) -> SyncMapping:
        fresh = self.store.get_by_id(mapping.id)
        if fresh is None:
            raise MappingStoreError(f"Mapping {mapping.id} disappeared")
        return fresh

    def _write(self, mapping: SyncMapping, mutate: Callable[[SyncMapping], None]) -> SyncMapping:
        """Read-modify-write mapping, re-reading and re-applying mutate on VersionConflictError."""
        current = mapping
        for _ in range(MAX_WRITE_TRIES):
            updated = current.model_copy(deep=True)
            mutate(updated)
            try:
                return self.store.update(updated, current.row_version)
            except VersionConflictError:
                self.metrics.record_version_conflict()
                current = self._reload(current)
        raise MappingStoreError(f"Mapping {mapping.id} kept changing; gave up after {MAX_WRITE_TRIES} tries")

    def _release(self, job: SyncJob, mapping: SyncMapping) -> SyncMapping:
        def release(m: SyncMapping) -> None:
            if m.claimed_by == job.job_id:
                m.claimed_by = None
                m.claim_expires_at = None

        return self._write(mapping, release)

    def _succeed(
        self,
        job: SyncJob,
        mapping: SyncMapping,
        start_status: SyncStatus,
        action: SyncAction,
        local_version: str,
        remote_version: str,
        side: SyncSide,
        remote_id: Optional[str] = None,
        local_id: Optional[str] = None,
        count_attempt: bool = True,
    ) -> SyncOutcome:
        now = self.clock()

        def finish(m: SyncMapping) -> None:
            if remote_id is not None:
                m.remote_id = remote_id
            if local_id is not None:
                m.local_id = local_id
            m.status = SyncStatus.SYNCED
            m.direction_of_truth = side
            m.local_version = local_version
            m.remote_version = remote_version
            m.last_synced_at = now
            if count_attempt:
                m.attempt_count = self._attempts_after(start_status, m)
            m.next_retry_at = None
            m.last_error = None
            m.claimed_by = None
            m.claim_expires_at = None

        return self._outcome(job, self._write(mapping, finish), action)

    @staticmethod
    def _attempts_after(start_status: SyncStatus, mapping: SyncMapping) -> int:
        """attempt_count after one more real attempt; a new episode starts unless retrying a pending mapping."""
        base = mapping.attempt_count if start_status == SyncStatus.PENDING else 0
        return base + 1

    def _fail(
        self,
        job: SyncJob,
        mapping: SyncMapping,
        start_status: SyncStatus,
        exc: Exception,
    ) -> SyncOutcome:
        """Record a failed attempt: pending with backoff for transient errors, error otherwise."""
        kind, message, details = _classify_exception(exc)
        now = self.clock()
        attempts = self._attempts_after(start_status, mapping)
        status = SyncStatus.ERROR
        next_retry_at = None

        if kind == SyncErrorKind.TRANSIENT:
            decision = self.scheduler.schedule(attempts, now)
            if decision.exhausted:
                kind = SyncErrorKind.RETRY_EXHAUSTED
                message = f"Gave up after {attempts} attempts: {message}"
                self.metrics.record_retry_exhausted()
            else:
                status = SyncStatus.PENDING
                next_retry_at = decision.next_retry_at
                details["retry_in_seconds"] = round(decision.delay_seconds, 3)
                self.metrics.record_retry_scheduled()

        error = SyncError(kind=kind, message=message, details=details, occurred_at=now)

        def record_failure(m: SyncMapping) -> None:
            m.status = status
            m.attempt_count = attempts
            m.next_retry_at = next_retry_at
            m.last_error = error
            m.claimed_by = None
            m.claim_expires_at = None

        updated = self._write(mapping, record_failure)
        self._log_error(job, updated, error)
        return self._outcome(job, updated, SyncAction.FAILED, error)

    def _log_error(
        self,
        job: SyncJob,
        mapping: Optional[SyncMapping],
        error: SyncError,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = dict(error.details)
        if extra:
            details.update(extra)
        self.error_log.record(ErrorLogEntry(
            organization_id=job.auth.organization_id,
            entity_type=job.entity_type,
            local_id=mapping.local_id if mapping else job.local_id,
            remote_id=mapping.remote_id if mapping else job.remote_id,
            job_id=job.job_id,
            kind=error.kind,
            message=error.message,
            details=details,
            attempt_count=mapping.attempt_count if mapping else 0,
            created_at=error.occurred_at,
        ))

    def _outcome(
        self,
        job: SyncJob,
        mapping: Optional[SyncMapping],
        action: SyncAction,
        error: Optional[SyncError] = None,
        status: Optional[SyncStatus] = None,
    ) -> SyncOutcome:
        status = status or (mapping.status if mapping else SyncStatus.ERROR)
        outcome = SyncOutcome(
            entity_type=job.entity_type,
            local_id=mapping.local_id if mapping else job.local_id,
            remote_id=mapping.remote_id if mapping else job.remote_id,
            status=status,
            action=action,
            mapping=mapping,
            error=error,
        )
        self.metrics.record_sync_outcome(
            job.entity_type.value, action.value, status.value, error.kind.value if error else None
        )

        extra = {"action": action.value, "status": status.value}
        if mapping is not None:
            extra["attempt_count"] = mapping.attempt_count
        if status == SyncStatus.ERROR:
            logger.error(f"Sync finished in error: {error.message if error else action.value}", extra_fields=extra)
        elif status in (SyncStatus.PENDING, SyncStatus.CONFLICT):
            logger.warning(f"Sync finished {status.value}", extra_fields=extra)
        else:
            logger.info(f"Sync finished {status.value}", extra_fields=extra)
        return outcome

    # =========================================================================
    # Gateway access
    # =========================================================================

    def _gateway_semaphore(self) -> asyncio.Semaphore:
        """Concurrency ceiling for gateway calls, one per event loop."""
        loop = asyncio.get_running_loop()
        if self._gateway_slots is None or self._gateway_slots_loop is not loop:
            self._gateway_slots = asyncio.Semaphore(self.settings.gateway_concurrency)
            self._gateway_slots_loop = loop
        return self._gateway_slots

    async def _call_gateway(self, operation: str, *args, **kwargs):
        """Invoke a gateway operation under the concurrency ceiling and per-call timeout.

        Timeouts and unexpected exceptions surface as TransientGatewayError.
        """
        timeout = self.settings.gateway_timeout_seconds
        error_kind = None
        async with self._gateway_semaphore():
            started = time.perf_counter()
            try:
                return await asyncio.wait_for(
                    getattr(self.gateway, operation)(*args, **kwargs),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                error_kind = SyncErrorKind.TRANSIENT.value
                raise TransientGatewayError(f"{operation} timed out after {timeout}s")
            except GatewayError as e:
                error_kind = e.kind.value
                raise
            except Exception as e:
                error_kind = SyncErrorKind.TRANSIENT.value
                raise TransientGatewayError(f"{operation} failed: {type(e).__name__}: {e}") from e
            finally:
                self.metrics.record_gateway_call(
                    operation,
                    duration_ms=(time.perf_counter() - started) * 1000,
                    error_kind=error_kind,
                )

    # =========================================================================
    # Bulk
    # =========================================================================

    async def _run_pool(self, items, handle, outcome: BulkOutcome, cancel_event) -> None:
        """Drain items with at most bulk_workers concurrent handlers."""
        iterator = iter(items)

        async def worker() -> None:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    outcome.cancelled = True
                    return
                try:
                    item = next(iterator)
                except StopIteration:
                    return
                outcome.record(await handle(item))

        await asyncio.gather(*(worker() for _ in range(max(1, self.settings.bulk_workers))))

    async def _bulk_push(self, auth: AuthContext, entity_type: EntityType, outcome: BulkOutcome,
                         cancel_event) -> None:
        due = self.store.list_due(auth.organization_id, entity_type, self.clock())

        async def handle(mapping: SyncMapping) -> SyncOutcome:
            # Retries of pending mappings redo whatever failed, in either direction
            direction = SyncDirection.PUSH if mapping.status == SyncStatus.UNSYNCED else SyncDirection.AUTO
            job = SyncJob(auth=auth, entity_type=entity_type, local_id=mapping.local_id,
                          direction=direction, remote_id=mapping.remote_id)
            return await self._guarded(job, self._sync_mapping(job, mapping))

        await self._run_pool(due, handle, outcome, cancel_event)

    async def _bulk_pull(self, auth: AuthContext, entity_type: EntityType, outcome: BulkOutcome,
                         cancel_event, cursor: Optional[str]) -> None:
        org = auth.organization_id

        async def handle(record: RemoteRecord) -> SyncOutcome:
            job = SyncJob(auth=auth, entity_type=entity_type, local_id=None,
                          direction=SyncDirection.PULL, remote_id=record.remote_id)
            return await self._guarded(job, self._pull_record(job, record))

        async def recover(reservation: SyncMapping) -> SyncOutcome:
            job = SyncJob(auth=auth, entity_type=entity_type, local_id=None,
                          direction=SyncDirection.PULL, remote_id=reservation.remote_id)
            return await self._guarded(job, self._complete_reservation(job, reservation, None))

        stale = self.store.list_stale_reservations(org, entity_type, self.clock())
        if stale:
            logger.info(f"Completing {len(stale)} interrupted imports")
            await self._run_pool(stale, recover, outcome, cancel_event)

        while not outcome.cancelled:
            try:
                changes = await self._call_gateway("list_changed_since", entity_type.value, cursor)
            except GatewayError as e:
                kind, message, details = _classify_exception(e)
                logger.warning(f"Listing remote changes failed: {message}")
                outcome.errors.append(BulkItemError(
                    status=SyncStatus.PENDING if kind == SyncErrorKind.TRANSIENT else SyncStatus.ERROR,
                    error=SyncError(kind=kind, message=message, details=details),
                ))
                break

            if not changes.records:
                break

            await self._run_pool(changes.records, handle, outcome, cancel_event)
            if outcome.cancelled:
                # Items of this page may be unprocessed; resume from the old cursor
                break
            if changes.next_cursor is None or changes.next_cursor == cursor:
                break
            cursor = changes.next_cursor
            outcome.next_cursor = cursor

    # =========================================================================
    # Pull of a single remote record
    # =========================================================================

    async def _pull_record(self, job: SyncJob, record: RemoteRecord) -> SyncOutcome:
        """Import or reconcile one remote record from a change listing."""
        org = job.auth.organization_id
        mapping = self.store.find_by_remote(org, job.entity_type, record.remote_id)

        if mapping is None:
            lease_until = self.clock() + timedelta(seconds=self.settings.claim_lease_seconds)
            reservation = self.store.reserve_remote(
                org, job.entity_type, record.remote_id, job.job_id, lease_until
            )
            if reservation is not None:
                return await self._import_remote(job, reservation, record)
            mapping = self.store.find_by_remote(org, job.entity_type, record.remote_id)
            if mapping is None:
                raise MappingStoreError(f"Remote {record.remote_id} reserved but not found")

        if mapping.is_reservation:
            return await self._complete_reservation(job, mapping, record)

        job.local_id = mapping.local_id
        with with_correlation(local_id=mapping.local_id):
            return await self._sync_mapping(job, mapping, remote=record)

    async def _complete_reservation(
        self,
        job: SyncJob,
        reservation: SyncMapping,
        record: Optional[RemoteRecord],
    ) -> SyncOutcome:
        """Finish an import another job started, once its claim is released or expired."""
        claimed = await self._claim(job, reservation)
        if claimed is None:
            return self._outcome(job, reservation, SyncAction.DEFERRED, status=SyncStatus.PENDING)
        if not claimed.is_reservation:
            # The other job finished the import meanwhile
            self._release(job, claimed)
            job.local_id = claimed.local_id
            with with_correlation(local_id=claimed.local_id):
                return await self._sync_mapping(job, self._reload(claimed))

        if record is None:
            try:
                record = await self._call_gateway("fetch_remote", job.entity_type.value, claimed.remote_id)
            except GatewayError as e:
                return self._abandon_reservation(job, claimed, e)
        return await self._import_remote(job, claimed, record)

    async def _import_remote(self, job: SyncJob, reservation: SyncMapping, record: RemoteRecord) -> SyncOutcome:
        """Create the local record for a reserved remote id and bind the mapping to it."""
        try:
            local = await self.provider.create_local(
                job.auth, job.entity_type, record.payload, record.remote_id, modified_at=record.modified_at
            )
        except MappingStoreError:
            raise
        except Exception as e:
            return self._abandon_reservation(job, reservation, e)

        job.local_id = local.local_id
        logger.info(f"Imported remote record as {local.local_id}")
        return self._succeed(
            job, reservation, SyncStatus.UNSYNCED, SyncAction.CREATED_LOCAL,
            local_id=local.local_id,
            local_version=local.version,
            remote_version=record.version,
            side=SyncSide.REMOTE,
        )

    def _abandon_reservation(self, job: SyncJob, reservation: SyncMapping, exc: Exception) -> SyncOutcome:
        """Release a reservation whose import failed; the next pull completes it."""
        kind, message, details = _classify_exception(exc)
        error = SyncError(kind=kind, message=message, details=details, occurred_at=self.clock())

        def release(m: SyncMapping) -> None:
            m.last_error = error
            m.claimed_by = None
            m.claim_expires_at = None

        updated = self._write(reservation, release)
        self._log_error(job, updated, error)
        return self._outcome(job, updated, SyncAction.FAILED, error)
