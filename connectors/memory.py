"""In-process sandbox gateway.

Holds remote records in memory so the engine can be exercised without an
ERP. Every write bumps a global sequence number that serves as the
list_changed_since cursor.

Sandbox controls:
- inject_failure(operation, error, times) makes the next calls fail
- custom_settings["latency_seconds"] delays every call
- custom_settings["page_size"] bounds list_changed_since pages
"""

import asyncio
import threading
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from connectors.erp_base import (
    GatewayConfig,
    GatewayError,
    RemoteChangeSet,
    RemoteGateway,
    RemoteNotFoundError,
    RemoteRecord,
    RemoteWriteResult,
    register_connector,
)
from core.sync.models import content_version

OPERATIONS = ("create_remote", "update_remote", "fetch_remote", "list_changed_since")


@dataclass
class _StoredRecord:
    remote_id: str
    payload: Dict[str, Any]
    version: str
    modified_at: datetime
    sequence: int


@register_connector("memory")
class InMemoryGateway(RemoteGateway):
    """Remote gateway backed by a dict, safe to share across threads."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        super().__init__(config or GatewayConfig(connector_type="memory", environment="sandbox"))
        self.clock = clock
        self.latency_seconds = float(self.config.custom_settings.get("latency_seconds", 0))
        self.page_size = int(self.config.custom_settings.get("page_size", 100))

        self._lock = threading.Lock()
        self._records: Dict[str, Dict[str, _StoredRecord]] = defaultdict(dict)
        self._idempotency: Dict[str, str] = {}
        self._sequence = 0
        self._next_id = 0
        self._failures: Dict[str, Deque[GatewayError]] = defaultdict(deque)
        self.calls: Counter = Counter()

    # =========================================================================
    # Sandbox controls
    # =========================================================================

    def inject_failure(self, operation: str, error: GatewayError, times: int = 1) -> None:
        """Make the next `times` calls of operation raise error."""
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        with self._lock:
            self._failures[operation].extend([error] * times)

    def seed(
        self,
        entity_type: str,
        payload: Dict[str, Any],
        modified_at: Optional[datetime] = None,
        remote_id: Optional[str] = None,
    ) -> RemoteRecord:
        """Create a record directly in the remote store (an ERP-side edit)."""
        with self._lock:
            remote_id = remote_id or self._new_id()
            return self._store(entity_type, remote_id, payload, modified_at)

    def edit(
        self,
        entity_type: str,
        remote_id: str,
        payload: Dict[str, Any],
        modified_at: Optional[datetime] = None,
    ) -> RemoteRecord:
        """Overwrite a record directly in the remote store."""
        with self._lock:
            if remote_id not in self._records[entity_type]:
                raise RemoteNotFoundError(f"{entity_type} {remote_id} not found", 404)
            return self._store(entity_type, remote_id, payload, modified_at)

    def delete(self, entity_type: str, remote_id: str) -> None:
        with self._lock:
            self._records[entity_type].pop(remote_id, None)

    def records(self, entity_type: str) -> List[RemoteRecord]:
        with self._lock:
            return [self._to_record(r) for r in self._records[entity_type].values()]

    # =========================================================================
    # RemoteGateway
    # =========================================================================

    async def create_remote(
        self,
        entity_type: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> RemoteWriteResult:
        await self._enter("create_remote")
        with self._lock:
            if idempotency_key and idempotency_key in self._idempotency:
                existing = self._records[entity_type].get(self._idempotency[idempotency_key])
                if existing is not None:
                    return RemoteWriteResult(remote_id=existing.remote_id, version=existing.version)
            remote_id = self._new_id()
            stored = self._store(entity_type, remote_id, payload, None)
            if idempotency_key:
                self._idempotency[idempotency_key] = remote_id
            return RemoteWriteResult(remote_id=remote_id, version=stored.version)

    async def update_remote(
        self,
        entity_type: str,
        remote_id: str,
        payload: Dict[str, Any],
    ) -> RemoteWriteResult:
        await self._enter("update_remote")
        with self._lock:
            if remote_id not in self._records[entity_type]:
                raise RemoteNotFoundError(f"{entity_type} {remote_id} not found", 404)
            stored = self._store(entity_type, remote_id, payload, None)
            return RemoteWriteResult(remote_id=remote_id, version=stored.version)

    async def fetch_remote(self, entity_type: str, remote_id: str) -> RemoteRecord:
        await self._enter("fetch_remote")
        with self._lock:
            stored = self._records[entity_type].get(remote_id)
            if stored is None:
                raise RemoteNotFoundError(f"{entity_type} {remote_id} not found", 404)
            return self._to_record(stored)

    async def list_changed_since(
        self,
        entity_type: str,
        cursor: Optional[str] = None,
    ) -> RemoteChangeSet:
        await self._enter("list_changed_since")
        try:
            after = int(cursor) if cursor else 0
        except ValueError:
            raise GatewayError(f"Invalid cursor: {cursor!r}")
        with self._lock:
            changed = sorted(
                (r for r in self._records[entity_type].values() if r.sequence > after),
                key=lambda r: r.sequence,
            )[:self.page_size]
            next_cursor = str(changed[-1].sequence) if changed else (cursor or None)
            return RemoteChangeSet(
                records=[self._to_record(r) for r in changed],
                next_cursor=next_cursor,
            )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _enter(self, operation: str) -> None:
        with self._lock:
            self.calls[operation] += 1
            pending = self._failures[operation]
            error = pending.popleft() if pending else None
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if error is not None:
            raise error

    def _new_id(self) -> str:
        self._next_id += 1
        return f"R-{self._next_id:06d}"

    def _store(
        self,
        entity_type: str,
        remote_id: str,
        payload: Dict[str, Any],
        modified_at: Optional[datetime],
    ) -> RemoteRecord:
        self._sequence += 1
        stored = _StoredRecord(
            remote_id=remote_id,
            payload=dict(payload),
            version=content_version(payload),
            modified_at=modified_at or self.clock(),
            sequence=self._sequence,
        )
        self._records[entity_type][remote_id] = stored
        return self._to_record(stored)

    @staticmethod
    def _to_record(stored: _StoredRecord) -> RemoteRecord:
        return RemoteRecord(
            remote_id=stored.remote_id,
            payload=dict(stored.payload),
            version=stored.version,
            modified_at=stored.modified_at,
        )
