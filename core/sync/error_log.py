"""Error Log - persistent record of failed and conflicting sync attempts.

Every entry is written to the sync_error_log table and echoed to the
structured log. Operators resolve entries with notes once handled.
"""

import json
import sqlite3
from collections import defaultdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.config import DEFAULT_DB_PATH
from core.observability.logging import get_logger
from core.sync.mapping_store import from_db_timestamp, to_db_timestamp
from core.sync.models import EntityType, SyncErrorKind

logger = get_logger(__name__)

_WARNING_KINDS = {SyncErrorKind.TRANSIENT, SyncErrorKind.DATA_CONFLICT}


class ErrorLogEntry(BaseModel):
    """One recorded failure."""
    id: Optional[int] = None
    organization_id: str
    entity_type: EntityType
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    job_id: Optional[str] = None
    kind: SyncErrorKind
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    attempt_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    resolved: bool = False
    resolution_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None


class ErrorStatistics(BaseModel):
    """Aggregates over a trailing window."""
    total: int = 0
    by_kind: Dict[str, int] = Field(default_factory=dict)
    by_day: Dict[str, int] = Field(default_factory=dict)
    resolved: int = 0
    resolution_rate: float = 0.0


class SyncErrorLog:
    """SQLite-backed error log."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sync_error_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    organization_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    local_id TEXT,
                    remote_id TEXT,
                    job_id TEXT,
                    kind TEXT NOT NULL,
                    message TEXT NOT NULL,
                    details TEXT DEFAULT '{}',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    resolved INTEGER NOT NULL DEFAULT 0,
                    resolution_notes TEXT,
                    resolved_at TEXT
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_error_log_org_time
                ON sync_error_log(organization_id, created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_error_log_record
                ON sync_error_log(organization_id, entity_type, local_id)
            """)
            conn.commit()
        finally:
            conn.close()

    def record(self, entry: ErrorLogEntry) -> ErrorLogEntry:
        """Persist an entry and return it with its id populated."""
        conn = self._connect()
        try:
            cursor = conn.execute("""
                INSERT INTO sync_error_log
                (organization_id, entity_type, local_id, remote_id, job_id, kind,
                 message, details, attempt_count, created_at, resolved)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            """, (
                entry.organization_id,
                EntityType(entry.entity_type).value,
                entry.local_id,
                entry.remote_id,
                entry.job_id,
                SyncErrorKind(entry.kind).value,
                entry.message,
                json.dumps(entry.details, default=str),
                entry.attempt_count,
                to_db_timestamp(entry.created_at),
            ))
            conn.commit()
            stored = entry.model_copy(update={"id": cursor.lastrowid})
        finally:
            conn.close()

        log = logger.warning if stored.kind in _WARNING_KINDS else logger.error
        log(
            f"Sync error recorded: {stored.kind.value} - {stored.message}",
            extra_fields={
                "error_log_id": stored.id,
                "error_kind": stored.kind.value,
                "attempt_count": stored.attempt_count,
            },
        )
        return stored

    def get(self, entry_id: int, organization_id: str) -> Optional[ErrorLogEntry]:
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT * FROM sync_error_log WHERE id = ? AND organization_id = ?
            """, (entry_id, organization_id)).fetchone()
            return _row_to_entry(row) if row else None
        finally:
            conn.close()

    def query(
        self,
        organization_id: str,
        entity_type: Optional[EntityType] = None,
        local_id: Optional[str] = None,
        kind: Optional[SyncErrorKind] = None,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ErrorLogEntry]:
        """Entries for an organization, newest first."""
        query = "SELECT * FROM sync_error_log WHERE organization_id = ?"
        params: List[Any] = [organization_id]

        if entity_type is not None:
            query += " AND entity_type = ?"
            params.append(EntityType(entity_type).value)
        if local_id is not None:
            query += " AND local_id = ?"
            params.append(local_id)
        if kind is not None:
            query += " AND kind = ?"
            params.append(SyncErrorKind(kind).value)
        if resolved is not None:
            query += " AND resolved = ?"
            params.append(1 if resolved else 0)
        if since is not None:
            query += " AND created_at >= ?"
            params.append(to_db_timestamp(since))

        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        conn = self._connect()
        try:
            return [_row_to_entry(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def resolve(self, entry_id: int, organization_id: str, notes: Optional[str] = None) -> bool:
        """Mark an unresolved entry resolved. Returns whether a row changed."""
        conn = self._connect()
        try:
            cursor = conn.execute("""
                UPDATE sync_error_log
                SET resolved = 1, resolution_notes = ?, resolved_at = ?
                WHERE id = ? AND organization_id = ? AND resolved = 0
            """, (notes, to_db_timestamp(datetime.utcnow()), entry_id, organization_id))
            conn.commit()
            changed = cursor.rowcount > 0
        finally:
            conn.close()

        if changed:
            logger.info(f"Sync error {entry_id} resolved", extra_fields={"error_log_id": entry_id})
        return changed

    def statistics(
        self,
        organization_id: str,
        days: int = 7,
        now: Optional[datetime] = None,
    ) -> ErrorStatistics:
        """Totals, per-kind and per-day counts, and resolution rate over the last `days` days."""
        now = now or datetime.utcnow()
        since = to_db_timestamp(now - timedelta(days=days))

        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT kind, substr(created_at, 1, 10) AS day, resolved
                FROM sync_error_log
                WHERE organization_id = ? AND created_at >= ?
            """, (organization_id, since)).fetchall()
        finally:
            conn.close()

        by_kind: Dict[str, int] = defaultdict(int)
        by_day: Dict[str, int] = defaultdict(int)
        resolved = 0
        for row in rows:
            by_kind[row["kind"]] += 1
            by_day[row["day"]] += 1
            resolved += row["resolved"]

        total = len(rows)
        return ErrorStatistics(
            total=total,
            by_kind=dict(by_kind),
            by_day=dict(sorted(by_day.items())),
            resolved=resolved,
            resolution_rate=round(resolved / total, 4) if total else 0.0,
        )


def _row_to_entry(row: sqlite3.Row) -> ErrorLogEntry:
    """Convert a database row to ErrorLogEntry."""
    return ErrorLogEntry(
        id=row["id"],
        organization_id=row["organization_id"],
        entity_type=EntityType(row["entity_type"]),
        local_id=row["local_id"],
        remote_id=row["remote_id"],
        job_id=row["job_id"],
        kind=SyncErrorKind(row["kind"]),
        message=row["message"],
        details=json.loads(row["details"]) if row["details"] else {},
        attempt_count=row["attempt_count"],
        created_at=from_db_timestamp(row["created_at"]),
        resolved=bool(row["resolved"]),
        resolution_notes=row["resolution_notes"],
        resolved_at=from_db_timestamp(row["resolved_at"]),
    )
