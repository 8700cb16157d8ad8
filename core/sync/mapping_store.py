"""Mapping Store - durable local/remote correspondences (SQLite).

One row per (organization_id, entity_type, local_id). remote_id is unique
per (organization_id, entity_type) once set. Every write goes through
`update`, conditioned on the row_version read by the caller.

Rows are never deleted; a mapping whose counterpart disappeared is marked
`error` with reason counterpart_missing.
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set

from core.config import DEFAULT_DB_PATH
from core.sync.models import (
    EntityType,
    SyncError,
    SyncMapping,
    SyncSide,
    SyncStatus,
    reservation_local_id,
)


class MappingStoreError(Exception):
    """Base exception for mapping store failures."""


class VersionConflictError(MappingStoreError):
    """The mapping was written by someone else since it was read."""

    def __init__(self, mapping_id: Optional[int], expected_version: int):
        super().__init__(
            f"Mapping {mapping_id} changed since read (expected row_version {expected_version})"
        )
        self.mapping_id = mapping_id
        self.expected_version = expected_version


class DuplicateMappingError(MappingStoreError):
    """A write would give two mappings the same local_id or remote_id."""


# =============================================================================
# Timestamp encoding
# =============================================================================

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width naive-UTC text so SQL string comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(_TS_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


# =============================================================================
# Store
# =============================================================================

class MappingStore:
    """SQLite-backed Mapping Store.

    Each call opens its own connection, so one store can be shared by
    threads and processes pointing at the same file.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create the sync_mappings table and its indexes."""
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sync_mappings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    organization_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    local_id TEXT NOT NULL,
                    remote_id TEXT,
                    status TEXT NOT NULL DEFAULT 'unsynced'
                        CHECK (status IN ('unsynced', 'pending', 'synced', 'conflict', 'error')),
                    direction_of_truth TEXT,
                    local_version TEXT,
                    remote_version TEXT,
                    last_synced_at TEXT,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    next_retry_at TEXT,
                    last_error TEXT,
                    row_version INTEGER NOT NULL DEFAULT 0,
                    claimed_by TEXT,
                    claim_expires_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(organization_id, entity_type, local_id)
                )
            """)
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_mappings_remote
                ON sync_mappings(organization_id, entity_type, remote_id)
                WHERE remote_id IS NOT NULL
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_mappings_due
                ON sync_mappings(organization_id, entity_type, status, next_retry_at, local_id)
            """)
            conn.commit()
        finally:
            conn.close()

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, organization_id: str, entity_type: EntityType, local_id: str) -> Optional[SyncMapping]:
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT * FROM sync_mappings
                WHERE organization_id = ? AND entity_type = ? AND local_id = ?
            """, (organization_id, EntityType(entity_type).value, local_id)).fetchone()
            return _row_to_mapping(row) if row else None
        finally:
            conn.close()

    def get_by_id(self, mapping_id: int) -> Optional[SyncMapping]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM sync_mappings WHERE id = ?", (mapping_id,)).fetchone()
            return _row_to_mapping(row) if row else None
        finally:
            conn.close()

    def find_by_remote(
        self,
        organization_id: str,
        entity_type: EntityType,
        remote_id: str,
    ) -> Optional[SyncMapping]:
        """Mapping already bound to remote_id, if any."""
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT * FROM sync_mappings
                WHERE organization_id = ? AND entity_type = ? AND remote_id = ?
            """, (organization_id, EntityType(entity_type).value, remote_id)).fetchone()
            return _row_to_mapping(row) if row else None
        finally:
            conn.close()

    def mapped_remote_ids(
        self,
        organization_id: str,
        entity_type: EntityType,
        remote_ids: Iterable[str],
    ) -> Set[str]:
        """Subset of remote_ids that already have a mapping."""
        wanted = list(dict.fromkeys(remote_ids))
        found: Set[str] = set()
        if not wanted:
            return found

        conn = self._connect()
        try:
            # Stay under SQLite's bound-parameter limit
            for start in range(0, len(wanted), 500):
                chunk = wanted[start:start + 500]
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(f"""
                    SELECT remote_id FROM sync_mappings
                    WHERE organization_id = ? AND entity_type = ?
                      AND remote_id IN ({placeholders})
                """, [organization_id, EntityType(entity_type).value, *chunk]).fetchall()
                found.update(row["remote_id"] for row in rows)
            return found
        finally:
            conn.close()

    def count_by_status(self, organization_id: str, entity_type: EntityType) -> Dict[SyncStatus, int]:
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT status, COUNT(*) AS n FROM sync_mappings
                WHERE organization_id = ? AND entity_type = ?
                GROUP BY status
            """, (organization_id, EntityType(entity_type).value)).fetchall()
            counts = {status: 0 for status in SyncStatus}
            for row in rows:
                counts[SyncStatus(row["status"])] = row["n"]
            return counts
        finally:
            conn.close()

    def list_due(
        self,
        organization_id: str,
        entity_type: EntityType,
        now: datetime,
        batch_size: int = 100,
    ) -> Iterator[SyncMapping]:
        """Yield unsynced mappings and pending mappings whose retry time has come.

        Ordered by next_retry_at ascending (unsynced rows, having none, come
        first) then local_id. Rows are fetched in keyset-paginated batches;
        a consumer that stops early re-issues the call to resume.
        """
        now_text = to_db_timestamp(now)
        last_key = None

        while True:
            params = [organization_id, EntityType(entity_type).value, now_text]
            query = """
                SELECT * FROM sync_mappings
                WHERE organization_id = ? AND entity_type = ?
                  AND (status = 'unsynced'
                       OR (status = 'pending' AND next_retry_at IS NOT NULL AND next_retry_at <= ?))
            """
            if last_key is not None:
                query += " AND (COALESCE(next_retry_at, ''), local_id) > (?, ?)"
                params.extend(last_key)
            query += " ORDER BY COALESCE(next_retry_at, '') ASC, local_id ASC LIMIT ?"
            params.append(batch_size)

            conn = self._connect()
            try:
                rows = conn.execute(query, params).fetchall()
            finally:
                conn.close()

            if not rows:
                return

            for row in rows:
                yield _row_to_mapping(row)

            tail = rows[-1]
            last_key = (tail["next_retry_at"] or "", tail["local_id"])
            if len(rows) < batch_size:
                return

    def list_stale_reservations(
        self,
        organization_id: str,
        entity_type: EntityType,
        now: datetime,
    ) -> List[SyncMapping]:
        """Pull reservations whose import never completed and nobody holds."""
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT * FROM sync_mappings
                WHERE organization_id = ? AND entity_type = ?
                  AND status = 'pending' AND remote_id IS NOT NULL
                  AND local_id = 'remote:' || remote_id
                  AND (claimed_by IS NULL OR claim_expires_at IS NULL OR claim_expires_at <= ?)
                ORDER BY remote_id
            """, (organization_id, EntityType(entity_type).value, to_db_timestamp(now))).fetchall()
            return [_row_to_mapping(row) for row in rows]
        finally:
            conn.close()

    def list_claimed_by(
        self,
        organization_id: str,
        entity_type: EntityType,
        job_id: str,
    ) -> List[SyncMapping]:
        """Mappings whose attempt lease is held by job_id."""
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT * FROM sync_mappings
                WHERE organization_id = ? AND entity_type = ? AND claimed_by = ?
                ORDER BY id
            """, (organization_id, EntityType(entity_type).value, job_id)).fetchall()
            return [_row_to_mapping(row) for row in rows]
        finally:
            conn.close()

    # =========================================================================
    # Writes
    # =========================================================================

    def get_or_create(
        self,
        organization_id: str,
        entity_type: EntityType,
        local_id: str,
    ) -> SyncMapping:
        """Return the mapping for the key, creating an unsynced one if absent.

        INSERT OR IGNORE against the unique key makes concurrent callers
        converge on a single row.
        """
        now = to_db_timestamp(datetime.utcnow())
        et = EntityType(entity_type).value
        conn = self._connect()
        try:
            conn.execute("""
                INSERT OR IGNORE INTO sync_mappings
                (organization_id, entity_type, local_id, status, created_at, updated_at)
                VALUES (?, ?, ?, 'unsynced', ?, ?)
            """, (organization_id, et, local_id, now, now))
            conn.commit()
            row = conn.execute("""
                SELECT * FROM sync_mappings
                WHERE organization_id = ? AND entity_type = ? AND local_id = ?
            """, (organization_id, et, local_id)).fetchone()
            return _row_to_mapping(row)
        finally:
            conn.close()

    def reserve_remote(
        self,
        organization_id: str,
        entity_type: EntityType,
        remote_id: str,
        job_id: str,
        claim_expires_at: datetime,
    ) -> Optional[SyncMapping]:
        """Insert a placeholder mapping that claims remote_id for a pull.

        Returns:
            The reservation, or None when remote_id is already mapped
        """
        now = to_db_timestamp(datetime.utcnow())
        et = EntityType(entity_type).value
        conn = self._connect()
        try:
            try:
                conn.execute("""
                    INSERT INTO sync_mappings
                    (organization_id, entity_type, local_id, remote_id, status,
                     direction_of_truth, claimed_by, claim_expires_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 'pending', 'remote', ?, ?, ?, ?)
                """, (
                    organization_id, et, reservation_local_id(remote_id), remote_id,
                    job_id, to_db_timestamp(claim_expires_at), now, now,
                ))
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                return None
            row = conn.execute("""
                SELECT * FROM sync_mappings
                WHERE organization_id = ? AND entity_type = ? AND remote_id = ?
            """, (organization_id, et, remote_id)).fetchone()
            return _row_to_mapping(row)
        finally:
            conn.close()

    def update(self, mapping: SyncMapping, expected_version: int) -> SyncMapping:
        """Write mapping back if its row_version is still expected_version.

        Returns:
            The stored mapping with its new row_version

        Raises:
            VersionConflictError: If the row changed since it was read
            DuplicateMappingError: If local_id or remote_id collides with another row
        """
        now = datetime.utcnow()
        conn = self._connect()
        try:
            try:
                cursor = conn.execute("""
                    UPDATE sync_mappings SET
                        local_id = ?,
                        remote_id = ?,
                        status = ?,
                        direction_of_truth = ?,
                        local_version = ?,
                        remote_version = ?,
                        last_synced_at = ?,
                        attempt_count = ?,
                        next_retry_at = ?,
                        last_error = ?,
                        claimed_by = ?,
                        claim_expires_at = ?,
                        updated_at = ?,
                        row_version = row_version + 1
                    WHERE id = ? AND row_version = ?
                """, (
                    mapping.local_id,
                    mapping.remote_id,
                    SyncStatus(mapping.status).value,
                    SyncSide(mapping.direction_of_truth).value if mapping.direction_of_truth else None,
                    mapping.local_version,
                    mapping.remote_version,
                    to_db_timestamp(mapping.last_synced_at),
                    mapping.attempt_count,
                    to_db_timestamp(mapping.next_retry_at),
                    mapping.last_error.model_dump_json() if mapping.last_error else None,
                    mapping.claimed_by,
                    to_db_timestamp(mapping.claim_expires_at),
                    to_db_timestamp(now),
                    mapping.id,
                    expected_version,
                ))
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise DuplicateMappingError(str(e)) from e

            if cursor.rowcount == 0:
                conn.rollback()
                raise VersionConflictError(mapping.id, expected_version)
            conn.commit()

            row = conn.execute("SELECT * FROM sync_mappings WHERE id = ?", (mapping.id,)).fetchone()
            return _row_to_mapping(row)
        finally:
            conn.close()


def _row_to_mapping(row: sqlite3.Row) -> SyncMapping:
    """Convert a database row to SyncMapping."""
    return SyncMapping(
        id=row["id"],
        organization_id=row["organization_id"],
        entity_type=EntityType(row["entity_type"]),
        local_id=row["local_id"],
        remote_id=row["remote_id"],
        status=SyncStatus(row["status"]),
        direction_of_truth=SyncSide(row["direction_of_truth"]) if row["direction_of_truth"] else None,
        local_version=row["local_version"],
        remote_version=row["remote_version"],
        last_synced_at=from_db_timestamp(row["last_synced_at"]),
        attempt_count=row["attempt_count"],
        next_retry_at=from_db_timestamp(row["next_retry_at"]),
        last_error=SyncError.model_validate_json(row["last_error"]) if row["last_error"] else None,
        row_version=row["row_version"],
        claimed_by=row["claimed_by"],
        claim_expires_at=from_db_timestamp(row["claim_expires_at"]),
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )
