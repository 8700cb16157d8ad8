"""Entity content provider - access to the local business records.

The engine treats record content as an opaque payload plus a version and a
last-modified timestamp. Applications plug in their own provider; the SQLite
provider here backs local development and tests.
"""

import json
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from core.config import DEFAULT_DB_PATH
from core.sync.mapping_store import from_db_timestamp, to_db_timestamp
from core.sync.models import AuthContext, EntityType, LocalRecord, content_version


class LocalRecordNotFoundError(Exception):
    """The local record does not exist."""


class EntityContentProvider(ABC):
    """Read/write access to local records, scoped by organization."""

    @abstractmethod
    async def get_local(
        self, auth: AuthContext, entity_type: EntityType, local_id: str
    ) -> Optional[LocalRecord]:
        pass

    @abstractmethod
    async def create_local(
        self,
        auth: AuthContext,
        entity_type: EntityType,
        payload: Dict[str, Any],
        remote_id: str,
        modified_at: Optional[datetime] = None,
    ) -> LocalRecord:
        """Create a local record from remote content.

        Must return the already-created record when called again for the
        same remote_id, so an interrupted import can be completed safely.
        """
        pass

    @abstractmethod
    async def update_local(
        self,
        auth: AuthContext,
        entity_type: EntityType,
        local_id: str,
        payload: Dict[str, Any],
        modified_at: Optional[datetime] = None,
    ) -> LocalRecord:
        """Overwrite a local record.

        Raises:
            LocalRecordNotFoundError: If the record does not exist
        """
        pass


class SqliteContentProvider(EntityContentProvider):
    """Local records kept in a SQLite table as JSON payloads."""

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
                CREATE TABLE IF NOT EXISTS local_records (
                    organization_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    local_id TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    version TEXT NOT NULL,
                    origin_remote_id TEXT,
                    modified_at TEXT NOT NULL,
                    PRIMARY KEY (organization_id, entity_type, local_id)
                )
            """)
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_local_records_origin
                ON local_records(organization_id, entity_type, origin_remote_id)
                WHERE origin_remote_id IS NOT NULL
            """)
            conn.commit()
        finally:
            conn.close()

    def save_record(
        self,
        auth: AuthContext,
        entity_type: EntityType,
        local_id: str,
        payload: Dict[str, Any],
        modified_at: Optional[datetime] = None,
    ) -> LocalRecord:
        """Insert or overwrite a local record (a local edit)."""
        modified_at = modified_at or datetime.utcnow()
        version = content_version(payload)
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO local_records
                (organization_id, entity_type, local_id, payload, version, modified_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(organization_id, entity_type, local_id) DO UPDATE SET
                    payload = excluded.payload,
                    version = excluded.version,
                    modified_at = excluded.modified_at
            """, (
                auth.organization_id,
                EntityType(entity_type).value,
                local_id,
                json.dumps(payload, default=str),
                version,
                to_db_timestamp(modified_at),
            ))
            conn.commit()
        finally:
            conn.close()
        return LocalRecord(local_id=local_id, payload=payload, version=version, modified_at=modified_at)

    def count(self, auth: AuthContext, entity_type: EntityType) -> int:
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT COUNT(*) AS n FROM local_records
                WHERE organization_id = ? AND entity_type = ?
            """, (auth.organization_id, EntityType(entity_type).value)).fetchone()
            return row["n"]
        finally:
            conn.close()

    async def get_local(
        self, auth: AuthContext, entity_type: EntityType, local_id: str
    ) -> Optional[LocalRecord]:
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT * FROM local_records
                WHERE organization_id = ? AND entity_type = ? AND local_id = ?
            """, (auth.organization_id, EntityType(entity_type).value, local_id)).fetchone()
            return _row_to_record(row) if row else None
        finally:
            conn.close()

    async def create_local(
        self,
        auth: AuthContext,
        entity_type: EntityType,
        payload: Dict[str, Any],
        remote_id: str,
        modified_at: Optional[datetime] = None,
    ) -> LocalRecord:
        et = EntityType(entity_type).value
        modified_at = modified_at or datetime.utcnow()
        conn = self._connect()
        try:
            conn.execute("""
                INSERT OR IGNORE INTO local_records
                (organization_id, entity_type, local_id, payload, version, origin_remote_id, modified_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                auth.organization_id,
                et,
                f"{et}-{uuid.uuid4().hex[:12]}",
                json.dumps(payload, default=str),
                content_version(payload),
                remote_id,
                to_db_timestamp(modified_at),
            ))
            conn.commit()
            row = conn.execute("""
                SELECT * FROM local_records
                WHERE organization_id = ? AND entity_type = ? AND origin_remote_id = ?
            """, (auth.organization_id, et, remote_id)).fetchone()
            return _row_to_record(row)
        finally:
            conn.close()

    async def update_local(
        self,
        auth: AuthContext,
        entity_type: EntityType,
        local_id: str,
        payload: Dict[str, Any],
        modified_at: Optional[datetime] = None,
    ) -> LocalRecord:
        modified_at = modified_at or datetime.utcnow()
        version = content_version(payload)
        conn = self._connect()
        try:
            cursor = conn.execute("""
                UPDATE local_records SET payload = ?, version = ?, modified_at = ?
                WHERE organization_id = ? AND entity_type = ? AND local_id = ?
            """, (
                json.dumps(payload, default=str),
                version,
                to_db_timestamp(modified_at),
                auth.organization_id,
                EntityType(entity_type).value,
                local_id,
            ))
            conn.commit()
            if cursor.rowcount == 0:
                raise LocalRecordNotFoundError(f"Local record {entity_type}:{local_id} not found")
        finally:
            conn.close()
        return LocalRecord(local_id=local_id, payload=payload, version=version, modified_at=modified_at)


def _row_to_record(row: sqlite3.Row) -> LocalRecord:
    return LocalRecord(
        local_id=row["local_id"],
        payload=json.loads(row["payload"]) if row["payload"] else {},
        version=row["version"],
        modified_at=from_db_timestamp(row["modified_at"]),
    )
