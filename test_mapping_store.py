"""
Mapping Store Tests

Validates the SQLite mapping store:
1. One mapping per (organization, entity type, local id), created lazily
2. remote_id unique per organization and entity type
3. Conditional writes reject stale row versions
4. Due-listing order and keyset pagination
"""

import sqlite3
from datetime import datetime, timedelta

import pytest

from core.sync.mapping_store import (
    DuplicateMappingError,
    MappingStore,
    VersionConflictError,
    from_db_timestamp,
    to_db_timestamp,
)
from core.sync.models import EntityType, SyncError, SyncErrorKind, SyncStatus


ET = EntityType.SALES_DOCUMENT
NOW = datetime(2024, 1, 15, 9, 0, 0)


class TestMappingLifecycle:

    def test_get_or_create_is_idempotent(self, store):
        """Repeated calls converge on one row."""
        first = store.get_or_create("org-1", ET, "SO-1")
        second = store.get_or_create("org-1", ET, "SO-1")

        assert first.id == second.id
        assert first.status == SyncStatus.UNSYNCED
        assert first.row_version == 0
        assert first.attempt_count == 0

    def test_same_local_id_in_other_organization_is_separate(self, store):
        mine = store.get_or_create("org-1", ET, "SO-1")
        theirs = store.get_or_create("org-2", ET, "SO-1")

        assert mine.id != theirs.id
        assert store.get("org-2", ET, "SO-1").id == theirs.id

    def test_get_missing_returns_none(self, store):
        assert store.get("org-1", ET, "nope") is None
        assert store.find_by_remote("org-1", ET, "R-1") is None

    def test_update_bumps_row_version(self, store):
        mapping = store.get_or_create("org-1", ET, "SO-1")
        mapping.remote_id = "R-1"
        mapping.status = SyncStatus.SYNCED
        mapping.last_error = SyncError(kind=SyncErrorKind.TRANSIENT, message="boom")

        updated = store.update(mapping, expected_version=0)

        assert updated.row_version == 1
        assert updated.remote_id == "R-1"
        assert updated.status == SyncStatus.SYNCED
        assert updated.last_error.kind == SyncErrorKind.TRANSIENT
        assert store.find_by_remote("org-1", ET, "R-1").local_id == "SO-1"

    def test_stale_write_raises_version_conflict(self, store):
        """A writer holding an old row_version loses."""
        mapping = store.get_or_create("org-1", ET, "SO-1")
        store.update(mapping.model_copy(update={"status": SyncStatus.PENDING}), expected_version=0)

        with pytest.raises(VersionConflictError) as exc_info:
            store.update(mapping.model_copy(update={"status": SyncStatus.SYNCED}), expected_version=0)

        assert exc_info.value.expected_version == 0
        assert store.get("org-1", ET, "SO-1").status == SyncStatus.PENDING

    def test_remote_id_is_unique(self, store):
        a = store.get_or_create("org-1", ET, "SO-1")
        b = store.get_or_create("org-1", ET, "SO-2")
        store.update(a.model_copy(update={"remote_id": "R-1"}), expected_version=0)

        with pytest.raises(DuplicateMappingError):
            store.update(b.model_copy(update={"remote_id": "R-1"}), expected_version=0)

    def test_status_is_constrained(self, store, settings):
        """The table refuses statuses outside the lifecycle."""
        store.get_or_create("org-1", ET, "SO-1")
        conn = sqlite3.connect(str(settings.db_path))
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("UPDATE sync_mappings SET status = 'done'")
        finally:
            conn.close()


class TestReservations:

    def test_reserve_remote_once(self, store):
        """Only the first reservation of a remote id wins."""
        won = store.reserve_remote("org-1", ET, "R-9", "job-a", NOW + timedelta(minutes=2))
        lost = store.reserve_remote("org-1", ET, "R-9", "job-b", NOW + timedelta(minutes=2))

        assert won is not None
        assert won.local_id == "remote:R-9"
        assert won.is_reservation
        assert won.status == SyncStatus.PENDING
        assert won.next_retry_at is None
        assert won.claimed_by == "job-a"
        assert lost is None

    def test_stale_reservations_need_expired_claim(self, store):
        store.reserve_remote("org-1", ET, "R-1", "job-a", NOW - timedelta(seconds=1))
        store.reserve_remote("org-1", ET, "R-2", "job-b", NOW + timedelta(minutes=2))

        stale = store.list_stale_reservations("org-1", ET, NOW)

        assert [m.remote_id for m in stale] == ["R-1"]

    def test_list_claimed_by_job(self, store):
        store.reserve_remote("org-1", ET, "R-1", "job-a", NOW + timedelta(minutes=2))
        store.reserve_remote("org-1", ET, "R-2", "job-b", NOW + timedelta(minutes=2))
        store.reserve_remote("org-2", ET, "R-3", "job-a", NOW + timedelta(minutes=2))

        held = store.list_claimed_by("org-1", ET, "job-a")

        assert [m.remote_id for m in held] == ["R-1"]
        assert store.list_claimed_by("org-1", ET, "job-c") == []


class TestListDue:

    def _pending(self, store, local_id, retry_at):
        mapping = store.get_or_create("org-1", ET, local_id)
        return store.update(
            mapping.model_copy(update={"status": SyncStatus.PENDING, "next_retry_at": retry_at}),
            mapping.row_version,
        )

    def test_unsynced_first_then_by_retry_time(self, store):
        self._pending(store, "SO-1", NOW - timedelta(minutes=1))
        self._pending(store, "SO-2", NOW - timedelta(minutes=5))
        self._pending(store, "SO-3", NOW + timedelta(minutes=5))  # not due
        store.get_or_create("org-1", ET, "SO-4")
        synced = store.get_or_create("org-1", ET, "SO-5")
        store.update(synced.model_copy(update={"status": SyncStatus.SYNCED}), 0)

        due = [m.local_id for m in store.list_due("org-1", ET, NOW)]

        assert due == ["SO-4", "SO-2", "SO-1"]

    def test_pending_without_retry_time_is_not_due(self, store):
        """Pull reservations carry no retry time and are never pushed."""
        store.reserve_remote("org-1", ET, "R-1", "job-a", NOW - timedelta(seconds=1))

        assert list(store.list_due("org-1", ET, NOW)) == []

    def test_pagination_covers_every_row(self, store):
        for i in range(7):
            store.get_or_create("org-1", ET, f"SO-{i:02d}")

        due = [m.local_id for m in store.list_due("org-1", ET, NOW, batch_size=3)]

        assert due == [f"SO-{i:02d}" for i in range(7)]

    def test_count_by_status_includes_zeros(self, store):
        store.get_or_create("org-1", ET, "SO-1")

        counts = store.count_by_status("org-1", ET)

        assert counts[SyncStatus.UNSYNCED] == 1
        assert counts[SyncStatus.CONFLICT] == 0
        assert set(counts) == set(SyncStatus)

    def test_mapped_remote_ids(self, store):
        mapping = store.get_or_create("org-1", ET, "SO-1")
        store.update(mapping.model_copy(update={"remote_id": "R-1"}), 0)

        assert store.mapped_remote_ids("org-1", ET, ["R-1", "R-2", "R-1"]) == {"R-1"}
        assert store.mapped_remote_ids("org-1", ET, []) == set()


class TestTimestamps:

    def test_aware_values_are_stored_as_utc(self):
        from datetime import timezone

        aware = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone(timedelta(hours=1)))

        assert to_db_timestamp(aware) == "2024-01-15T09:00:00.000000"
        assert from_db_timestamp("2024-01-15T09:00:00.000000") == NOW
        assert to_db_timestamp(None) is None
        assert from_db_timestamp(None) is None
