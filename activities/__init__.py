"""Activity definitions module."""

from activities.sync import (
    run_bulk_sync,
    sync_entity,
    configure_orchestrator,
    get_orchestrator,
    BulkSyncInput,
    BulkSyncResult,
    SyncEntityInput,
)

__all__ = [
    "run_bulk_sync",
    "sync_entity",
    "configure_orchestrator",
    "get_orchestrator",
    "BulkSyncInput",
    "BulkSyncResult",
    "SyncEntityInput",
]
