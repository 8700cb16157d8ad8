"""Conflict Resolver - outcome when both sides changed since the last sync.

The more recently modified side wins. Missing or equal timestamps yield no
winner and the mapping waits for an explicit resolution.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from core.sync.models import SyncSide


@dataclass(frozen=True)
class ConflictDecision:
    winner: Optional[SyncSide]
    reason: str

    @property
    def is_ambiguous(self) -> bool:
        return self.winner is None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ConflictResolver:
    """Last-modified-wins policy that never guesses on ties."""

    def decide(
        self,
        local_modified_at: Optional[datetime],
        remote_modified_at: Optional[datetime],
    ) -> ConflictDecision:
        if local_modified_at is None or remote_modified_at is None:
            return ConflictDecision(winner=None, reason="timestamp_unavailable")

        local_ts = _as_utc(local_modified_at)
        remote_ts = _as_utc(remote_modified_at)
        if local_ts == remote_ts:
            return ConflictDecision(winner=None, reason="timestamps_equal")
        if local_ts > remote_ts:
            return ConflictDecision(winner=SyncSide.LOCAL, reason="local_newer")
        return ConflictDecision(winner=SyncSide.REMOTE, reason="remote_newer")
