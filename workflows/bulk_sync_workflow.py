"""
Periodic Bulk Sync Workflow

Long-running workflow that keeps one organization's entity type in sync:
SWEEP → WAIT(interval) → SWEEP → ...

- The pull cursor is carried in workflow state between sweeps
- A `stop` signal ends the loop at the next wait or sweep boundary
- A `progress` query reports totals so far
- History is bounded by continue_as_new after a fixed number of sweeps
- An authentication failure stops the loop; it needs credential remediation
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from activities.sync import run_bulk_sync, BulkSyncInput


BULK_RETRY_POLICY = RetryPolicy(
    maximum_attempts=5,
    initial_interval=timedelta(seconds=10),
    maximum_interval=timedelta(minutes=5),
    backoff_coefficient=2.0,
    # Credentials won't fix themselves
    non_retryable_error_types=["AuthFailureError"],
)


@dataclass
class BulkSyncWorkflowInput:
    """Input for the periodic bulk sync workflow"""
    organization_id: str
    principal_id: str
    entity_type: str
    direction: str = "auto"
    interval_minutes: int = 15

    # Carried across continue_as_new
    cursor: Optional[str] = None
    totals: Dict[str, int] = field(default_factory=dict)
    sweeps_completed: int = 0

    sweeps_per_run: int = 100
    max_sweeps: Optional[int] = None   # None = run until stopped


@workflow.defn
class BulkSyncWorkflow:
    """Interval-driven bulk sync for one organization and entity type."""

    def __init__(self):
        self._stop_requested = False
        self._cursor: Optional[str] = None
        self._sweeps = 0
        self._totals: Dict[str, int] = {"synced": 0, "pending": 0, "conflict": 0, "error": 0}
        self._last_errors: List[Dict[str, Any]] = []
        self._stopped_reason: Optional[str] = None

    @workflow.run
    async def run(self, input: BulkSyncWorkflowInput) -> Dict[str, Any]:
        self._cursor = input.cursor
        self._sweeps = input.sweeps_completed
        self._totals.update(input.totals)
        workflow.logger.info(
            f"Bulk sync loop for {input.organization_id}/{input.entity_type} "
            f"every {input.interval_minutes}m"
        )

        sweeps_this_run = 0
        while not self._stop_requested:
            try:
                result = await workflow.execute_activity(
                    run_bulk_sync,
                    BulkSyncInput(
                        organization_id=input.organization_id,
                        principal_id=input.principal_id,
                        entity_type=input.entity_type,
                        direction=input.direction,
                        cursor=self._cursor,
                    ),
                    start_to_close_timeout=timedelta(minutes=30),
                    heartbeat_timeout=timedelta(minutes=2),
                    retry_policy=BULK_RETRY_POLICY,
                )
            except ActivityError as e:
                workflow.logger.error(f"Bulk sweep failed, stopping: {e.cause or e}")
                self._stopped_reason = str(e.cause or e)
                break

            self._sweeps += 1
            sweeps_this_run += 1
            self._cursor = result.next_cursor or self._cursor
            self._last_errors = result.errors[:20]
            for key in ("synced", "pending", "conflict", "error"):
                self._totals[key] = self._totals.get(key, 0) + getattr(result, key)

            if input.max_sweeps is not None and self._sweeps >= input.max_sweeps:
                self._stopped_reason = "max_sweeps"
                break

            if sweeps_this_run >= input.sweeps_per_run:
                workflow.continue_as_new(BulkSyncWorkflowInput(
                    organization_id=input.organization_id,
                    principal_id=input.principal_id,
                    entity_type=input.entity_type,
                    direction=input.direction,
                    interval_minutes=input.interval_minutes,
                    cursor=self._cursor,
                    totals=dict(self._totals),
                    sweeps_completed=self._sweeps,
                    sweeps_per_run=input.sweeps_per_run,
                    max_sweeps=input.max_sweeps,
                ))

            try:
                await workflow.wait_condition(
                    lambda: self._stop_requested,
                    timeout=timedelta(minutes=input.interval_minutes),
                )
            except asyncio.TimeoutError:
                pass

        if self._stop_requested and self._stopped_reason is None:
            self._stopped_reason = "stop_signal"
        return self.progress()

    @workflow.signal
    def stop(self) -> None:
        """Finish after the current sweep."""
        self._stop_requested = True

    @workflow.query
    def progress(self) -> Dict[str, Any]:
        return {
            "sweeps": self._sweeps,
            "cursor": self._cursor,
            "totals": dict(self._totals),
            "last_errors": list(self._last_errors),
            "stopped_reason": self._stopped_reason,
        }
