"""
Metrics Collection for the ERP Sync Engine

Collects and exposes metrics for:
- Sync attempts by outcome (action and resulting status)
- Gateway calls (count, failures by kind, latency average/p95)
- Optimistic-concurrency retries on the mapping store
- Bulk runs (started, completed, cancelled)

Metrics are process-local and in-memory.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional, Any
import statistics


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class SyncAttemptMetrics:
    """Counters for individual sync attempts."""
    total: int = 0
    by_action: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    by_status: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    by_error_kind: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    by_entity_type: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(lambda: defaultdict(int)))
    version_conflicts: int = 0
    retries_scheduled: int = 0
    retries_exhausted: int = 0


@dataclass
class ConflictMetrics:
    """Counters for data conflicts."""
    detected: int = 0
    auto_resolved: int = 0
    manually_resolved: int = 0


@dataclass
class GatewayMetrics:
    """Counters for remote gateway calls."""
    calls: int = 0
    failures: int = 0
    by_operation: Dict[str, Dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: {"calls": 0, "failures": 0})
    )
    failures_by_kind: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class BulkMetrics:
    """Counters for bulk runs."""
    started: int = 0
    completed: int = 0
    cancelled: int = 0
    last_completed_at: Optional[datetime] = None


@dataclass
class TimingMetrics:
    """Latency samples (keep last N for percentile calculations)."""
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000
    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str = None):
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if stage:
            self.by_stage[stage].append(duration_ms)
            if len(self.by_stage[stage]) > self.max_samples:
                self.by_stage[stage] = self.by_stage[stage][-self.max_samples:]

    def get_average(self, stage: str = None) -> float:
        samples = self.by_stage.get(stage, []) if stage else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str = None) -> float:
        samples = self.by_stage.get(stage, []) if stage else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class SyncMetrics:
    """
    Thread-safe metrics collector for the sync engine.

    Usage:
        metrics = SyncMetrics.instance()
        metrics.record_sync_outcome("sales_document", "created_remote", "synced")
        metrics.record_gateway_call("create_remote", duration_ms=120.0)
    """

    _instance: Optional["SyncMetrics"] = None
    _instance_lock = Lock()

    def __init__(self):
        self._lock = Lock()
        self.reset()

    @classmethod
    def instance(cls) -> "SyncMetrics":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def reset(self):
        """Drop every counter and sample."""
        with self._lock:
            self.attempts = SyncAttemptMetrics()
            self.conflicts = ConflictMetrics()
            self.gateway = GatewayMetrics()
            self.bulk = BulkMetrics()
            self.timings = TimingMetrics()

    # =========================================================================
    # Sync Attempts
    # =========================================================================

    def record_sync_outcome(self, entity_type: str, action: str, status: str, error_kind: str = None):
        """Record the result of one sync attempt."""
        with self._lock:
            self.attempts.total += 1
            self.attempts.by_action[action] += 1
            self.attempts.by_status[status] += 1
            self.attempts.by_entity_type[entity_type][status] += 1
            if error_kind:
                self.attempts.by_error_kind[error_kind] += 1

    def record_version_conflict(self):
        """Record a lost optimistic-concurrency race on a mapping row."""
        with self._lock:
            self.attempts.version_conflicts += 1

    def record_retry_scheduled(self):
        with self._lock:
            self.attempts.retries_scheduled += 1

    def record_retry_exhausted(self):
        with self._lock:
            self.attempts.retries_exhausted += 1

    def record_conflict(self, event: str):
        """Record a conflict event: detected, auto_resolved or manually_resolved."""
        with self._lock:
            if event == "detected":
                self.conflicts.detected += 1
            elif event == "auto_resolved":
                self.conflicts.auto_resolved += 1
            elif event == "manually_resolved":
                self.conflicts.manually_resolved += 1
            else:
                raise ValueError(f"Unknown conflict event: {event}")

    # =========================================================================
    # Gateway Calls
    # =========================================================================

    def record_gateway_call(self, operation: str, duration_ms: float = None, error_kind: str = None):
        """Record a gateway call and its latency."""
        with self._lock:
            self.gateway.calls += 1
            self.gateway.by_operation[operation]["calls"] += 1
            if error_kind:
                self.gateway.failures += 1
                self.gateway.by_operation[operation]["failures"] += 1
                self.gateway.failures_by_kind[error_kind] += 1
            if duration_ms is not None:
                self.timings.add_sample(duration_ms, f"gateway.{operation}")

    # =========================================================================
    # Bulk Runs
    # =========================================================================

    def record_bulk_started(self):
        with self._lock:
            self.bulk.started += 1

    def record_bulk_completed(self, cancelled: bool = False, duration_ms: float = None):
        with self._lock:
            self.bulk.completed += 1
            if cancelled:
                self.bulk.cancelled += 1
            self.bulk.last_completed_at = datetime.utcnow()
            if duration_ms is not None:
                self.timings.add_sample(duration_ms, "bulk")

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, []) if stage else self.timings.samples),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "attempts": {
                    "total": self.attempts.total,
                    "by_action": dict(self.attempts.by_action),
                    "by_status": dict(self.attempts.by_status),
                    "by_error_kind": dict(self.attempts.by_error_kind),
                    "by_entity_type": {k: dict(v) for k, v in self.attempts.by_entity_type.items()},
                    "version_conflicts": self.attempts.version_conflicts,
                    "retries_scheduled": self.attempts.retries_scheduled,
                    "retries_exhausted": self.attempts.retries_exhausted,
                },
                "conflicts": {
                    "detected": self.conflicts.detected,
                    "auto_resolved": self.conflicts.auto_resolved,
                    "manually_resolved": self.conflicts.manually_resolved,
                },
                "gateway": {
                    "calls": self.gateway.calls,
                    "failures": self.gateway.failures,
                    "by_operation": {k: dict(v) for k, v in self.gateway.by_operation.items()},
                    "failures_by_kind": dict(self.gateway.failures_by_kind),
                },
                "bulk": {
                    "started": self.bulk.started,
                    "completed": self.bulk.completed,
                    "cancelled": self.bulk.cancelled,
                    "last_completed_at": (
                        self.bulk.last_completed_at.isoformat() if self.bulk.last_completed_at else None
                    ),
                },
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_stage": {
                        stage: {
                            "average_ms": self.timings.get_average(stage),
                            "p95_ms": self.timings.get_p95(stage),
                        }
                        for stage in self.timings.by_stage.keys()
                    },
                },
            }


def get_metrics() -> SyncMetrics:
    """Get the global metrics collector."""
    return SyncMetrics.instance()
