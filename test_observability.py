"""
Observability Validation Test

This test validates the observability stack:
1. Metrics collection works (attempts, conflicts, gateway calls, bulk runs, timings)
2. Structured logging with correlation IDs works
3. Every log line of a sync attempt carries the record's correlation IDs

Pass criteria: From one mapping's local id you can find every log line and
metric the attempt produced.
"""

import asyncio
import json
import logging

import pytest

from core.observability.logging import (
    CorrelationContext,
    HumanReadableFormatter,
    StructuredFormatter,
    get_correlation_context,
    get_logger,
    with_correlation,
)
from core.observability.metrics import SyncMetrics, get_metrics
from core.sync.models import EntityType


def test_observability_imports():
    """Verify all observability modules import correctly."""
    from core.observability import (
        SyncMetrics, get_metrics,
        get_logger, configure_logging, CorrelationContext, with_correlation,
    )
    assert SyncMetrics is not None
    assert get_metrics is not None
    assert configure_logging is not None
    assert CorrelationContext is not None


class TestSyncMetrics:
    """Test the metrics collection system."""

    def test_singleton_instance(self):
        """SyncMetrics returns same instance."""
        assert SyncMetrics.instance() is SyncMetrics.instance()
        assert get_metrics() is SyncMetrics.instance()

    def test_outcome_tracking(self):
        """Track attempts by action, status, error kind and entity type."""
        metrics = get_metrics()

        metrics.record_sync_outcome("sales_document", "created_remote", "synced")
        metrics.record_sync_outcome("sales_document", "failed", "pending", "transient")
        metrics.record_sync_outcome("contact", "failed", "error", "rejected")

        summary = metrics.get_summary()["attempts"]
        assert summary["total"] == 3
        assert summary["by_action"] == {"created_remote": 1, "failed": 2}
        assert summary["by_status"]["pending"] == 1
        assert summary["by_error_kind"] == {"transient": 1, "rejected": 1}
        assert summary["by_entity_type"]["sales_document"] == {"synced": 1, "pending": 1}

    def test_conflict_events(self):
        metrics = get_metrics()

        metrics.record_conflict("detected")
        metrics.record_conflict("auto_resolved")

        assert metrics.get_summary()["conflicts"] == {
            "detected": 1, "auto_resolved": 1, "manually_resolved": 0,
        }
        with pytest.raises(ValueError):
            metrics.record_conflict("ignored")

    def test_gateway_calls(self):
        metrics = get_metrics()

        metrics.record_gateway_call("create_remote", duration_ms=120.0)
        metrics.record_gateway_call("create_remote", duration_ms=80.0, error_kind="transient")

        gateway = metrics.get_summary()["gateway"]
        assert gateway["calls"] == 2
        assert gateway["failures"] == 1
        assert gateway["by_operation"]["create_remote"] == {"calls": 2, "failures": 1}
        assert metrics.get_timing_stats("gateway.create_remote")["average_ms"] == 100.0

    def test_bulk_runs(self):
        metrics = get_metrics()

        metrics.record_bulk_started()
        metrics.record_bulk_completed(cancelled=True, duration_ms=50.0)

        bulk = metrics.get_summary()["bulk"]
        assert bulk["started"] == 1
        assert bulk["completed"] == 1
        assert bulk["cancelled"] == 1
        assert bulk["last_completed_at"] is not None

    def test_timing_percentile_calculation(self):
        """Calculate p95 timing correctly."""
        metrics = get_metrics()

        for i in range(1, 101):
            metrics.record_gateway_call("fetch_remote", duration_ms=i)

        stats = metrics.get_timing_stats("gateway.fetch_remote")

        # Average should be ~50.5
        assert 49 <= stats["average_ms"] <= 52
        # P95 should be ~95
        assert 93 <= stats["p95_ms"] <= 97
        assert stats["sample_count"] == 100

    def test_reset(self):
        metrics = get_metrics()
        metrics.record_retry_scheduled()

        metrics.reset()

        assert metrics.get_summary()["attempts"]["retries_scheduled"] == 0


class TestCorrelatedLogging:
    """Test structured logging with correlation IDs."""

    def test_correlation_context_creation(self):
        """Create correlation context with all fields."""
        ctx = CorrelationContext(
            organization_id="org-1",
            entity_type="sales_document",
            local_id="SO-1",
            job_id="job-abc",
            workflow_id="wf-abc",
        )

        assert ctx.organization_id == "org-1"
        assert ctx.to_dict()["local_id"] == "SO-1"
        assert "remote_id" not in ctx.to_dict()

    def test_context_var_isolation(self):
        """Nested contexts merge and unwind."""
        assert get_correlation_context().local_id is None

        with with_correlation(organization_id="org-1", local_id="SO-1"):
            with with_correlation(remote_id="R-1", local_id=None):
                inner = get_correlation_context()
                assert inner.local_id == "SO-1"
                assert inner.remote_id == "R-1"
            assert get_correlation_context().remote_id is None

        assert get_correlation_context().organization_id is None

    def test_structured_formatter_json_output(self):
        """StructuredFormatter outputs valid JSON."""
        formatter = StructuredFormatter()

        with with_correlation(organization_id="org-1", local_id="SO-1"):
            record = logging.LogRecord(
                name="test",
                level=logging.INFO,
                pathname="test.py",
                lineno=10,
                msg="Test message",
                args=(),
                exc_info=None,
            )
            record.extra_fields = {"attempt_count": 2}

            data = json.loads(formatter.format(record))

        assert data["message"] == "Test message"
        assert data["organization_id"] == "org-1"
        assert data["local_id"] == "SO-1"
        assert data["attempt_count"] == 2

    def test_human_readable_formatter(self):
        formatter = HumanReadableFormatter()

        with with_correlation(organization_id="org-1", entity_type="contact", local_id="C-7",
                              job_id="0123456789abcdef"):
            record = logging.LogRecord("core.sync", logging.WARNING, "x.py", 1, "Retry scheduled", (), None)
            record.extra_fields = {"attempt_count": 2}
            line = formatter.format(record)

        assert "[org-1/contact:C-7/01234567]" in line
        assert line.endswith("attempt_count=2")

    def test_exception_info_is_kept(self, caplog):
        logger = get_logger("core.sync.test")

        with caplog.at_level(logging.ERROR, logger="core.sync.test"):
            try:
                raise RuntimeError("boom")
            except RuntimeError:
                logger.exception("Failed")

        assert caplog.records[-1].exc_info[0] is RuntimeError


class TestEndToEndCorrelation:
    """
    End-to-end: every log line of one attempt carries its ids.
    This validates the pass criteria.
    """

    def test_attempt_logs_carry_correlation(self, orchestrator, provider, auth, clock):
        provider.save_record(auth, EntityType.CONTACT, "C-1", {"name": "Acme"}, modified_at=clock())
        seen = []

        class Capture(logging.Handler):
            def emit(self, record):
                seen.append((record.getMessage(), get_correlation_context()))

        handler = Capture(level=logging.INFO)
        target = logging.getLogger("core.sync.orchestrator")
        target.addHandler(handler)
        try:
            outcome = asyncio.run(orchestrator.request_sync(auth, EntityType.CONTACT, "C-1"))
        finally:
            target.removeHandler(handler)

        assert outcome.action.value == "created_remote"
        assert seen
        job_ids = {ctx.job_id for _, ctx in seen}
        assert len(job_ids) == 1 and None not in job_ids
        for message, ctx in seen:
            assert ctx.organization_id == "org-1"
            assert ctx.entity_type == "contact"
            assert ctx.local_id == "C-1"

        summary = get_metrics().get_summary()
        assert summary["attempts"]["by_entity_type"]["contact"] == {"synced": 1}
