"""Shared pytest fixtures for the sync engine tests."""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import pytest

from connectors.erp_base import RejectedError, RemoteWriteResult
from connectors.memory import InMemoryGateway
from core.config import SyncSettings
from core.observability.metrics import SyncMetrics
from core.sync.content import SqliteContentProvider
from core.sync.error_log import SyncErrorLog
from core.sync.mapping_store import MappingStore
from core.sync.models import AuthContext
from core.sync.orchestrator import SyncOrchestrator


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class RejectingGateway(InMemoryGateway):
    """Sandbox gateway that refuses payloads flagged with "reject"."""

    async def create_remote(
        self,
        entity_type: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> RemoteWriteResult:
        if payload.get("reject"):
            raise RejectedError(
                "Validation failed: customer is blocked",
                400,
                {"field": "customer"},
            )
        return await super().create_remote(entity_type, payload, idempotency_key)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are a process-wide singleton; start every test from zero."""
    SyncMetrics.instance().reset()
    yield
    SyncMetrics.instance().reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(
        db_path=tmp_path / "sync.db",
        retry_base_seconds=30.0,
        retry_cap_exponent=6,
        retry_jitter_seconds=0.0,
        max_attempts=5,
        gateway_timeout_seconds=2.0,
        gateway_concurrency=4,
        bulk_workers=2,
        claim_lease_seconds=2.0,
        auto_resolve_conflicts=True,
    )


@pytest.fixture
def auth():
    return AuthContext(principal_id="user-1", organization_id="org-1")


@pytest.fixture
def store(settings):
    store = MappingStore(settings.db_path)
    store.init_db()
    return store


@pytest.fixture
def error_log(settings):
    log = SyncErrorLog(settings.db_path)
    log.init_db()
    return log


@pytest.fixture
def provider(settings):
    provider = SqliteContentProvider(settings.db_path)
    provider.init_db()
    return provider


@pytest.fixture
def gateway(clock):
    return RejectingGateway(clock=clock)


@pytest.fixture
def orchestrator(store, error_log, gateway, provider, settings, clock):
    return SyncOrchestrator(
        store=store,
        error_log=error_log,
        gateway=gateway,
        provider=provider,
        settings=settings,
        clock=clock,
    )
