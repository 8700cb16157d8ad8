"""
HTTP API Tests

Drives the FastAPI app through TestClient with a test orchestrator.
"""

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from connectors.erp_base import TransientGatewayError
from core.sync.models import EntityType


ET = EntityType.SALES_DOCUMENT
HEADERS = {"X-Principal-Id": "user-1", "X-Organization-Id": "org-1"}


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as client:
        yield client


class TestHealth:

    def test_health_reports_services(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"]["storage"] == "up"
        assert data["services"]["gateway"] == "connected"

    def test_probes(self, client):
        assert client.get("/ready").json() == {"status": "ready"}
        assert client.get("/live").json() == {"status": "alive"}


class TestSyncRoutes:

    def test_missing_auth_headers(self, client):
        response = client.post("/sync/sales_document/SO-1")

        assert response.status_code == 401

    def test_unknown_entity_type(self, client):
        response = client.post("/sync/invoice/INV-1", headers=HEADERS)

        assert response.status_code == 422

    def test_request_sync_and_read_status(self, client, provider, auth, clock):
        provider.save_record(auth, ET, "SO-1", {"total": 100}, modified_at=clock())

        created = client.post("/sync/sales_document/SO-1", headers=HEADERS)
        status = client.get("/sync/sales_document/SO-1", headers=HEADERS)

        assert created.status_code == 200
        assert created.json()["action"] == "created_remote"
        assert created.json()["status"] == "synced"
        assert status.json()["remote_id"] == "R-000001"
        assert status.json()["row_version"] >= 1

    def test_sync_failure_is_an_outcome_not_an_http_error(self, client, provider, gateway, auth, clock):
        provider.save_record(auth, ET, "SO-1", {"total": 100}, modified_at=clock())
        gateway.inject_failure("create_remote", TransientGatewayError("Service unavailable", 503))

        response = client.post("/sync/sales_document/SO-1", headers=HEADERS, json={"direction": "push"})

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["error"]["kind"] == "transient"

    def test_status_of_unknown_record(self, client):
        response = client.get("/sync/sales_document/SO-404", headers=HEADERS)

        assert response.status_code == 404

    def test_bulk_and_summary(self, client, store, provider, auth, clock):
        for local_id in ("SO-1", "SO-2"):
            provider.save_record(auth, ET, local_id, {"number": local_id}, modified_at=clock())
            store.get_or_create("org-1", ET, local_id)

        bulk = client.post("/sync/sales_document/bulk", headers=HEADERS, json={"direction": "push"})
        summary = client.get("/sync/sales_document/summary", headers=HEADERS)

        assert bulk.status_code == 200
        assert bulk.json()["synced"] == 2
        assert summary.json()["counts"]["synced"] == 2
        assert summary.json()["total"] == 2

    def test_unsynced_remote(self, client, gateway):
        gateway.seed("sales_document", {"customer": "Acme"})

        response = client.get("/sync/sales_document/unsynced-remote", headers=HEADERS)

        assert response.status_code == 200
        assert [item["remote_id"] for item in response.json()["items"]] == ["R-000001"]

    def test_resolve_requires_conflict(self, client, provider, auth, clock):
        provider.save_record(auth, ET, "SO-1", {"total": 100}, modified_at=clock())
        client.post("/sync/sales_document/SO-1", headers=HEADERS)

        not_found = client.post("/sync/sales_document/SO-9/resolve", headers=HEADERS, json={"winner": "local"})
        not_conflicted = client.post("/sync/sales_document/SO-1/resolve", headers=HEADERS, json={"winner": "local"})

        assert not_found.status_code == 404
        assert not_conflicted.status_code == 409

    def test_resolve_conflict(self, client, orchestrator, provider, gateway, auth, clock):
        provider.save_record(auth, ET, "SO-1", {"total": 100}, modified_at=clock())
        remote_id = client.post("/sync/sales_document/SO-1", headers=HEADERS).json()["remote_id"]
        edited_at = clock.advance(60)
        provider.save_record(auth, ET, "SO-1", {"total": 110}, modified_at=edited_at)
        gateway.edit("sales_document", remote_id, {"total": 120}, modified_at=edited_at)
        conflict = client.post("/sync/sales_document/SO-1", headers=HEADERS)
        assert conflict.json()["status"] == "conflict"

        resolved = client.post("/sync/sales_document/SO-1/resolve", headers=HEADERS, json={"winner": "remote"})

        assert resolved.status_code == 200
        assert resolved.json()["action"] == "conflict_resolved"
        assert resolved.json()["status"] == "synced"

    def test_retry(self, client, provider, gateway, auth, clock):
        provider.save_record(auth, ET, "SO-1", {"total": 100, "reject": True}, modified_at=clock())
        failed = client.post("/sync/sales_document/SO-1", headers=HEADERS)
        assert failed.json()["status"] == "error"
        provider.save_record(auth, ET, "SO-1", {"total": 100}, modified_at=clock.advance(5))

        retried = client.post("/sync/sales_document/SO-1/retry", headers=HEADERS)

        assert retried.json()["action"] == "created_remote"

    def test_metrics(self, client, provider, auth, clock):
        provider.save_record(auth, ET, "SO-1", {"total": 100}, modified_at=clock())
        client.post("/sync/sales_document/SO-1", headers=HEADERS)

        metrics = client.get("/sync/metrics").json()

        assert metrics["attempts"]["by_action"]["created_remote"] == 1
        assert metrics["gateway"]["by_operation"]["create_remote"]["calls"] == 1


class TestErrorRoutes:

    def _fail_once(self, client, provider, auth, clock):
        provider.save_record(auth, ET, "SO-1", {"total": 100, "reject": True}, modified_at=clock())
        client.post("/sync/sales_document/SO-1", headers=HEADERS)

    def test_list_and_filter(self, client, provider, auth, clock):
        self._fail_once(client, provider, auth, clock)

        everything = client.get("/sync-errors", headers=HEADERS)
        rejected = client.get("/sync-errors", headers=HEADERS, params={"kind": "rejected"})
        transient = client.get("/sync-errors", headers=HEADERS, params={"kind": "transient"})

        assert everything.status_code == 200
        assert len(everything.json()) == 1
        assert rejected.json()[0]["local_id"] == "SO-1"
        assert transient.json() == []

    def test_resolve_entry(self, client, provider, auth, clock):
        self._fail_once(client, provider, auth, clock)
        entry_id = client.get("/sync-errors", headers=HEADERS).json()[0]["id"]

        first = client.post(f"/sync-errors/{entry_id}/resolve", headers=HEADERS, json={"notes": "Unblocked customer"})
        second = client.post(f"/sync-errors/{entry_id}/resolve", headers=HEADERS, json={"notes": "again"})
        missing = client.post("/sync-errors/9999/resolve", headers=HEADERS, json={})

        assert first.json() == {"id": entry_id, "resolved": True}
        assert second.status_code == 409
        assert missing.status_code == 404

    def test_statistics(self, client, provider, auth, clock):
        self._fail_once(client, provider, auth, clock)

        stats = client.get("/sync-errors/statistics", headers=HEADERS, params={"days": 30000})
        assert stats.status_code == 422

        stats = client.get("/sync-errors/statistics", headers=HEADERS)
        assert stats.status_code == 200
        assert set(stats.json()) == {"total", "by_kind", "by_day", "resolved", "resolution_rate"}
