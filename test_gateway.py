"""
Remote Gateway Tests

Error taxonomy, the connector registry and the in-memory sandbox gateway.
"""

import asyncio
from datetime import datetime

import pytest

from connectors import (
    AuthFailureError,
    GatewayConfig,
    GatewayError,
    GatewayErrorKind,
    RejectedError,
    RemoteNotFoundError,
    TransientGatewayError,
    classify_http_status,
    create_connector,
    error_for_status,
    list_available_connectors,
)
from connectors.memory import InMemoryGateway
from core.sync.models import content_version


class TestErrorTaxonomy:

    @pytest.mark.parametrize("status,kind", [
        (401, GatewayErrorKind.AUTH_FAILURE),
        (403, GatewayErrorKind.AUTH_FAILURE),
        (404, GatewayErrorKind.NOT_FOUND),
        (408, GatewayErrorKind.TRANSIENT),
        (429, GatewayErrorKind.TRANSIENT),
        (503, GatewayErrorKind.TRANSIENT),
        (400, GatewayErrorKind.REJECTED),
        (422, GatewayErrorKind.REJECTED),
    ])
    def test_classify_http_status(self, status, kind):
        assert classify_http_status(status) == kind

    def test_success_is_not_classified(self):
        assert classify_http_status(204) is None
        with pytest.raises(ValueError):
            error_for_status(200, "ok")

    def test_error_for_status_builds_subclass(self):
        error = error_for_status(422, "Invalid VAT number", response_body='{"field": "vat"}')

        assert isinstance(error, RejectedError)
        assert error.kind == GatewayErrorKind.REJECTED
        assert error.status_code == 422
        assert error.details == {"response_body": '{"field": "vat"}'}

    def test_transient_carries_retry_after(self):
        error = TransientGatewayError("Rate limited", 429, retry_after=30)

        assert error.retry_after == 30
        assert isinstance(error, GatewayError)
        assert isinstance(error_for_status(401, "nope"), AuthFailureError)


class TestConnectorRegistry:

    def test_memory_connector_is_registered(self):
        assert "memory" in list_available_connectors()

        gateway = create_connector(GatewayConfig(connector_type="Memory", environment="sandbox"))

        assert isinstance(gateway, InMemoryGateway)
        assert gateway.get_connector_name() == "Memory"
        assert gateway.get_environment() == "sandbox"

    def test_unknown_connector(self):
        with pytest.raises(ValueError, match="Unknown connector type"):
            create_connector(GatewayConfig(connector_type="sap"))


class TestInMemoryGateway:

    @pytest.fixture
    def gateway(self):
        return InMemoryGateway(clock=lambda: datetime(2024, 1, 15, 9, 0, 0))

    def test_create_and_fetch(self, gateway):
        created = asyncio.run(gateway.create_remote("contact", {"name": "Acme"}))
        fetched = asyncio.run(gateway.fetch_remote("contact", created.remote_id))

        assert created.remote_id == "R-000001"
        assert created.version == content_version({"name": "Acme"})
        assert fetched.payload == {"name": "Acme"}
        assert fetched.modified_at == datetime(2024, 1, 15, 9, 0, 0)

    def test_idempotency_key_returns_existing(self, gateway):
        first = asyncio.run(gateway.create_remote("contact", {"name": "Acme"}, idempotency_key="k1"))
        second = asyncio.run(gateway.create_remote("contact", {"name": "Acme"}, idempotency_key="k1"))

        assert first.remote_id == second.remote_id
        assert len(gateway.records("contact")) == 1

    def test_missing_record(self, gateway):
        with pytest.raises(RemoteNotFoundError):
            asyncio.run(gateway.fetch_remote("contact", "R-404"))
        with pytest.raises(RemoteNotFoundError):
            asyncio.run(gateway.update_remote("contact", "R-404", {}))

    def test_list_changed_since_pages(self):
        gateway = InMemoryGateway(GatewayConfig(connector_type="memory", custom_settings={"page_size": 2}))
        for i in range(3):
            gateway.seed("product", {"sku": i})

        first = asyncio.run(gateway.list_changed_since("product"))
        second = asyncio.run(gateway.list_changed_since("product", first.next_cursor))
        empty = asyncio.run(gateway.list_changed_since("product", second.next_cursor))

        assert [r.payload["sku"] for r in first.records] == [0, 1]
        assert [r.payload["sku"] for r in second.records] == [2]
        assert empty.records == []
        assert empty.next_cursor == second.next_cursor

    def test_edit_moves_record_to_end_of_feed(self, gateway):
        a = gateway.seed("product", {"sku": "A"})
        gateway.seed("product", {"sku": "B"})
        gateway.edit("product", a.remote_id, {"sku": "A2"})

        changes = asyncio.run(gateway.list_changed_since("product", "2"))

        assert [r.payload["sku"] for r in changes.records] == ["A2"]

    def test_invalid_cursor(self, gateway):
        with pytest.raises(GatewayError):
            asyncio.run(gateway.list_changed_since("product", "not-a-number"))

    def test_injected_failures_are_consumed(self, gateway):
        gateway.inject_failure("fetch_remote", TransientGatewayError("Service unavailable", 503), times=2)
        seeded = gateway.seed("contact", {"name": "Acme"})

        for _ in range(2):
            with pytest.raises(TransientGatewayError):
                asyncio.run(gateway.fetch_remote("contact", seeded.remote_id))
        assert asyncio.run(gateway.fetch_remote("contact", seeded.remote_id)).remote_id == seeded.remote_id
        assert gateway.calls["fetch_remote"] == 3

    def test_inject_unknown_operation(self, gateway):
        with pytest.raises(ValueError):
            gateway.inject_failure("delete_remote", TransientGatewayError("x"))

    def test_connect_sets_status(self, gateway):
        asyncio.run(gateway.connect())
        assert gateway.connection_status.value == "CONNECTED"
        asyncio.run(gateway.disconnect())
        assert gateway.connection_status.value == "DISCONNECTED"
