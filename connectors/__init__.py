"""ERP Connectors - Pluggable remote system gateways.

This package contains the abstract gateway interface the sync engine
consumes and the implementations registered against it.

Key Design Principle:
- The sync orchestrator depends ONLY on the RemoteGateway interface
- Payloads cross the interface as opaque dicts with a version marker
- Failures cross it as GatewayError subclasses

To add a new ERP:
1. Create a new module (e.g., metakocka.py)
2. Implement RemoteGateway
3. Register using @register_connector decorator
"""

from connectors.erp_base import (
    # Core interface
    RemoteGateway,
    GatewayConfig,
    GatewayConnectionStatus,

    # Remote record types
    RemoteRecord,
    RemoteWriteResult,
    RemoteChangeSet,

    # Errors
    GatewayErrorKind,
    GatewayError,
    TransientGatewayError,
    RejectedError,
    AuthFailureError,
    RemoteNotFoundError,
    classify_http_status,
    error_for_status,

    # Factory functions
    create_connector,
    register_connector,
    list_available_connectors,
)

# Registers the "memory" connector
from connectors.memory import InMemoryGateway

__all__ = [
    "RemoteGateway",
    "GatewayConfig",
    "GatewayConnectionStatus",
    "RemoteRecord",
    "RemoteWriteResult",
    "RemoteChangeSet",
    "GatewayErrorKind",
    "GatewayError",
    "TransientGatewayError",
    "RejectedError",
    "AuthFailureError",
    "RemoteNotFoundError",
    "classify_http_status",
    "error_for_status",
    "create_connector",
    "register_connector",
    "list_available_connectors",
    "InMemoryGateway",
]
