"""Abstract Remote System Gateway Interface.

This module defines the interface the sync engine consumes to talk to the
external system of record (the ERP). It is intentionally ERP-agnostic - no
Metakocka, Business Central or SAP specifics here.

Gateways implement this interface to:
1. Connect and authenticate with their ERP
2. Create and update remote records from opaque payloads
3. Fetch a single remote record
4. List records changed since a cursor

Key Design Principles:
- Payloads are opaque JSON-shaped dicts; schema validation is the gateway's job
- Every failure is raised as one of the GatewayError subclasses below
- The sync engine depends ONLY on this interface
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================

class GatewayErrorKind(str, Enum):
    """Failure classes a gateway call can end in."""
    TRANSIENT = "transient"          # network, timeout, 5xx, rate limit
    REJECTED = "rejected"            # validation failure, 4xx other than auth
    AUTH_FAILURE = "auth_failure"    # 401/403, credentials need remediation
    NOT_FOUND = "not_found"          # remote record does not exist


class GatewayConnectionStatus(str, Enum):
    """Connection status to the ERP system."""
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    FAILED = "FAILED"
    RATE_LIMITED = "RATE_LIMITED"


# =============================================================================
# Errors
# =============================================================================

class GatewayError(Exception):
    """Base exception for remote gateway failures."""
    kind: GatewayErrorKind = GatewayErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class TransientGatewayError(GatewayError):
    """Retryable failure (network, timeout, 5xx, rate limit)."""
    kind = GatewayErrorKind.TRANSIENT

    def __init__(self, message: str, status_code: int = 0,
                 details: Optional[Dict[str, Any]] = None,
                 retry_after: Optional[int] = None):
        super().__init__(message, status_code, details)
        self.retry_after = retry_after


class RejectedError(GatewayError):
    """The ERP refused the payload (validation error)."""
    kind = GatewayErrorKind.REJECTED


class AuthFailureError(GatewayError):
    """Authentication or authorization failed (401/403)."""
    kind = GatewayErrorKind.AUTH_FAILURE


class RemoteNotFoundError(GatewayError):
    """Remote record not found (404)."""
    kind = GatewayErrorKind.NOT_FOUND


_RETRYABLE_STATUS = (408, 425, 429)


def classify_http_status(status_code: int) -> Optional[GatewayErrorKind]:
    """Map an HTTP status code onto the gateway error taxonomy.

    Returns None for success codes (< 400).
    """
    if status_code < 400:
        return None
    if status_code in (401, 403):
        return GatewayErrorKind.AUTH_FAILURE
    if status_code == 404:
        return GatewayErrorKind.NOT_FOUND
    if status_code in _RETRYABLE_STATUS or status_code >= 500:
        return GatewayErrorKind.TRANSIENT
    return GatewayErrorKind.REJECTED


_ERROR_CLASSES = {
    GatewayErrorKind.TRANSIENT: TransientGatewayError,
    GatewayErrorKind.REJECTED: RejectedError,
    GatewayErrorKind.AUTH_FAILURE: AuthFailureError,
    GatewayErrorKind.NOT_FOUND: RemoteNotFoundError,
}


def error_for_status(status_code: int, message: str, response_body: str = "") -> GatewayError:
    """Build the GatewayError subclass matching an HTTP error status.

    Raises:
        ValueError: If status_code is not an error status
    """
    kind = classify_http_status(status_code)
    if kind is None:
        raise ValueError(f"Status {status_code} is not an error status")
    details = {"response_body": response_body} if response_body else {}
    return _ERROR_CLASSES[kind](message, status_code, details)


# =============================================================================
# Normalized Remote Records (ERP-Agnostic)
# =============================================================================

class RemoteRecord(BaseModel):
    """A record as held by the remote system.

    version is the remote's monotonic marker (checksum or last-modified
    stamp); modified_at feeds conflict resolution and may be unknown.
    """
    model_config = ConfigDict(frozen=True)

    remote_id: str = Field(..., description="ERP internal ID for API calls")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Opaque record content")
    version: str = Field(..., description="Remote version marker")
    modified_at: Optional[datetime] = Field(default=None, description="Last modification in the ERP")


class RemoteWriteResult(BaseModel):
    """Returned by create_remote / update_remote.

    version may be None when the ERP does not report one; the engine then
    derives it from the pushed payload.
    """
    remote_id: str
    version: Optional[str] = None


class RemoteChangeSet(BaseModel):
    """Records changed since a cursor, plus the cursor to resume from."""
    records: List[RemoteRecord] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(default=None, description="Opaque resume cursor")


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class GatewayConfig:
    """Configuration for a remote gateway.

    Generic configuration that can be extended by specific connectors.
    """
    connector_type: str                     # "memory", "metakocka", etc.
    environment: str = "production"         # "production", "sandbox"
    base_url: Optional[str] = None          # ERP API endpoint
    company_id: Optional[str] = None        # Company within the ERP

    # Authentication (connector-specific, supplied by the credential layer)
    auth_config: Dict[str, Any] = field(default_factory=dict)

    # ERP-specific settings
    custom_settings: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Abstract Gateway Interface
# =============================================================================

class RemoteGateway(ABC):
    """Abstract base class for remote system gateways.

    DESIGN PRINCIPLE:
    - The sync orchestrator depends ONLY on this interface
    - Every method may raise TransientGatewayError, RejectedError or
      AuthFailureError; fetch_remote additionally raises RemoteNotFoundError
    - Per-call timeouts are applied by the caller

    Implementations:
    - connectors/memory.py (sandbox)
    """

    def __init__(self, config: GatewayConfig):
        """Initialize gateway with configuration."""
        self.config = config
        self._connection_status = GatewayConnectionStatus.DISCONNECTED

    async def connect(self) -> bool:
        """Establish connection to the ERP system."""
        self._connection_status = GatewayConnectionStatus.CONNECTED
        return True

    async def disconnect(self) -> None:
        """Disconnect from the ERP system."""
        self._connection_status = GatewayConnectionStatus.DISCONNECTED

    @property
    def connection_status(self) -> GatewayConnectionStatus:
        """Get current connection status."""
        return self._connection_status

    # =========================================================================
    # Record Operations
    # =========================================================================

    @abstractmethod
    async def create_remote(
        self,
        entity_type: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> RemoteWriteResult:
        """Create a record in the ERP.

        Args:
            entity_type: Kind of record (e.g. "sales_document")
            payload: Opaque record content
            idempotency_key: Unique key to prevent duplicate creation

        Returns:
            RemoteWriteResult with the new remote id
        """
        pass

    @abstractmethod
    async def update_remote(
        self,
        entity_type: str,
        remote_id: str,
        payload: Dict[str, Any],
    ) -> RemoteWriteResult:
        """Overwrite an existing ERP record with payload."""
        pass

    @abstractmethod
    async def fetch_remote(self, entity_type: str, remote_id: str) -> RemoteRecord:
        """Fetch a single record.

        Raises:
            RemoteNotFoundError: If the record does not exist
        """
        pass

    @abstractmethod
    async def list_changed_since(
        self,
        entity_type: str,
        cursor: Optional[str] = None,
    ) -> RemoteChangeSet:
        """List records changed since cursor (all records when cursor is None)."""
        pass

    # -------------------------------------------------------------------------
    # Utilities
    # -------------------------------------------------------------------------

    def get_connector_name(self) -> str:
        """Get the name of this connector."""
        return self.config.connector_type

    def get_environment(self) -> str:
        """Get the environment (production/sandbox)."""
        return self.config.environment


# =============================================================================
# Connector Factory
# =============================================================================

_connector_registry: Dict[str, type] = {}


def register_connector(connector_type: str):
    """Decorator to register a gateway implementation."""
    def decorator(cls):
        _connector_registry[connector_type] = cls
        return cls
    return decorator


def create_connector(config: GatewayConfig) -> RemoteGateway:
    """Create a gateway instance from configuration.

    Raises:
        ValueError: If connector_type is not registered
    """
    connector_type = config.connector_type.lower()

    if connector_type not in _connector_registry:
        available = list(_connector_registry.keys())
        raise ValueError(
            f"Unknown connector type: {connector_type}. "
            f"Available: {available}"
        )

    connector_class = _connector_registry[connector_type]
    return connector_class(config)


def list_available_connectors() -> List[str]:
    """List all registered connector types."""
    return list(_connector_registry.keys())
