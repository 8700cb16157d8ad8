"""Runtime settings and Temporal client factory.

Settings come from environment variables; a `.env` file at the repository
root is loaded first when present.
"""

import os
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]

env_path = ROOT_DIR / ".env"
if env_path.exists():
    load_dotenv(env_path)

from temporalio.client import Client


DEFAULT_DB_PATH = ROOT_DIR / "erp_sync.db"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class SyncSettings:
    """Sync engine configuration."""
    db_path: Path = DEFAULT_DB_PATH

    # Retry Scheduler
    retry_base_seconds: float = 30.0
    retry_cap_exponent: int = 6
    retry_jitter_seconds: float = 5.0
    max_attempts: int = 5

    # Gateway access
    gateway_timeout_seconds: float = 30.0
    gateway_concurrency: int = 4
    connector_type: str = "memory"

    # Orchestrator
    bulk_workers: int = 4
    claim_lease_seconds: float = 120.0
    auto_resolve_conflicts: bool = True

    # Logging
    log_json: bool = False
    log_level: str = "INFO"

    # Temporal
    temporal_endpoint: Optional[str] = None
    temporal_namespace: str = "default"
    temporal_api_key: Optional[str] = None
    temporal_cert_path: Optional[str] = None
    task_queue: str = "erp-sync"
    bulk_interval_minutes: int = 15


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def load_settings() -> SyncSettings:
    """Build SyncSettings from the environment.

    Raises:
        ValueError: If a numeric or boolean variable cannot be parsed
    """
    return SyncSettings(
        db_path=Path(os.getenv("SYNC_DB_PATH") or DEFAULT_DB_PATH),
        retry_base_seconds=_env_float("SYNC_RETRY_BASE_SECONDS", 30.0),
        retry_cap_exponent=_env_int("SYNC_RETRY_CAP_EXPONENT", 6),
        retry_jitter_seconds=_env_float("SYNC_RETRY_JITTER_SECONDS", 5.0),
        max_attempts=_env_int("SYNC_MAX_ATTEMPTS", 5),
        gateway_timeout_seconds=_env_float("SYNC_GATEWAY_TIMEOUT_SECONDS", 30.0),
        gateway_concurrency=_env_int("SYNC_GATEWAY_CONCURRENCY", 4),
        connector_type=os.getenv("SYNC_CONNECTOR", "memory"),
        bulk_workers=_env_int("SYNC_BULK_WORKERS", 4),
        claim_lease_seconds=_env_float("SYNC_CLAIM_LEASE_SECONDS", 120.0),
        auto_resolve_conflicts=_env_bool("SYNC_AUTO_RESOLVE_CONFLICTS", True),
        log_json=_env_bool("SYNC_LOG_JSON", False),
        log_level=os.getenv("SYNC_LOG_LEVEL", "INFO").upper(),
        temporal_endpoint=os.getenv("TEMPORAL_ENDPOINT"),
        temporal_namespace=os.getenv("TEMPORAL_NAMESPACE", "default"),
        temporal_api_key=os.getenv("TEMPORAL_API_KEY"),
        temporal_cert_path=os.getenv("TEMPORAL_CERT_PATH"),
        task_queue=os.getenv("SYNC_TASK_QUEUE", "erp-sync"),
        bulk_interval_minutes=_env_int("SYNC_BULK_INTERVAL_MINUTES", 15),
    )


async def get_temporal_client(settings: Optional[SyncSettings] = None) -> Client:
    """Create and return a Temporal Cloud client.

    Raises:
        ValueError: If TEMPORAL_ENDPOINT or TEMPORAL_API_KEY is missing
    """
    settings = settings or load_settings()

    if not settings.temporal_endpoint:
        raise ValueError(
            "TEMPORAL_ENDPOINT environment variable not set. "
            "Set to your Temporal Cloud endpoint (e.g., 'temporal.example.com:7233')"
        )

    if not settings.temporal_api_key:
        raise ValueError(
            "TEMPORAL_API_KEY environment variable not set. "
            "Set to your Temporal Cloud API key"
        )

    tls_config = ssl.create_default_context()
    if settings.temporal_cert_path:
        tls_config.load_cert_chain(settings.temporal_cert_path)

    return await Client.connect(
        target_host=settings.temporal_endpoint,
        namespace=settings.temporal_namespace,
        tls=tls_config,
        api_key=settings.temporal_api_key,
    )
