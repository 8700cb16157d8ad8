"""Wiring of a ready-to-use orchestrator from settings."""

from typing import Optional

import connectors  # noqa: F401  registers the bundled connectors
from connectors.erp_base import GatewayConfig, RemoteGateway, create_connector
from core.config import SyncSettings, load_settings
from core.observability.logging import get_logger
from core.sync.content import EntityContentProvider, SqliteContentProvider
from core.sync.error_log import SyncErrorLog
from core.sync.mapping_store import MappingStore
from core.sync.orchestrator import SyncOrchestrator

logger = get_logger(__name__)


def build_orchestrator(
    settings: Optional[SyncSettings] = None,
    gateway: Optional[RemoteGateway] = None,
    provider: Optional[EntityContentProvider] = None,
) -> SyncOrchestrator:
    """Create the stores (initializing their tables) and an orchestrator over them."""
    settings = settings or load_settings()

    store = MappingStore(settings.db_path)
    store.init_db()
    error_log = SyncErrorLog(settings.db_path)
    error_log.init_db()

    if provider is None:
        provider = SqliteContentProvider(settings.db_path)
        provider.init_db()

    if gateway is None:
        gateway = create_connector(GatewayConfig(connector_type=settings.connector_type))

    logger.info(
        f"Sync orchestrator ready (connector={gateway.get_connector_name()}, db={settings.db_path})"
    )
    return SyncOrchestrator(
        store=store,
        error_log=error_log,
        gateway=gateway,
        provider=provider,
        settings=settings,
    )
