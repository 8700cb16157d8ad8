"""
Observability Module for the ERP Sync Engine

Provides:
- Structured logging with correlation IDs
- Metrics collection (sync outcomes, gateway calls, bulk runs)
"""

from core.observability.metrics import (
    SyncMetrics,
    get_metrics,
)

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

__all__ = [
    # Metrics
    "SyncMetrics",
    "get_metrics",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
]
