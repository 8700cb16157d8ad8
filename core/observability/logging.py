"""
Structured Logging with Correlation IDs

Provides logging utilities that automatically include:
- organization_id / principal_id: The caller the sync runs on behalf of
- entity_type / local_id / remote_id: The record pair being synchronized
- job_id: Links every log line of a single sync attempt
- workflow_id / activity_name: Links logs to Temporal execution

Usage:
    from core.observability.logging import get_logger, with_correlation

    logger = get_logger(__name__)

    with with_correlation(organization_id="org-1", local_id="SO-1"):
        logger.info("Pushing record")  # Automatically includes correlation IDs
"""

import json
import logging
import sys
from contextvars import ContextVar
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, Dict, Any
from contextlib import contextmanager


# =============================================================================
# Correlation Context
# =============================================================================

@dataclass
class CorrelationContext:
    """Context for correlating logs across a sync attempt."""
    organization_id: Optional[str] = None
    principal_id: Optional[str] = None
    entity_type: Optional[str] = None
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    job_id: Optional[str] = None
    direction: Optional[str] = None

    # Temporal context
    workflow_id: Optional[str] = None
    activity_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, excluding None values."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **kwargs) -> "CorrelationContext":
        """Create a new context with merged values."""
        data = self.to_dict()
        data.update({k: v for k, v in kwargs.items() if v is not None})
        return CorrelationContext(**data)


# Context variable for async/thread-safe correlation
_correlation_context: ContextVar[CorrelationContext] = ContextVar(
    "correlation_context",
    default=CorrelationContext()
)


def get_correlation_context() -> CorrelationContext:
    """Get the current correlation context."""
    return _correlation_context.get()


@contextmanager
def with_correlation(**kwargs):
    """
    Context manager to set correlation IDs for logging.

    Values are stringified; None values leave the outer value in place.
    """
    old_ctx = get_correlation_context()
    new_ctx = old_ctx.merge(**{k: (str(v) if v is not None else None) for k, v in kwargs.items()})
    token = _correlation_context.set(new_ctx)
    try:
        yield new_ctx
    finally:
        _correlation_context.reset(token)


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter that includes correlation context.

    Output format:
    {
        "timestamp": "2024-01-09T12:00:00.000Z",
        "level": "INFO",
        "logger": "core.sync.orchestrator",
        "message": "Remote record created",
        "organization_id": "org-1",
        "local_id": "SO-1",
        "job_id": "5f0c..."
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        log_data.update(get_correlation_context().to_dict())

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter that includes key correlation IDs.

    Output format:
    2024-01-09 12:00:00 [INFO ] core.sync.orchestrator [org-1/sales_document:SO-1]: Remote record created
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_correlation_context()

        correlation_parts = []
        if ctx.organization_id:
            correlation_parts.append(ctx.organization_id)
        if ctx.local_id:
            correlation_parts.append(f"{ctx.entity_type or '?'}:{ctx.local_id}")
        elif ctx.remote_id:
            correlation_parts.append(f"{ctx.entity_type or '?'}@{ctx.remote_id}")
        if ctx.job_id:
            correlation_parts.append(ctx.job_id[:8])

        correlation = "/".join(correlation_parts) if correlation_parts else "-"
        timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")

        msg = f"{timestamp} [{record.levelname:5}] {record.name} [{correlation}]: {record.getMessage()}"

        extra = getattr(record, "extra_fields", None)
        if extra:
            msg += " " + " ".join(f"{k}={v}" for k, v in extra.items())

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


# =============================================================================
# Logger with Correlation Support
# =============================================================================

class CorrelatedLogger:
    """
    Logger wrapper that automatically includes correlation context.

    Also supports adding extra fields to individual log calls.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra_fields = kwargs.pop("extra_fields", {})
        exc_info = kwargs.pop("exc_info", None)
        if exc_info is True:
            exc_info = sys.exc_info()

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "(unknown file)",
            0,
            msg,
            args,
            exc_info or None,
        )
        record.extra_fields = extra_fields

        self._logger.handle(record)

    def debug(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.DEBUG):
            self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.INFO):
            self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.WARNING):
            self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.ERROR):
            self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        kwargs["exc_info"] = True
        self.error(msg, *args, **kwargs)

    def setLevel(self, level):
        self._logger.setLevel(level)

    def isEnabledFor(self, level):
        return self._logger.isEnabledFor(level)


# =============================================================================
# Logger Factory
# =============================================================================

_loggers: Dict[str, CorrelatedLogger] = {}
_configured = False


def configure_logging(
    level: int = logging.INFO,
    json_format: bool = False,
    include_temporal: bool = True,
):
    """
    Configure logging for the application.

    Args:
        level: Logging level
        json_format: If True, use JSON format; otherwise human-readable
        include_temporal: If True, also configure Temporal SDK loggers
    """
    global _configured

    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    for logger_name in ["activities", "workflows", "api", "core", "connectors"]:
        logging.getLogger(logger_name).setLevel(level)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if include_temporal:
        logging.getLogger("temporalio").setLevel(logging.INFO)

    _configured = True


def get_logger(name: str) -> CorrelatedLogger:
    """
    Get a correlated logger for the given name.

    Args:
        name: Logger name (typically __name__)
    """
    if name not in _loggers:
        if not _configured:
            configure_logging()

        _loggers[name] = CorrelatedLogger(logging.getLogger(name))

    return _loggers[name]


# =============================================================================
# Convenience Functions for Activities/Workflows
# =============================================================================

def log_activity_start(activity_name: str, **kwargs):
    """Log activity start with correlation."""
    logger = get_logger(f"activities.{activity_name}")
    logger.info(f"Activity started: {activity_name}", extra_fields=kwargs)


def log_activity_complete(activity_name: str, duration_ms: float = None, **kwargs):
    """Log activity completion with correlation."""
    logger = get_logger(f"activities.{activity_name}")
    extra = {"duration_ms": duration_ms} if duration_ms else {}
    extra.update(kwargs)
    logger.info(f"Activity completed: {activity_name}", extra_fields=extra)


def log_activity_error(activity_name: str, error: str, **kwargs):
    """Log activity error with correlation."""
    logger = get_logger(f"activities.{activity_name}")
    logger.error(f"Activity failed: {activity_name} - {error}", extra_fields=kwargs)
