"""Public observability primitives: structured logging and metrics."""

from repo_atlas.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    flush_logging,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)
from repo_atlas.observability.metrics import MetricsRegistry

__all__ = [
    "LoggingConfig",
    "MetricsRegistry",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
