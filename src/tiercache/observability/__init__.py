"""Observability module for tiercache: structured logging with cache context."""

from tiercache.observability.logging import (
    ConsoleFormatter,
    JsonFormatter,
    LogContext,
    cache_key_var,
    cache_prefix_var,
    configure_logging,
)

__all__ = [
    "configure_logging",
    "JsonFormatter",
    "ConsoleFormatter",
    "LogContext",
    "cache_prefix_var",
    "cache_key_var",
]
