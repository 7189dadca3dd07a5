"""Core module exports."""

from semindex.core.errors import (
    ConfigError,
    ErrorCode,
    InternalError,
    SemIndexError,
)
from semindex.core.logging import (
    bind_correlation,
    configure_logging,
    correlation,
    current_correlation,
    get_logger,
)
from semindex.core.progress import spinner, status, task

__all__ = [
    # Errors
    "SemIndexError",
    "ConfigError",
    "ErrorCode",
    "InternalError",
    # Logging
    "bind_correlation",
    "configure_logging",
    "correlation",
    "current_correlation",
    "get_logger",
    # Progress
    "spinner",
    "status",
    "task",
]
