"""Structured logging with correlation fields.

Every record emitted inside a query or rebuild carries the fields bound
with ``correlation()``:

- ``request_id``: the query's id, or the rebuild session id
- ``model_id``: the active embedding model
- ``generation_id``: the generation being read or built

They live in structlog's contextvars, so concurrent queries on different
threads keep separate values. Console output is suppressed while a Rich
live display is active; file outputs are not.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import uuid4

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars, unbind_contextvars

if TYPE_CHECKING:
    from semindex.config.models import LoggingConfig

CORRELATION_KEYS = ("request_id", "model_id", "generation_id")

_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# onnxruntime and the model downloader are chatty at INFO
_NOISY_LOGGERS = ("fastembed", "huggingface_hub")


def new_request_id() -> str:
    return uuid4().hex[:12]


def current_correlation() -> dict[str, str]:
    """Correlation fields bound in the current context."""
    return {k: v for k, v in get_contextvars().items() if k in CORRELATION_KEYS}


def bind_correlation(**fields: str | None) -> None:
    """Add correlation fields to the current context; None values are skipped."""
    unknown = set(fields) - set(CORRELATION_KEYS)
    if unknown:
        raise ValueError(f"not a correlation field: {sorted(unknown)}")
    bind_contextvars(**{k: v for k, v in fields.items() if v is not None})


@contextmanager
def correlation(**fields: str | None) -> Iterator[dict[str, str]]:
    """Bind correlation fields for the duration of the block.

    The block starts from exactly ``fields``; fields bound inside it with
    bind_correlation() are dropped on exit, and the enclosing context's
    fields are restored.
    """
    outer = current_correlation()
    unbind_contextvars(*CORRELATION_KEYS)
    bind_correlation(**fields)
    try:
        yield current_correlation()
    finally:
        unbind_contextvars(*CORRELATION_KEYS)
        bind_contextvars(**outer)


class ConsoleSuppressingFilter(logging.Filter):
    """Blocks console log records while a Rich live display is active."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: ARG002
        # Import here to avoid circular dependency
        from semindex.core.progress import is_console_suppressed

        return not is_console_suppressed()


def configure_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    console_level: str | None = None,
) -> None:
    """Configure structlog over stdlib handlers.

    Args:
        config: Outputs and root level; a single stderr console output at
            ``level`` when omitted.
        level: Root level used when config is None.
        console_level: Overrides the level of stderr/stdout outputs only, so
            the CLI can stay quiet on the terminal while a file output keeps
            the configured detail.
    """
    from semindex.config.models import LoggingConfig

    if config is None:
        config = LoggingConfig(level=level)  # type: ignore[arg-type]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", key="timestamp"),
    ]

    levels: list[int] = []
    handlers: list[logging.Handler] = []
    for output in config.outputs:
        is_console = output.destination in ("stderr", "stdout")
        name = (output.level or config.level).upper()
        if is_console and console_level is not None:
            name = console_level.upper()
        output_level = _LEVEL_MAP.get(name, logging.INFO)
        levels.append(output_level)

        if output.format == "json":
            renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        else:
            renderer = structlog.dev.ConsoleRenderer(
                colors=is_console and sys.stderr.isatty(), pad_event_to=0, pad_level=False
            )
        handler = _create_handler(output.destination, is_console=is_console)
        handler.setLevel(output_level)
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=renderer, foreign_pre_chain=shared_processors
            )
        )
        handlers.append(handler)

    # Records below every output's level are dropped before formatting
    effective = min(levels, default=_LEVEL_MAP.get(config.level.upper(), logging.INFO))
    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(effective),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    root_logger = logging.getLogger()
    for old in root_logger.handlers:
        old.close()
    root_logger.handlers.clear()
    root_logger.setLevel(effective)
    for handler in handlers:
        root_logger.addHandler(handler)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _create_handler(destination: str, *, is_console: bool) -> logging.Handler:
    handler: logging.Handler
    if destination == "stderr":
        handler = logging.StreamHandler(sys.stderr)
    elif destination == "stdout":
        handler = logging.StreamHandler(sys.stdout)
    else:
        path = Path(destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    if is_console:
        handler.addFilter(ConsoleSuppressingFilter())
    return handler


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger=name)
    return logger  # type: ignore[no-any-return]
