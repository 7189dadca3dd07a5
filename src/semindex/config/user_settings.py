"""Persisted user settings (settings.yaml under the index root).

Only the confidence threshold lives here. Unlike config.yaml this file is
written by the tool itself (``semindex settings --set``), atomically, and
re-read by long-lived processes whenever its mtime changes.
"""

from __future__ import annotations

import math
import os
import threading
from datetime import UTC, datetime
from numbers import Real
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

from semindex.config.constants import DEFAULT_CONFIDENCE_THRESHOLD
from semindex.core.errors import InvalidThresholdError

logger = structlog.get_logger()

SETTINGS_HEADER = """\
# SemIndex user settings
# Managed by 'semindex settings --set <0-100>' / '--reset'.
# confidence_threshold: minimum confidence (percent) a hit needs to be returned.

"""


class UserSettings(BaseModel):
    """User-facing persisted settings."""

    confidence_threshold: float = Field(
        default=DEFAULT_CONFIDENCE_THRESHOLD,
        ge=0.0,
        le=100.0,
        description="Minimum confidence (0-100) for a hit to be returned.",
    )
    updated_at: str | None = Field(
        default=None,
        description="ISO-8601 UTC timestamp of the last write.",
    )


def validate_threshold(value: Any) -> float:
    """Return ``value`` as a float percent or raise InvalidThresholdError.

    Values are taken literally as percents: 0.6 means 0.6%, not 60%.
    """
    if isinstance(value, bool) or not isinstance(value, Real):
        raise InvalidThresholdError.out_of_range(value)
    number = float(value)
    if math.isnan(number) or not (0.0 <= number <= 100.0):
        raise InvalidThresholdError.out_of_range(value)
    return number


def _atomic_write_text(path: Path, content: str) -> None:
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class SettingsStore:
    """Reads and writes settings.yaml with an mtime-keyed cache."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._cache_key: tuple[int, int] | None = None
        self._cached: UserSettings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> UserSettings | None:
        """Return the persisted settings, or None when nothing is persisted.

        A file that fails to parse is logged and treated as absent, so the
        caller falls back to the next threshold source.
        """
        try:
            st = self._path.stat()
        except FileNotFoundError:
            with self._lock:
                self._cache_key = None
                self._cached = None
            return None

        key = (st.st_mtime_ns, st.st_size)
        with self._lock:
            if self._cache_key == key:
                return self._cached

        try:
            with self._path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            settings = UserSettings(**data)
        except (OSError, yaml.YAMLError, TypeError, ValidationError) as e:
            logger.warning("settings_unreadable", path=str(self._path), error=str(e))
            settings = None

        with self._lock:
            self._cache_key = key
            self._cached = settings
        return settings

    def write(self, settings: UserSettings) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = settings.model_dump()
        content = SETTINGS_HEADER + yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
        _atomic_write_text(self._path, content)
        with self._lock:
            self._cache_key = None
            self._cached = None

    def set_threshold(self, value: Any) -> UserSettings:
        """Validate and persist a new threshold. The prior value survives a rejection."""
        threshold = validate_threshold(value)
        settings = UserSettings(
            confidence_threshold=threshold,
            updated_at=datetime.now(UTC).isoformat(),
        )
        self.write(settings)
        logger.info("settings_updated", confidence_threshold=threshold)
        return settings

    def reset(self) -> UserSettings:
        """Restore the default threshold."""
        settings = UserSettings(updated_at=datetime.now(UTC).isoformat())
        self.write(settings)
        logger.info("settings_reset", confidence_threshold=settings.confidence_threshold)
        return settings
