"""Config module exports."""

from semindex.config.loader import load_config
from semindex.config.models import (
    ChunkingConfig,
    EmbeddingConfig,
    IndexParamsConfig,
    LockConfig,
    LoggingConfig,
    QueryConfig,
    SemIndexConfig,
    StorageConfig,
)
from semindex.config.user_settings import SettingsStore, UserSettings

__all__ = [
    "load_config",
    "SemIndexConfig",
    "LoggingConfig",
    "ChunkingConfig",
    "EmbeddingConfig",
    "IndexParamsConfig",
    "StorageConfig",
    "LockConfig",
    "QueryConfig",
    "SettingsStore",
    "UserSettings",
]
