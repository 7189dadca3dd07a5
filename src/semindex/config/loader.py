"""Configuration loading with pydantic-settings.

Supports loading configuration from multiple sources with precedence:
1. Direct kwargs (highest priority)
2. Environment variables (SEMINDEX__SECTION__KEY)
3. Index-root config (<index root>/config.yaml)
4. Global config (~/.config/semindex/config.yaml)
5. Built-in defaults (lowest priority)
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from semindex.config.constants import CONFIG_FILE
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
from semindex.core.errors import ConfigError

GLOBAL_CONFIG_PATH = Path("~/.config/semindex/config.yaml").expanduser()


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError.parse_error(str(path), str(e)) from e
    if not isinstance(data, dict):
        raise ConfigError.parse_error(str(path), "top level must be a mapping")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class _YamlSource(PydanticBaseSettingsSource):
    """Settings source that reads from pre-loaded YAML config."""

    def __init__(self, settings_cls: type[BaseSettings], yaml_config: dict[str, Any]) -> None:
        super().__init__(settings_cls)
        self._yaml_config = yaml_config

    def get_field_value(
        self,
        field: Any,  # noqa: ARG002
        field_name: str,
    ) -> tuple[Any, str, bool]:
        val = self._yaml_config.get(field_name)
        return val, field_name, val is not None

    def __call__(self) -> dict[str, Any]:
        return self._yaml_config


def _make_settings_class(yaml_config: dict[str, Any]) -> type[BaseSettings]:
    """Create a Settings class with instance-based YAML source (thread-safe)."""

    class SemIndexSettings(BaseSettings):
        """Root config. Env vars: SEMINDEX__LOGGING__LEVEL, SEMINDEX__EMBEDDING__BACKEND, etc."""

        model_config = SettingsConfigDict(
            env_prefix="SEMINDEX__",
            env_nested_delimiter="__",
            case_sensitive=False,
        )

        logging: LoggingConfig = LoggingConfig()
        chunking: ChunkingConfig = ChunkingConfig()
        embedding: EmbeddingConfig = EmbeddingConfig()
        index: IndexParamsConfig = IndexParamsConfig()
        storage: StorageConfig = StorageConfig()
        lock: LockConfig = LockConfig()
        query: QueryConfig = QueryConfig()

        @classmethod
        def settings_customise_sources(
            cls,
            settings_cls: type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
            file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        ) -> tuple[PydanticBaseSettingsSource, ...]:
            # Precedence (first wins): init kwargs > env vars > yaml files
            return (init_settings, env_settings, _YamlSource(settings_cls, yaml_config))

    return SemIndexSettings


def load_config(index_root: Path | None = None, **kwargs: Any) -> SemIndexConfig:
    """Load config: defaults < global yaml < index-root yaml < env vars < kwargs.

    Args:
        index_root: Directory holding the index. Its config.yaml, if any, is
                    merged over the global config. Defaults to no root file.
        **kwargs: Override values per section (highest precedence), e.g.
                  ``embedding={"backend": "hashing"}``.

    Returns:
        Fully resolved configuration object.

    Raises:
        ConfigError: On invalid YAML syntax or validation errors.
    """
    yaml_config = _load_yaml(GLOBAL_CONFIG_PATH)
    if index_root is not None:
        yaml_config = _deep_merge(yaml_config, _load_yaml(index_root / CONFIG_FILE))

    settings_cls = _make_settings_class(yaml_config)
    try:
        settings = settings_cls(**kwargs)
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(loc) for loc in err["loc"])
        raise ConfigError.invalid_value(field, err.get("input"), err["msg"]) from e
    return SemIndexConfig.model_validate(settings.model_dump())
