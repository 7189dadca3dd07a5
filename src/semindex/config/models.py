"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (SEMINDEX__SECTION__KEY)
3. Index-root YAML (<index root>/config.yaml)
4. Global YAML (~/.config/semindex/config.yaml)
5. Built-in defaults (this file)

Environment Variable Format:
    SEMINDEX__<SECTION>__<KEY>=<VALUE>

Examples:
    SEMINDEX__LOGGING__LEVEL=DEBUG
    SEMINDEX__EMBEDDING__BACKEND=hashing
    SEMINDEX__EMBEDDING__BATCH_SIZE=48
    SEMINDEX__LOCK__TIMEOUT_SEC=0

The confidence threshold is not configured here: it lives in the user
settings record (settings.yaml), see user_settings.py.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from semindex.config.constants import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    DEFAULT_FASTEMBED_MODEL,
)

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LogOutputConfig(BaseModel):
    """Single logging output configuration.

    Env vars: Not directly configurable via env (use YAML for multi-output).
    """

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        SEMINDEX__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG logs every embedding batch.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class ChunkingConfig(BaseModel):
    """Chunking policy. Changing it changes chunk ids on the next rebuild.

    Env vars:
        SEMINDEX__CHUNKING__MAX_CHARS: Soft maximum chunk size in characters
        SEMINDEX__CHUNKING__SNIPPET_CHARS: Display snippet length
    """

    max_chars: int = Field(
        default=1500,
        description="Soft maximum chunk size (characters). Also the cap on embedded text "
        "for an oversized atomic block.",
    )
    snippet_chars: int = Field(
        default=240,
        description="Characters of each chunk kept as a display snippet.",
    )

    @field_validator("max_chars")
    @classmethod
    def validate_max_chars(cls, v: int) -> int:
        if v < 16:
            raise ValueError(f"max_chars must be >= 16, got {v}")
        return v

    @field_validator("snippet_chars")
    @classmethod
    def validate_snippet_chars(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"snippet_chars must be >= 0, got {v}")
        return v


class EmbeddingConfig(BaseModel):
    """Embedding backend configuration.

    Env vars:
        SEMINDEX__EMBEDDING__BACKEND: fastembed or hashing
        SEMINDEX__EMBEDDING__MODEL: fastembed model name
        SEMINDEX__EMBEDDING__BATCH_SIZE: Texts per backend call
        SEMINDEX__EMBEDDING__WORKERS: Concurrent batches
    """

    backend: Literal["fastembed", "hashing"] = Field(
        default="fastembed",
        description="Embedding backend. 'hashing' needs no model download and is "
        "deterministic, but only captures surface (character n-gram) similarity.",
    )
    model: str = Field(
        default=DEFAULT_FASTEMBED_MODEL,
        description="fastembed model name. Switching models forces a full rebuild.",
    )
    hashing_dim: int = Field(
        default=384,
        description="Vector dimension of the hashing backend.",
    )
    batch_size: int = Field(
        default=24,
        description="Texts per backend call.",
    )
    workers: int = Field(
        default=2,
        description="Batches embedded concurrently. "
        "RISK: ONNX sessions already use several threads; >2 rarely helps.",
    )
    max_retries: int = Field(
        default=3,
        description="Retries for a failing batch before falling back to per-item embedding.",
    )
    retry_base_delay_sec: float = Field(
        default=0.2,
        description="Base delay between retries (exponential backoff).",
    )
    max_consecutive_failures: int = Field(
        default=8,
        description="Consecutive failed chunks after which the backend is treated as down "
        "and the rebuild aborts.",
    )

    @field_validator("batch_size", "workers", "max_consecutive_failures", "hashing_dim")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"max_retries must be >= 0, got {v}")
        return v


class IndexParamsConfig(BaseModel):
    """HNSW graph parameters.

    Env vars:
        SEMINDEX__INDEX__M: Graph degree
        SEMINDEX__INDEX__EF_SEARCH: Candidate list size at query time
    """

    m: int = Field(
        default=16,
        description="Neighbours per node (layer 0 keeps 2*m). "
        "TRADEOFF: Higher = better recall, larger index, slower builds.",
    )
    ef_construction: int = Field(
        default=100,
        description="Candidate list size while inserting.",
    )
    ef_search: int = Field(
        default=64,
        description="Minimum candidate list size while searching (max(ef_search, k) is used).",
    )
    seed: int = Field(
        default=42,
        description="Seed for layer assignment; equal input and seed give an identical graph.",
    )
    exact_threshold: int = Field(
        default=256,
        description="Below this many vectors search is exhaustive.",
    )

    @field_validator("m")
    @classmethod
    def validate_m(cls, v: int) -> int:
        if v < 2:
            raise ValueError(f"m must be >= 2, got {v}")
        return v

    @field_validator("ef_construction", "ef_search")
    @classmethod
    def validate_ef(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v


class StorageConfig(BaseModel):
    """Generation storage configuration.

    Env vars:
        SEMINDEX__STORAGE__RETAIN_GENERATIONS: Committed generations kept on disk
    """

    retain_generations: int = Field(
        default=2,
        description="Committed generations kept (current included). Older ones are "
        "reclaimed after each successful commit.",
    )
    busy_timeout_ms: int = Field(
        default=30000,
        description="SQLite busy timeout for chunk tables (ms).",
    )
    max_retries: int = Field(
        default=3,
        description="Max retry attempts for locked database errors.",
    )
    retry_base_delay_sec: float = Field(
        default=0.1,
        description="Base delay between retries (exponential backoff).",
    )

    @field_validator("retain_generations")
    @classmethod
    def validate_retain(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"retain_generations must be >= 1, got {v}")
        return v


class LockConfig(BaseModel):
    """Write lock configuration.

    Env vars:
        SEMINDEX__LOCK__TIMEOUT_SEC: Wait for the lock before IndexBusy (0 = fail fast)
        SEMINDEX__LOCK__HEARTBEAT_INTERVAL_SEC: Holder heartbeat period
        SEMINDEX__LOCK__STALE_GRACE_SEC: Heartbeat age after which a dead holder is stale
    """

    timeout_sec: float = Field(
        default=0.0,
        description="How long acquire() polls before raising IndexBusy. Rebuilds are "
        "never queued.",
    )
    heartbeat_interval_sec: float = Field(
        default=5.0,
        description="Holder heartbeat period.",
    )
    stale_grace_sec: float = Field(
        default=30.0,
        description="A lock whose holder pid is dead and whose heartbeat is older than "
        "this is reclaimed. RISK: Too low may reclaim a live writer on a stalled host.",
    )

    @field_validator("timeout_sec", "stale_grace_sec")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"must be >= 0, got {v}")
        return v

    @field_validator("heartbeat_interval_sec")
    @classmethod
    def validate_heartbeat(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"heartbeat_interval_sec must be > 0, got {v}")
        return v


class QueryConfig(BaseModel):
    """Query defaults.

    Env vars:
        SEMINDEX__QUERY__DEFAULT_K: Default number of neighbours
        SEMINDEX__QUERY__DEFAULT_CONFIDENCE: Threshold when settings.yaml is absent
    """

    default_k: int = Field(
        default=10,
        description="Neighbours requested when the caller gives no k.",
    )
    default_confidence: float = Field(
        default=DEFAULT_CONFIDENCE_THRESHOLD,
        description="Confidence threshold (0-100) used until one is persisted.",
    )
    record_analytics: bool = Field(
        default=True,
        description="Append query events to analytics.jsonl.",
    )
    analytics_max_events: int = Field(
        default=1000,
        description="Lines analytics.jsonl may hold before it is compacted into a summary record.",
    )

    @field_validator("default_k")
    @classmethod
    def validate_k(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"default_k must be >= 1, got {v}")
        return v

    @field_validator("analytics_max_events")
    @classmethod
    def validate_max_events(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"analytics_max_events must be >= 1, got {v}")
        return v

    @field_validator("default_confidence")
    @classmethod
    def validate_confidence(cls, v: float) -> float:
        if not (0.0 <= v <= 100.0):
            raise ValueError(f"default_confidence must be 0-100, got {v}")
        return v


class SemIndexConfig(BaseModel):
    """Root configuration for SemIndex.

    All settings can be configured via:
    1. Environment variables: SEMINDEX__SECTION__KEY
    2. YAML config files (index root or global)
    3. Direct kwargs to load_config()
    """

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    index: IndexParamsConfig = Field(default_factory=IndexParamsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
