"""SemIndex error types with typed error codes.

Error code ranges:
- 2xxx: Config and persisted settings
- 3xxx: Index (lock, embedding, generations, queries)
- 9xxx: Internal
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_MISSING_REQUIRED = 2003
    CONFIG_FILE_NOT_FOUND = 2004
    INVALID_THRESHOLD = 2005

    # Index (3xxx)
    INDEX_BUSY = 3001
    EMBEDDING_UNAVAILABLE = 3002
    EMBEDDING_BACKEND_DOWN = 3003
    MODEL_MISMATCH = 3004
    CORRUPT_GENERATION = 3005
    INDEX_NOT_BUILT = 3006
    REBUILD_CANCELLED = 3007

    # Internal (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_TIMEOUT = 9002


@dataclass(frozen=True, slots=True)
class SemIndexError(Exception):
    """Base error with structured context for callers."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'INDEX_BUSY')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON responses."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(SemIndexError):
    """Configuration-related errors."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )


class InvalidThresholdError(SemIndexError):
    """Confidence threshold outside 0-100."""

    @classmethod
    def out_of_range(cls, value: Any) -> "InvalidThresholdError":
        return cls(
            code=ErrorCode.INVALID_THRESHOLD,
            message=f"Confidence threshold must be a number between 0 and 100, got {value!r}",
            details={"value": str(value)},
        )


class IndexBusyError(SemIndexError):
    """The write lock is held by another rebuild."""

    @classmethod
    def held(cls, lock_path: str, holder: dict[str, Any] | None = None) -> "IndexBusyError":
        return cls(
            code=ErrorCode.INDEX_BUSY,
            message=f"Index is being rebuilt by another process ({lock_path}); retry later",
            retryable=True,
            details={"lock_path": lock_path, "holder": holder or {}},
        )


class EmbeddingUnavailableError(SemIndexError):
    """A single text could not be embedded."""

    @classmethod
    def for_item(cls, model_id: str, reason: str, **details: Any) -> "EmbeddingUnavailableError":
        return cls(
            code=ErrorCode.EMBEDDING_UNAVAILABLE,
            message=f"Embedding with '{model_id}' failed: {reason}",
            retryable=True,
            details={"model_id": model_id, "reason": reason, **details},
        )


class EmbeddingBackendDownError(SemIndexError):
    """Too many consecutive embedding failures; the backend is treated as down."""

    @classmethod
    def consecutive_failures(
        cls, model_id: str, failures: int, last_reason: str
    ) -> "EmbeddingBackendDownError":
        return cls(
            code=ErrorCode.EMBEDDING_BACKEND_DOWN,
            message=(
                f"Embedding backend '{model_id}' failed {failures} consecutive chunks; "
                "rebuild aborted, previous generation retained"
            ),
            retryable=True,
            details={"model_id": model_id, "failures": failures, "last_reason": last_reason},
        )


class ModelMismatchError(SemIndexError):
    """Query model differs from the model the current generation was built with."""

    @classmethod
    def for_generation(
        cls, generation_id: str, index_model: str, active_model: str
    ) -> "ModelMismatchError":
        return cls(
            code=ErrorCode.MODEL_MISMATCH,
            message=(
                f"Generation {generation_id} was built with '{index_model}' but the active "
                f"model is '{active_model}'; run a full rebuild"
            ),
            details={
                "generation_id": generation_id,
                "index_model": index_model,
                "active_model": active_model,
            },
        )


class CorruptGenerationError(SemIndexError):
    """A generation on disk is incomplete or fails verification."""

    @classmethod
    def incomplete(cls, generation_id: str, reason: str) -> "CorruptGenerationError":
        return cls(
            code=ErrorCode.CORRUPT_GENERATION,
            message=f"Generation {generation_id} is corrupt: {reason}",
            details={"generation_id": generation_id, "reason": reason},
        )


class IndexNotBuiltError(SemIndexError):
    """No committed generation exists yet."""

    @classmethod
    def at(cls, root: str) -> "IndexNotBuiltError":
        return cls(
            code=ErrorCode.INDEX_NOT_BUILT,
            message=f"No index has been built at {root}; run a rebuild first",
            details={"root": root},
        )


class RebuildCancelledError(SemIndexError):
    """A rebuild session was cancelled on request."""

    @classmethod
    def during(cls, session_id: str, stage: str) -> "RebuildCancelledError":
        return cls(
            code=ErrorCode.REBUILD_CANCELLED,
            message=f"Rebuild {session_id} cancelled during {stage}",
            details={"session_id": session_id, "stage": stage},
        )


class InternalError(SemIndexError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )

    @classmethod
    def timeout(cls, operation: str, seconds: float) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_TIMEOUT,
            message=f"{operation} timed out after {seconds:.1f}s",
            retryable=True,
            details={"operation": operation, "seconds": seconds},
        )
