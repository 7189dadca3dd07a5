"""Data model for the semantic index.

Single source of truth for the per-generation chunk tables and the value
objects passed between the chunker, the embedding gateway, the generation
store and the query engine.

Identity rules:
- ``chunk_id`` is derived from (unit_id, start_offset, end_offset,
  content_hash, model_id); equal inputs give equal ids across rebuilds.
- A generation holds exactly one vector per chunk row and a single model id.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field as PydField
from sqlmodel import Field, SQLModel

# ============================================================================
# ENUMS
# ============================================================================


class UnitKind(str, Enum):
    """What a text unit represents."""

    FILE = "file"
    NOTE = "note"


class BuildMode(str, Enum):
    """How a rebuild treats the previous generation."""

    FULL = "full"  # Re-embed everything
    INCREMENTAL = "incremental"  # Reuse unchanged units and known content hashes


class LockState(str, Enum):
    """Observed state of the write lock."""

    FREE = "free"
    HELD = "held"
    STALE = "stale"


class RebuildState(str, Enum):
    """Rebuild session lifecycle."""

    IDLE = "idle"
    LOCK_ACQUIRING = "lock_acquiring"
    BUILDING = "building"
    COMMITTING = "committing"
    ABORTED = "aborted"
    REJECTED = "rejected"


# ============================================================================
# GENERATION TABLES (chunks.db)
# ============================================================================


class UnitRow(SQLModel, table=True):
    """A text unit as of the generation's build."""

    __tablename__ = "units"

    unit_id: str = Field(primary_key=True)
    revision: str
    kind: str = Field(default=UnitKind.FILE.value)
    content_hash: str
    chunk_count: int = Field(default=0)
    # Chunks that failed to embed; a non-zero count re-plans the unit next build
    skipped_chunks: int = Field(default=0)


class ChunkRow(SQLModel, table=True):
    """A live chunk; ``vector_row`` indexes its row in vectors.npz."""

    __tablename__ = "chunks"

    chunk_id: str = Field(primary_key=True)
    unit_id: str = Field(index=True)
    ordinal: int
    start_offset: int
    end_offset: int
    start_line: int
    end_line: int
    content_hash: str = Field(index=True)
    model_id: str
    truncated: bool = Field(default=False)
    snippet: str = Field(default="")
    vector_row: int = Field(unique=True)


# ============================================================================
# VALUE OBJECTS
# ============================================================================


def content_fingerprint(text: str) -> str:
    """sha256 hex digest of ``text`` (UTF-8, surrogates escaped)."""
    return hashlib.sha256(text.encode("utf-8", "surrogatepass")).hexdigest()


def make_chunk_id(
    unit_id: str, start_offset: int, end_offset: int, content_hash: str, model_id: str
) -> str:
    """Deterministic chunk identity."""
    key = "\x1f".join([unit_id, str(start_offset), str(end_offset), content_hash, model_id])
    return hashlib.blake2b(key.encode("utf-8", "surrogatepass"), digest_size=16).hexdigest()


@dataclass(frozen=True, slots=True)
class TextUnit:
    """An indexable unit as reported by a source. ``revision`` is opaque."""

    unit_id: str
    revision: str
    kind: UnitKind = UnitKind.FILE


@dataclass(frozen=True, slots=True)
class UnitInput:
    """A unit plus a lazy reader; ``read`` is only called when the unit changed."""

    unit: TextUnit
    read: Callable[[], str]

    @classmethod
    def from_text(
        cls, unit_id: str, text: str, *, revision: str | None = None, kind: UnitKind = UnitKind.FILE
    ) -> UnitInput:
        """Build an input for in-memory text; the revision defaults to its fingerprint."""
        rev = revision if revision is not None else content_fingerprint(text)
        return cls(unit=TextUnit(unit_id=unit_id, revision=rev, kind=kind), read=lambda: text)


@dataclass(frozen=True, slots=True)
class Chunk:
    """Immutable sub-range of a unit. Offsets are character offsets, end exclusive."""

    chunk_id: str
    unit_id: str
    ordinal: int
    start_offset: int
    end_offset: int
    start_line: int
    end_line: int
    content_hash: str
    model_id: str
    text: str = field(repr=False)
    truncated: bool = False
    snippet: str = ""

    def to_row(self, vector_row: int) -> ChunkRow:
        return ChunkRow(
            chunk_id=self.chunk_id,
            unit_id=self.unit_id,
            ordinal=self.ordinal,
            start_offset=self.start_offset,
            end_offset=self.end_offset,
            start_line=self.start_line,
            end_line=self.end_line,
            content_hash=self.content_hash,
            model_id=self.model_id,
            truncated=self.truncated,
            snippet=self.snippet,
            vector_row=vector_row,
        )


class Manifest(BaseModel):
    """manifest.json of a committed generation."""

    format_version: int
    generation_id: str
    model_id: str
    embedding_dim: int
    chunk_count: int
    unit_count: int
    created_at: str
    confidence_threshold: float
    build_mode: BuildMode = BuildMode.FULL
    parent_generation: str | None = None
    skipped_chunks: int = 0
    chunking: dict[str, Any] = PydField(default_factory=dict)
    index: dict[str, Any] = PydField(default_factory=dict)
    checksums: dict[str, str] = PydField(default_factory=dict)


@dataclass
class BuildStats:
    """Counters for one rebuild."""

    mode: BuildMode = BuildMode.FULL
    units_total: int = 0
    units_changed: int = 0
    units_removed: int = 0
    units_retried: int = 0
    chunks_total: int = 0
    reused_chunks: int = 0
    new_chunks: int = 0
    skipped_chunks: int = 0
    truncated_chunks: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "units_total": self.units_total,
            "units_changed": self.units_changed,
            "units_removed": self.units_removed,
            "units_retried": self.units_retried,
            "chunks_total": self.chunks_total,
            "reused_chunks": self.reused_chunks,
            "new_chunks": self.new_chunks,
            "skipped_chunks": self.skipped_chunks,
            "truncated_chunks": self.truncated_chunks,
            "duration_ms": self.duration_ms,
        }


@dataclass
class SkippedChunk:
    """A chunk left out of a generation because it could not be embedded."""

    chunk_id: str
    unit_id: str
    reason: str


@dataclass
class RebuildResult:
    """Outcome of a committed rebuild."""

    session_id: str
    generation_id: str
    stats: BuildStats
    skipped: list[SkippedChunk] = field(default_factory=list)


@dataclass(frozen=True)
class RebuildEvent:
    """Progress notification emitted during a rebuild.

    kind is one of ``started``, ``progress``, ``completed``, ``error``.
    """

    kind: str
    session_id: str
    message: str = ""
    chunks_done: int = 0
    chunks_total: int = 0
    generation_id: str | None = None
    stats: BuildStats | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ScoredChunk:
    """A query hit."""

    rank: int
    chunk_id: str
    unit_id: str
    kind: str
    confidence: float
    similarity: float
    start_offset: int
    end_offset: int
    start_line: int
    end_line: int
    snippet: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "chunk_id": self.chunk_id,
            "unit_id": self.unit_id,
            "kind": self.kind,
            "confidence": self.confidence,
            "similarity": round(self.similarity, 6),
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "snippet": self.snippet,
        }


@dataclass
class QueryResult:
    """Hits above threshold, best first. An empty list is a valid answer."""

    query: str
    k: int
    min_confidence: float
    generation_id: str
    model_id: str
    hits: list[ScoredChunk] = field(default_factory=list)
    candidates: int = 0
    elapsed_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "k": self.k,
            "min_confidence": self.min_confidence,
            "generation_id": self.generation_id,
            "model_id": self.model_id,
            "candidates": self.candidates,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "hits": [h.to_dict() for h in self.hits],
        }
