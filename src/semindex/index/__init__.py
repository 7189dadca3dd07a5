"""Index module - persistent semantic retrieval engine.

This module provides:
- Chunking of text units with deterministic boundaries
- Embedding through pluggable backends (fastembed, feature hashing)
- An HNSW vector index per immutable generation
- Atomic generation commits behind a pointer, with crash recovery
- A cross-process write lock and confidence-filtered queries

Public API is in `semindex.index.ops`:
- SemanticIndex: High-level facade over one index root
- IndexStatus, ThresholdInfo: Result types

Internal implementations are in `semindex.index._internal/`.
"""

from semindex.index._internal.discovery import DirectorySource, IgnoreChecker
from semindex.index._internal.embedding import (
    EmbeddingBackend,
    EmbeddingGateway,
    FastEmbedBackend,
    HashingBackend,
)
from semindex.index.models import (
    BuildMode,
    BuildStats,
    Chunk,
    ChunkRow,
    LockState,
    Manifest,
    QueryResult,
    RebuildEvent,
    RebuildResult,
    RebuildState,
    ScoredChunk,
    TextUnit,
    UnitInput,
    UnitKind,
    UnitRow,
)
from semindex.index.notes import Note, NoteStore
from semindex.index.ops import IndexStatus, SemanticIndex, ThresholdInfo

__all__ = [
    # Public API (ops.py)
    "SemanticIndex",
    "IndexStatus",
    "ThresholdInfo",
    # Sources
    "DirectorySource",
    "IgnoreChecker",
    "NoteStore",
    "Note",
    # Embedding
    "EmbeddingBackend",
    "EmbeddingGateway",
    "FastEmbedBackend",
    "HashingBackend",
    # Enums
    "BuildMode",
    "LockState",
    "RebuildState",
    "UnitKind",
    # Table models
    "UnitRow",
    "ChunkRow",
    # Data transfer models
    "TextUnit",
    "UnitInput",
    "Chunk",
    "Manifest",
    "BuildStats",
    "RebuildEvent",
    "RebuildResult",
    "ScoredChunk",
    "QueryResult",
]
