"""Query engine: embed, search, score, filter.

Confidence is ``clamp(cosine_similarity, 0, 1) * 100`` rounded to two
decimals. The mapping is monotonic and independent of the model, so a
threshold tuned for a model keeps its meaning for that model's lifetime.

Threshold precedence for one call:
    explicit min_confidence > settings.yaml > generation manifest > config default

Queries never take the write lock; they read whichever generation the
pointer names when the call starts.
"""

from __future__ import annotations

import time
from pathlib import Path

import structlog

from semindex.config.constants import QUERY_MAX_K
from semindex.config.user_settings import SettingsStore, validate_threshold
from semindex.core.errors import (
    ConfigError,
    IndexNotBuiltError,
    ModelMismatchError,
    SemIndexError,
)
from semindex.core.logging import bind_correlation, correlation, new_request_id
from semindex.index._internal.analytics import AnalyticsTracker
from semindex.index._internal.embedding import EmbeddingGateway
from semindex.index._internal.generations import GenerationStore, LoadedGeneration
from semindex.index.models import QueryResult, ScoredChunk

logger = structlog.get_logger()


def similarity_to_confidence(similarity: float) -> float:
    """Map cosine similarity to a 0-100 confidence percentage."""
    return round(min(1.0, max(0.0, float(similarity))) * 100.0, 2)


class QueryEngine:
    """Answers similarity queries against the current committed generation."""

    def __init__(
        self,
        root: Path,
        store: GenerationStore,
        gateway: EmbeddingGateway,
        settings: SettingsStore,
        analytics: AnalyticsTracker,
        *,
        default_k: int = 10,
        default_confidence: float = 60.0,
    ) -> None:
        self._root = root
        self._store = store
        self._gateway = gateway
        self._settings = settings
        self._analytics = analytics
        self._default_k = default_k
        self._default_confidence = default_confidence

    def effective_threshold(
        self, min_confidence: float | None, generation: LoadedGeneration | None = None
    ) -> float:
        """Resolve the threshold for one call (see module docstring)."""
        if min_confidence is not None:
            return validate_threshold(min_confidence)
        persisted = self._settings.read()
        if persisted is not None:
            return persisted.confidence_threshold
        if generation is not None:
            return generation.manifest.confidence_threshold
        return self._default_confidence

    def query(
        self, text: str, k: int | None = None, min_confidence: float | None = None
    ) -> QueryResult:
        """Run one query.

        Raises:
            InvalidThresholdError: min_confidence is not a number in [0, 100].
            IndexNotBuiltError: no generation has been committed.
            ModelMismatchError: the generation was built with another model.
            EmbeddingUnavailableError: the query text could not be embedded.
        """
        with correlation(request_id=new_request_id(), model_id=self._gateway.model_id):
            return self._query(text, k, min_confidence)

    def _query(self, text: str, k: int | None, min_confidence: float | None) -> QueryResult:
        start = time.perf_counter()
        threshold: float | None = None
        resolved_k = 0
        try:
            resolved_k = k = self._resolve_k(k)
            # Threshold is validated before the generation is resolved
            explicit = validate_threshold(min_confidence) if min_confidence is not None else None

            generation = self._store.current_generation()
            if generation is None:
                raise IndexNotBuiltError.at(str(self._root))
            bind_correlation(generation_id=generation.generation_id)
            if generation.model_id != self._gateway.model_id:
                raise ModelMismatchError.for_generation(
                    generation.generation_id, generation.model_id, self._gateway.model_id
                )
            threshold = self.effective_threshold(explicit, generation)

            vector = self._gateway.embed(text)
            candidates = generation.index.search(vector, k)
            hits = self._score(generation, candidates, threshold)
        except SemIndexError as e:
            self._analytics.record_query(
                query_chars=len(text),
                k=resolved_k,
                min_confidence=threshold,
                generation_id=None,
                candidates=0,
                confidences=[],
                latency_ms=(time.perf_counter() - start) * 1000,
                error=e.error_name,
            )
            logger.info("query_failed", error=e.error_name, code=int(e.code))
            raise

        elapsed_ms = (time.perf_counter() - start) * 1000
        self._analytics.record_query(
            query_chars=len(text),
            k=k,
            min_confidence=threshold,
            generation_id=generation.generation_id,
            candidates=len(candidates),
            confidences=[h.confidence for h in hits],
            latency_ms=elapsed_ms,
        )
        logger.debug(
            "query_completed",
            candidates=len(candidates),
            hits=len(hits),
            min_confidence=threshold,
            elapsed_ms=round(elapsed_ms, 3),
        )
        return QueryResult(
            query=text,
            k=k,
            min_confidence=threshold,
            generation_id=generation.generation_id,
            model_id=generation.model_id,
            hits=hits,
            candidates=len(candidates),
            elapsed_ms=elapsed_ms,
        )

    def _resolve_k(self, k: int | None) -> int:
        if k is None:
            return self._default_k
        if isinstance(k, bool) or not isinstance(k, int) or k < 1:
            raise ConfigError.invalid_value("k", k, f"must be an integer in 1..{QUERY_MAX_K}")
        return min(k, QUERY_MAX_K)

    def _score(
        self,
        generation: LoadedGeneration,
        candidates: list[tuple[str, float]],
        threshold: float,
    ) -> list[ScoredChunk]:
        scored: list[tuple[float, str, float]] = []
        for chunk_id, similarity in candidates:
            confidence = similarity_to_confidence(similarity)
            if confidence >= threshold:
                scored.append((confidence, chunk_id, similarity))
        scored.sort(key=lambda t: (-t[0], t[1]))

        hits: list[ScoredChunk] = []
        for rank, (confidence, chunk_id, similarity) in enumerate(scored, start=1):
            row = generation.chunks[chunk_id]
            unit = generation.units.get(row.unit_id)
            hits.append(
                ScoredChunk(
                    rank=rank,
                    chunk_id=chunk_id,
                    unit_id=row.unit_id,
                    kind=unit.kind if unit is not None else "file",
                    confidence=confidence,
                    similarity=similarity,
                    start_offset=row.start_offset,
                    end_offset=row.end_offset,
                    start_line=row.start_line,
                    end_line=row.end_line,
                    snippet=row.snippet,
                )
            )
        return hits
