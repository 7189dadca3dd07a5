"""Rebuild session: the write path as an explicit state machine.

    IDLE -> LOCK_ACQUIRING -> BUILDING -> COMMITTING -> IDLE
    LOCK_ACQUIRING -> REJECTED                (lock held elsewhere)
    LOCK_ACQUIRING|BUILDING|COMMITTING -> ABORTED -> IDLE

A session runs once. It holds the write lock from LOCK_ACQUIRING until it
returns, builds the next generation from the supplied units, commits it
and reclaims superseded directories. Any failure before the pointer swap
leaves the previous generation current.

Incremental builds reuse work from the current generation:
- a unit whose revision is unchanged keeps its chunk rows and vectors
  without being read, unless some of its chunks failed to embed last time;
  such a unit is re-read and only the missing chunks are embedded;
- a changed unit is re-chunked, and any chunk whose content hash already
  has a vector in the current generation reuses that vector.
An incremental request becomes a full build when the current generation
was built with another model or chunking policy.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import numpy as np
import structlog

from semindex.config.constants import FORMAT_VERSION
from semindex.config.models import IndexParamsConfig
from semindex.core.errors import (
    IndexBusyError,
    InternalError,
    RebuildCancelledError,
    SemIndexError,
)
from semindex.core.logging import bind_correlation, correlation
from semindex.index._internal.analytics import AnalyticsTracker
from semindex.index._internal.chunking import Chunker
from semindex.index._internal.embedding import EmbeddingGateway
from semindex.index._internal.generations import (
    BuildSession,
    GenerationStore,
    LoadedGeneration,
)
from semindex.index._internal.hnsw import HnswIndex
from semindex.index._internal.locking import LockToken, WriteLock
from semindex.index.models import (
    BuildMode,
    BuildStats,
    Chunk,
    ChunkRow,
    Manifest,
    RebuildEvent,
    RebuildResult,
    RebuildState,
    UnitInput,
    UnitRow,
    content_fingerprint,
)

logger = structlog.get_logger()

_TRANSITIONS: dict[RebuildState, frozenset[RebuildState]] = {
    RebuildState.IDLE: frozenset({RebuildState.LOCK_ACQUIRING}),
    RebuildState.LOCK_ACQUIRING: frozenset(
        {RebuildState.BUILDING, RebuildState.REJECTED, RebuildState.ABORTED}
    ),
    RebuildState.BUILDING: frozenset({RebuildState.COMMITTING, RebuildState.ABORTED}),
    RebuildState.COMMITTING: frozenset({RebuildState.IDLE, RebuildState.ABORTED}),
    RebuildState.ABORTED: frozenset({RebuildState.IDLE}),
    RebuildState.REJECTED: frozenset(),
}


@dataclass(frozen=True)
class StateChange:
    """One entry of a session's transition history."""

    state: RebuildState
    at: float


@dataclass
class _Entry:
    """A chunk destined for the new generation, with its vector."""

    row: ChunkRow
    vector: np.ndarray


class RebuildSession:
    """One rebuild attempt against one index root."""

    def __init__(
        self,
        *,
        lock: WriteLock,
        store: GenerationStore,
        gateway: EmbeddingGateway,
        chunker: Chunker,
        index_params: IndexParamsConfig,
        analytics: AnalyticsTracker,
        confidence_threshold: float,
        lock_timeout_sec: float = 0.0,
        on_event: Callable[[RebuildEvent], None] | None = None,
        session_id: str | None = None,
    ) -> None:
        self._lock = lock
        self._store = store
        self._gateway = gateway
        self._chunker = chunker
        self._index_params = index_params
        self._analytics = analytics
        self._confidence_threshold = confidence_threshold
        self._lock_timeout = lock_timeout_sec
        self._on_event = on_event
        self._session_id = session_id or uuid4().hex[:12]
        self._cancel = threading.Event()
        self._state_lock = threading.Lock()
        self._state = RebuildState.IDLE
        self._history: list[StateChange] = [StateChange(RebuildState.IDLE, time.time())]
        self._started = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> RebuildState:
        with self._state_lock:
            return self._state

    @property
    def history(self) -> list[StateChange]:
        with self._state_lock:
            return list(self._history)

    def cancel(self) -> None:
        """Request cancellation; honoured at the next batch or commit step."""
        self._cancel.set()
        logger.info("rebuild_cancel_requested", session_id=self._session_id)

    def _transition(self, target: RebuildState) -> None:
        with self._state_lock:
            if target not in _TRANSITIONS[self._state]:
                raise InternalError.unexpected(
                    f"illegal rebuild transition {self._state.value} -> {target.value}",
                    session_id=self._session_id,
                )
            self._state = target
            self._history.append(StateChange(target, time.time()))
        logger.debug("rebuild_state", session_id=self._session_id, state=target.value)

    def _check_cancelled(self, stage: str) -> None:
        if self._cancel.is_set():
            raise RebuildCancelledError.during(self._session_id, stage)

    def _emit(self, kind: str, **kwargs: Any) -> None:
        if self._on_event is not None:
            self._on_event(RebuildEvent(kind=kind, session_id=self._session_id, **kwargs))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self, units: Iterable[UnitInput], mode: BuildMode = BuildMode.INCREMENTAL
    ) -> RebuildResult:
        """Build and commit a new generation from ``units``.

        Raises:
            IndexBusyError: another process holds the write lock.
            EmbeddingBackendDownError: too many consecutive embedding failures.
            RebuildCancelledError: cancel() was called before the pointer swap.
            InternalError: the session was already run, or an unexpected failure.
        """
        with self._state_lock:
            if self._started:
                raise InternalError.unexpected(
                    "rebuild session already run", session_id=self._session_id
                )
            self._started = True

        started_at = time.time()
        t0 = time.perf_counter()
        with correlation(request_id=self._session_id, model_id=self._gateway.model_id):
            self._transition(RebuildState.LOCK_ACQUIRING)
            try:
                token = self._lock.acquire(self._lock_timeout, session_id=self._session_id)
            except IndexBusyError as e:
                self._transition(RebuildState.REJECTED)
                self._analytics.record_build(
                    outcome="rejected",
                    session_id=self._session_id,
                    started_at=started_at,
                    duration_ms=int((time.perf_counter() - t0) * 1000),
                    error=e.error_name,
                )
                self._emit("error", message=e.message, error=e.error_name)
                logger.info("rebuild_rejected", holder=e.details.get("holder"))
                raise
            except BaseException:
                self._transition(RebuildState.ABORTED)
                self._transition(RebuildState.IDLE)
                raise

            with token:
                self._transition(RebuildState.BUILDING)
                return self._build_and_commit(token, units, mode, started_at, t0)

    def _build_and_commit(
        self,
        token: LockToken,
        units: Iterable[UnitInput],
        mode: BuildMode,
        started_at: float,
        t0: float,
    ) -> RebuildResult:
        build: BuildSession | None = None
        stats = BuildStats(mode=mode)
        try:
            self._check_cancelled("lock")
            previous = self._store.current_generation()
            mode = self._effective_mode(mode, previous)
            stats.mode = mode
            self._emit("started", message=f"{mode.value} rebuild")
            logger.info(
                "rebuild_started",
                session_id=self._session_id,
                mode=mode.value,
                parent=previous.generation_id if previous else None,
                model_id=self._gateway.model_id,
            )

            build = self._store.begin_build(token)
            bind_correlation(generation_id=build.generation_id)
            build.cancel_event = self._cancel

            unit_rows, reused, to_embed = self._plan(
                units, previous if mode == BuildMode.INCREMENTAL else None, stats
            )
            self._check_cancelled("planning")

            total = len(to_embed)
            self._emit("progress", message="embedding", chunks_done=0, chunks_total=total)

            def on_progress(done: int, of: int) -> None:
                self._emit("progress", message="embedding", chunks_done=done, chunks_total=of)

            outcome = self._gateway.embed_chunks(
                to_embed, cancel=self._cancel, on_progress=on_progress
            )
            if outcome.cancelled:
                raise RebuildCancelledError.during(self._session_id, "embedding")

            entries = list(reused)
            entries.extend(_Entry(chunk.to_row(-1), vec) for chunk, vec in outcome.embedded)
            stats.new_chunks = len(outcome.embedded)
            stats.skipped_chunks = len(outcome.skipped)

            chunk_rows, index = self._assemble(entries)
            kept_per_unit = Counter(row.unit_id for row in chunk_rows)
            skipped_per_unit = Counter(s.unit_id for s in outcome.skipped)
            for unit_row in unit_rows:
                unit_row.chunk_count = kept_per_unit[unit_row.unit_id]
                unit_row.skipped_chunks = skipped_per_unit[unit_row.unit_id]
            stats.chunks_total = len(chunk_rows)
            stats.truncated_chunks = sum(1 for r in chunk_rows if r.truncated)

            manifest = Manifest(
                format_version=FORMAT_VERSION,
                generation_id=build.generation_id,
                model_id=self._gateway.model_id,
                embedding_dim=self._gateway.dim,
                chunk_count=len(chunk_rows),
                unit_count=len(unit_rows),
                created_at=datetime.now(UTC).isoformat(),
                confidence_threshold=self._confidence_threshold,
                build_mode=mode,
                parent_generation=build.parent_generation,
                skipped_chunks=len(outcome.skipped),
                chunking=self._chunker.policy.to_dict(),
                index=index.params(),
            )

            self._transition(RebuildState.COMMITTING)
            generation_id = self._store.commit(
                build,
                units=unit_rows,
                chunks=chunk_rows,
                index=index,
                manifest=manifest,
                on_step=lambda step: self._emit(
                    "progress", message=f"commit:{step}", chunks_done=total, chunks_total=total
                ),
            )
        except BaseException as e:
            if build is not None:
                self._store.abort(build)
            self._fail(e, stats, started_at, t0)
            if isinstance(e, Exception) and not isinstance(e, SemIndexError):
                raise InternalError.unexpected(
                    f"{type(e).__name__}: {e}", session_id=self._session_id
                ) from e
            raise

        try:
            self._store.discard_stale(generation_id, token)
        except OSError as e:
            logger.warning("generations_reclaim_failed", generation_id=generation_id, error=str(e))

        self._transition(RebuildState.IDLE)
        stats.duration_ms = int((time.perf_counter() - t0) * 1000)
        self._analytics.record_build(
            outcome="committed",
            session_id=self._session_id,
            started_at=started_at,
            duration_ms=stats.duration_ms,
            generation_id=generation_id,
            stats=stats.to_dict(),
        )
        self._emit("completed", generation_id=generation_id, stats=stats)
        logger.info(
            "rebuild_completed",
            session_id=self._session_id,
            generation_id=generation_id,
            **stats.to_dict(),
        )
        return RebuildResult(
            session_id=self._session_id,
            generation_id=generation_id,
            stats=stats,
            skipped=outcome.skipped,
        )

    def _fail(self, error: BaseException, stats: BuildStats, started_at: float, t0: float) -> None:
        self._transition(RebuildState.ABORTED)
        self._transition(RebuildState.IDLE)
        cancelled = isinstance(error, RebuildCancelledError)
        name = error.error_name if isinstance(error, SemIndexError) else type(error).__name__
        stats.duration_ms = int((time.perf_counter() - t0) * 1000)
        self._analytics.record_build(
            outcome="cancelled" if cancelled else "aborted",
            session_id=self._session_id,
            started_at=started_at,
            duration_ms=stats.duration_ms,
            stats=stats.to_dict(),
            error=name,
        )
        self._emit("error", message=str(error), error=name)
        if cancelled:
            logger.info("rebuild_cancelled", session_id=self._session_id)
        else:
            logger.error("rebuild_aborted", session_id=self._session_id, error=str(error))

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _effective_mode(self, mode: BuildMode, previous: LoadedGeneration | None) -> BuildMode:
        if mode == BuildMode.FULL or previous is None:
            return BuildMode.FULL
        reason: str | None = None
        if previous.model_id != self._gateway.model_id:
            reason = "model_changed"
        elif previous.manifest.chunking != self._chunker.policy.to_dict():
            reason = "chunking_changed"
        if reason is not None:
            logger.info(
                "rebuild_upgraded_to_full",
                reason=reason,
                previous_model=previous.model_id,
                model_id=self._gateway.model_id,
            )
            return BuildMode.FULL
        return BuildMode.INCREMENTAL

    def _plan(
        self,
        units: Iterable[UnitInput],
        previous: LoadedGeneration | None,
        stats: BuildStats,
    ) -> tuple[list[UnitRow], list[_Entry], list[Chunk]]:
        """Decide, per unit, what is reused and what must be embedded."""
        model_id = self._gateway.model_id
        unit_rows: list[UnitRow] = []
        reused: list[_Entry] = []
        to_embed: list[Chunk] = []
        seen_units: set[str] = set()
        seen_chunks: set[str] = set()

        by_hash: dict[str, ChunkRow] = {}
        if previous is not None:
            for row in previous.chunks.values():
                by_hash.setdefault(row.content_hash, row)

        for item in units:
            self._check_cancelled("planning")
            unit = item.unit
            if unit.unit_id in seen_units:
                logger.warning("unit_duplicate_ignored", unit_id=unit.unit_id)
                continue
            seen_units.add(unit.unit_id)
            stats.units_total += 1

            old = previous.units.get(unit.unit_id) if previous is not None else None
            retry = False
            if (
                previous is not None
                and old is not None
                and old.revision == unit.revision
                and old.kind == unit.kind.value
            ):
                if old.skipped_chunks:
                    retry = True
                else:
                    self._reuse_unit(previous, old, reused, seen_chunks, stats, unit_rows)
                    continue

            try:
                text = item.read()
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("unit_unreadable", unit_id=unit.unit_id, error=str(e))
                stats.units_total -= 1
                continue

            if retry:
                stats.units_retried += 1
                logger.info(
                    "unit_retrying_skipped_chunks",
                    unit_id=unit.unit_id,
                    skipped=old.skipped_chunks if old is not None else 0,
                )
            else:
                stats.units_changed += 1
            unit_rows.append(
                UnitRow(
                    unit_id=unit.unit_id,
                    revision=unit.revision,
                    kind=unit.kind.value,
                    content_hash=content_fingerprint(text),
                )
            )
            for chunk in self._chunker.chunk(unit.unit_id, text, model_id):
                if chunk.chunk_id in seen_chunks:
                    continue
                seen_chunks.add(chunk.chunk_id)
                known = by_hash.get(chunk.content_hash)
                if known is not None and previous is not None:
                    vector = previous.index.vectors[known.vector_row]
                    reused.append(_Entry(chunk.to_row(-1), vector))
                    stats.reused_chunks += 1
                else:
                    to_embed.append(chunk)

        if previous is not None:
            stats.units_removed = sum(1 for uid in previous.units if uid not in seen_units)
        return unit_rows, reused, to_embed

    def _reuse_unit(
        self,
        previous: LoadedGeneration,
        old: UnitRow,
        reused: list[_Entry],
        seen_chunks: set[str],
        stats: BuildStats,
        unit_rows: list[UnitRow],
    ) -> None:
        rows = previous.chunks_for_unit(old.unit_id)
        for row in rows:
            reused.append(_Entry(_copy_row(row), previous.index.vectors[row.vector_row]))
            seen_chunks.add(row.chunk_id)
        stats.reused_chunks += len(rows)
        unit_rows.append(
            UnitRow(
                unit_id=old.unit_id,
                revision=old.revision,
                kind=old.kind,
                content_hash=old.content_hash,
            )
        )

    def _assemble(self, entries: list[_Entry]) -> tuple[list[ChunkRow], HnswIndex]:
        """Order entries by chunk id, assign vector rows and build the index."""
        entries.sort(key=lambda e: e.row.chunk_id)
        params = self._index_params
        index = HnswIndex(
            self._gateway.dim,
            m=params.m,
            ef_construction=params.ef_construction,
            ef_search=params.ef_search,
            seed=params.seed,
            exact_threshold=params.exact_threshold,
        )
        rows: list[ChunkRow] = []
        for i, entry in enumerate(entries):
            entry.row.vector_row = i
            rows.append(entry.row)
        if entries:
            index.build([e.row.chunk_id for e in entries], np.stack([e.vector for e in entries]))
        return rows, index


def _copy_row(row: ChunkRow) -> ChunkRow:
    """Detached copy of a chunk row from a loaded generation."""
    return ChunkRow.model_validate(row.model_dump())
