"""SemanticIndex: the command surface's entry point into one index root.

Usage::

    index = SemanticIndex.open(Path(".semindex"))
    index.rebuild(DirectorySource(Path(".")).units(), BuildMode.INCREMENTAL)
    result = index.query("addition function", k=5)

    # Background rebuild (single worker, cancellable)
    job = index.start_rebuild(NoteStore(root).units())
    index.rebuilder.cancel()

Queries are lock-free: they read whichever generation CURRENT names. A
rebuild takes the root's write lock for its whole duration; a second
concurrent rebuild gets IndexBusyError immediately (or after
``lock.timeout_sec``).
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from semindex.config.constants import ANALYTICS_FILE, SETTINGS_FILE
from semindex.config.loader import load_config
from semindex.config.models import SemIndexConfig
from semindex.config.user_settings import SettingsStore, UserSettings
from semindex.index._internal.analytics import AnalyticsSummary, AnalyticsTracker
from semindex.index._internal.chunking import Chunker, ChunkPolicy
from semindex.index._internal.db import IntegrityReport
from semindex.index._internal.embedding import (
    EmbeddingBackend,
    EmbeddingGateway,
    create_backend,
)
from semindex.index._internal.generations import GenerationStore, RecoveryState
from semindex.index._internal.locking import LockStatus, WriteLock
from semindex.index._internal.query import QueryEngine
from semindex.index._internal.session import RebuildSession
from semindex.index.models import (
    BuildMode,
    LockState,
    QueryResult,
    RebuildEvent,
    RebuildResult,
    UnitInput,
)

if TYPE_CHECKING:
    from semindex.daemon.rebuilder import BackgroundRebuilder

logger = structlog.get_logger()


@dataclass
class ThresholdInfo:
    """The threshold a query without min_confidence would use, and where it came from."""

    confidence_threshold: float
    source: str  # 'settings', 'manifest' or 'default'
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "confidence_threshold": self.confidence_threshold,
            "source": self.source,
            "updated_at": self.updated_at,
        }


@dataclass
class IndexStatus:
    """Snapshot of an index root for ``status``."""

    root: str
    generation_id: str | None
    pointer: str | None
    chunk_count: int
    unit_count: int
    index_model_id: str | None
    active_model_id: str
    last_rebuild_at: str | None
    lock: LockStatus
    rebuild_required: bool
    reasons: list[str] = field(default_factory=list)
    model_mismatch: bool = False
    threshold: ThresholdInfo | None = None
    generations: list[dict[str, object]] = field(default_factory=list)
    analytics: AnalyticsSummary | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": self.root,
            "generation_id": self.generation_id,
            "pointer": self.pointer,
            "chunk_count": self.chunk_count,
            "unit_count": self.unit_count,
            "index_model_id": self.index_model_id,
            "active_model_id": self.active_model_id,
            "last_rebuild_at": self.last_rebuild_at,
            "lock": self.lock.to_dict(),
            "rebuild_required": self.rebuild_required,
            "reasons": list(self.reasons),
            "model_mismatch": self.model_mismatch,
            "threshold": self.threshold.to_dict() if self.threshold else None,
            "generations": list(self.generations),
            "analytics": self.analytics.to_dict() if self.analytics else None,
        }


class SemanticIndex:
    """One index root: rebuild, query, settings, status, verify, clean."""

    def __init__(
        self,
        root: Path,
        *,
        config: SemIndexConfig | None = None,
        backend: EmbeddingBackend | None = None,
    ) -> None:
        self.root = root
        self.config = config if config is not None else load_config(root)
        self._backend = backend
        self._gateway: EmbeddingGateway | None = None
        self._query_engine: QueryEngine | None = None
        self._rebuilder: BackgroundRebuilder | None = None
        self._init_lock = threading.Lock()

        cfg = self.config
        self._lock = WriteLock(
            root,
            heartbeat_interval_sec=cfg.lock.heartbeat_interval_sec,
            stale_grace_sec=cfg.lock.stale_grace_sec,
        )
        self._store = GenerationStore(
            root,
            retain_generations=cfg.storage.retain_generations,
            busy_timeout_ms=cfg.storage.busy_timeout_ms,
        )
        self._settings = SettingsStore(root / SETTINGS_FILE)
        self._analytics = AnalyticsTracker(
            root / ANALYTICS_FILE,
            enabled=cfg.query.record_analytics,
            max_events=cfg.query.analytics_max_events,
        )
        self._chunker = Chunker(ChunkPolicy.from_config(cfg.chunking))
        self.recovery: RecoveryState | None = None

    @classmethod
    def open(
        cls,
        root: Path,
        *,
        config: SemIndexConfig | None = None,
        backend: EmbeddingBackend | None = None,
    ) -> SemanticIndex:
        """Construct and run recovery (fallback + rebuild_required detection)."""
        root.mkdir(parents=True, exist_ok=True)
        index = cls(root, config=config, backend=backend)
        index.recover()
        return index

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def gateway(self) -> EmbeddingGateway:
        with self._init_lock:
            if self._gateway is None:
                backend = self._backend or create_backend(self.config.embedding)
                self._gateway = EmbeddingGateway.from_config(backend, self.config.embedding)
            return self._gateway

    @property
    def store(self) -> GenerationStore:
        return self._store

    @property
    def write_lock(self) -> WriteLock:
        return self._lock

    @property
    def analytics(self) -> AnalyticsTracker:
        return self._analytics

    @property
    def rebuilder(self) -> BackgroundRebuilder:
        from semindex.daemon.rebuilder import BackgroundRebuilder

        with self._init_lock:
            if self._rebuilder is None:
                self._rebuilder = BackgroundRebuilder(self)
                self._rebuilder.start()
            return self._rebuilder

    def _engine(self) -> QueryEngine:
        gateway = self.gateway
        with self._init_lock:
            if self._query_engine is None:
                self._query_engine = QueryEngine(
                    self.root,
                    self._store,
                    gateway,
                    self._settings,
                    self._analytics,
                    default_k=self.config.query.default_k,
                    default_confidence=self.config.query.default_confidence,
                )
            return self._query_engine

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def recover(self) -> RecoveryState:
        self.recovery = self._store.recover(writer_active=self._lock.writer_active())
        return self.recovery

    def new_session(
        self,
        *,
        on_event: Callable[[RebuildEvent], None] | None = None,
        lock_timeout_sec: float | None = None,
    ) -> RebuildSession:
        """A fresh, not yet started rebuild session for this root."""
        return RebuildSession(
            lock=self._lock,
            store=self._store,
            gateway=self.gateway,
            chunker=self._chunker,
            index_params=self.config.index,
            analytics=self._analytics,
            confidence_threshold=self._build_threshold(),
            lock_timeout_sec=(
                self.config.lock.timeout_sec if lock_timeout_sec is None else lock_timeout_sec
            ),
            on_event=on_event,
        )

    def rebuild(
        self,
        units: Iterable[UnitInput],
        mode: BuildMode = BuildMode.INCREMENTAL,
        *,
        on_event: Callable[[RebuildEvent], None] | None = None,
        lock_timeout_sec: float | None = None,
    ) -> RebuildResult:
        """Build and commit a new generation in the calling thread.

        Raises:
            IndexBusyError: another rebuild holds the write lock.
            EmbeddingBackendDownError: the backend failed systemically.
            RebuildCancelledError: the session was cancelled.
        """
        session = self.new_session(on_event=on_event, lock_timeout_sec=lock_timeout_sec)
        result = session.run(units, mode)
        self.recovery = None
        return result

    def start_rebuild(
        self,
        units: Iterable[UnitInput] | Callable[[], Iterable[UnitInput]],
        mode: BuildMode = BuildMode.INCREMENTAL,
        *,
        on_event: Callable[[RebuildEvent], None] | None = None,
    ) -> Future[RebuildResult]:
        """Run a rebuild on the background worker; cancel via ``rebuilder.cancel()``."""
        return self.rebuilder.submit(units, mode, on_event=on_event)

    def clean(self) -> None:
        """Remove every generation, the pointer and analytics.

        settings.yaml, config.yaml and notes.jsonl are user data and stay.

        Raises:
            IndexBusyError: a rebuild holds the write lock.
        """
        with self._lock.acquire(0.0):
            self._store.clear()
            self._analytics.clear()
        self.recovery = None
        logger.info("index_cleaned", root=str(self.root))

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def query(
        self, text: str, k: int | None = None, min_confidence: float | None = None
    ) -> QueryResult:
        return self._engine().query(text, k, min_confidence)

    def get_settings(self) -> ThresholdInfo:
        persisted = self._settings.read()
        if persisted is not None:
            return ThresholdInfo(
                persisted.confidence_threshold, "settings", persisted.updated_at
            )
        generation = self._store.current_generation()
        if generation is not None:
            return ThresholdInfo(generation.manifest.confidence_threshold, "manifest")
        return ThresholdInfo(self.config.query.default_confidence, "default")

    def set_settings(self, confidence_threshold: Any) -> UserSettings:
        """Persist a new default threshold.

        Raises:
            InvalidThresholdError: not a number in [0, 100]; the prior value stays.
        """
        return self._settings.set_threshold(confidence_threshold)

    def reset_settings(self) -> UserSettings:
        return self._settings.reset()

    def _build_threshold(self) -> float:
        persisted = self._settings.read()
        if persisted is not None:
            return persisted.confidence_threshold
        return self.config.query.default_confidence

    def status(self) -> IndexStatus:
        generation = self._store.current_generation()
        lock_status = self._lock.state()
        recovery = self._store.inspect(writer_active=lock_status.state == LockState.HELD)
        active_model = self.gateway.model_id
        manifest = generation.manifest if generation is not None else None
        reasons = list(recovery.reasons)
        mismatch = manifest is not None and manifest.model_id != active_model
        if manifest is not None and mismatch:
            reasons.append(f"index built with {manifest.model_id}, active model is {active_model}")

        return IndexStatus(
            root=str(self.root),
            generation_id=generation.generation_id if generation else None,
            pointer=recovery.pointer,
            chunk_count=manifest.chunk_count if manifest else 0,
            unit_count=manifest.unit_count if manifest else 0,
            index_model_id=manifest.model_id if manifest else None,
            active_model_id=active_model,
            last_rebuild_at=manifest.created_at if manifest else None,
            lock=lock_status,
            rebuild_required=recovery.rebuild_required or mismatch,
            reasons=reasons,
            model_mismatch=mismatch,
            threshold=self.get_settings(),
            generations=self._store.describe(),
            analytics=self._analytics.summary(),
        )

    def verify(self, generation_id: str | None = None) -> IntegrityReport:
        return self._store.verify(generation_id)

    def close(self) -> None:
        """Stop the background worker, waiting for an in-flight rebuild."""
        with self._init_lock:
            rebuilder = self._rebuilder
            self._rebuilder = None
        if rebuilder is not None:
            rebuilder.stop()
