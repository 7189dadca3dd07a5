"""Immutable generations behind an atomically swapped pointer.

Layout under the index root::

    CURRENT                   current generation id (single line)
    generations/<id>/         manifest.json, chunks.db, vectors.npz, graph.hnsw
    generations/.staging-*    in-flight builds

Commit protocol (writer holds the write lock):
1. Write chunks.db, vectors.npz, graph.hnsw, then manifest.json (with sha256
   checksums) into the staging directory; each file is fsynced.
2. fsync the staging directory, rename it to generations/<id>, fsync
   generations/.
3. Write CURRENT.tmp, fsync, os.replace over CURRENT, fsync the root.

Readers dereference CURRENT and load a generation fully into memory, so
they see the whole old or the whole new generation, and reclaiming a
superseded directory never affects a loaded one.

Recovery is computed, not persisted: a pointer that is missing, unreadable
or names an incomplete generation falls back to the newest complete
generation below it; generation or staging directories newer than the
pointer with no live writer mark an interrupted commit. Both set
``rebuild_required`` until the next successful commit reclaims them.
"""

from __future__ import annotations

import os
import re
import shutil
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog
from pydantic import ValidationError

from semindex.config.constants import (
    CHUNKS_DB_FILE,
    CURRENT_POINTER,
    GENERATION_ID_WIDTH,
    GENERATIONS_DIR,
    GRAPH_FILE,
    MANIFEST_FILE,
    PAYLOAD_FILES,
    STAGING_PREFIX,
    VECTORS_FILE,
)
from semindex.core.errors import CorruptGenerationError, RebuildCancelledError
from semindex.index._internal.db import (
    IntegrityReport,
    file_sha256,
    read_generation_tables,
    read_manifest,
    verify_generation,
    write_generation_tables,
)
from semindex.index._internal.hnsw import HnswIndex
from semindex.index._internal.locking import LockToken
from semindex.index.models import ChunkRow, Manifest, UnitRow

logger = structlog.get_logger()

_ID_RE = re.compile(r"^\d+$")
_STAGING_RE = re.compile(rf"^{re.escape(STAGING_PREFIX)}(\d+)-")
_LOAD_ATTEMPTS = 3


def format_generation_id(n: int) -> str:
    return f"{n:0{GENERATION_ID_WIDTH}d}"


def _fsync(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


@dataclass
class LoadedGeneration:
    """A committed generation held entirely in memory."""

    generation_id: str
    manifest: Manifest
    units: dict[str, UnitRow]
    chunks: dict[str, ChunkRow]
    index: HnswIndex
    loaded_at: float = field(default_factory=time.time)
    _by_unit: dict[str, list[ChunkRow]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        for chunk in sorted(self.chunks.values(), key=lambda c: (c.unit_id, c.ordinal)):
            self._by_unit.setdefault(chunk.unit_id, []).append(chunk)

    @property
    def model_id(self) -> str:
        return self.manifest.model_id

    def chunks_for_unit(self, unit_id: str) -> list[ChunkRow]:
        return list(self._by_unit.get(unit_id, ()))


@dataclass
class BuildSession:
    """A generation being written in its staging directory."""

    generation_id: str
    staging_dir: Path
    token: LockToken
    parent_generation: str | None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def session_id(self) -> str:
        return self.token.session_id


@dataclass
class RecoveryState:
    """Outcome of inspecting the root for interrupted or corrupt state."""

    pointer: str | None
    effective_generation: str | None
    rebuild_required: bool = False
    reasons: list[str] = field(default_factory=list)
    interrupted: list[str] = field(default_factory=list)

    def flag(self, reason: str) -> None:
        self.rebuild_required = True
        self.reasons.append(reason)


class GenerationStore:
    """Owns the generation directories and the CURRENT pointer of one root."""

    def __init__(
        self,
        root: Path,
        *,
        retain_generations: int = 2,
        busy_timeout_ms: int = 30000,
    ) -> None:
        self._root = root
        self._gen_root = root / GENERATIONS_DIR
        self._pointer = root / CURRENT_POINTER
        self._retain = max(1, retain_generations)
        self._busy_timeout_ms = busy_timeout_ms
        self._cache_lock = threading.Lock()
        self._cached_key: str | None = None
        self._cached: LoadedGeneration | None = None
        self._fallback_reason: str | None = None

    @property
    def root(self) -> Path:
        return self._root

    def generation_dir(self, generation_id: str) -> Path:
        return self._gen_root / generation_id

    # ------------------------------------------------------------------
    # Pointer and directory listing
    # ------------------------------------------------------------------

    def read_pointer(self) -> str | None:
        """Current generation id, or None when missing or unreadable."""
        try:
            raw = self._pointer.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("generation_pointer_unreadable", error=str(e))
            return None
        if not _ID_RE.match(raw):
            logger.warning("generation_pointer_invalid", content=raw[:64])
            return None
        return raw

    def pointer_exists(self) -> bool:
        return self._pointer.exists()

    def list_generations(self) -> list[str]:
        """Committed-looking generation directory names, oldest first."""
        if not self._gen_root.is_dir():
            return []
        ids = [p.name for p in self._gen_root.iterdir() if p.is_dir() and _ID_RE.match(p.name)]
        return sorted(ids, key=int)

    def list_staging(self) -> list[Path]:
        if not self._gen_root.is_dir():
            return []
        return sorted(p for p in self._gen_root.iterdir() if p.name.startswith(STAGING_PREFIX))

    def is_complete(self, generation_id: str) -> bool:
        """Cheap completeness check: manifest parses and payload files exist."""
        gen_dir = self.generation_dir(generation_id)
        try:
            manifest = read_manifest(gen_dir)
        except (OSError, ValueError, ValidationError):
            return False
        if manifest.generation_id != generation_id:
            return False
        return all((gen_dir / name).is_file() for name in PAYLOAD_FILES)

    # ------------------------------------------------------------------
    # Writer side
    # ------------------------------------------------------------------

    def begin_build(self, token: LockToken) -> BuildSession:
        """Allocate the next generation id and its staging directory."""
        token.ensure_held()
        self._gen_root.mkdir(parents=True, exist_ok=True)

        used = [int(g) for g in self.list_generations()]
        for p in self.list_staging():
            m = _STAGING_RE.match(p.name)
            if m:
                used.append(int(m.group(1)))
        pointer = self.read_pointer()
        if pointer is not None:
            used.append(int(pointer))
        generation_id = format_generation_id(max(used, default=0) + 1)

        staging = self._gen_root / f"{STAGING_PREFIX}{generation_id}-{token.session_id}"
        staging.mkdir()
        logger.debug("generation_build_started", generation_id=generation_id, staging=str(staging))
        return BuildSession(
            generation_id=generation_id,
            staging_dir=staging,
            token=token,
            parent_generation=pointer,
        )

    def commit(
        self,
        session: BuildSession,
        *,
        units: list[UnitRow],
        chunks: list[ChunkRow],
        index: HnswIndex,
        manifest: Manifest,
        on_step: Callable[[str], None] | None = None,
    ) -> str:
        """Write the staged generation and swap the pointer to it.

        Cancellation is honoured between write steps until the pointer is
        replaced. On any failure the staging directory is removed and the
        previous generation stays current.

        Raises:
            RebuildCancelledError: cancel_event was set before the swap.
        """
        session.token.ensure_held()
        staging = session.staging_dir
        final = self.generation_dir(session.generation_id)
        renamed = False

        def step(name: str) -> None:
            if session.cancel_event.is_set():
                raise RebuildCancelledError.during(session.session_id, f"commit:{name}")
            if on_step is not None:
                on_step(name)

        try:
            step("chunks")
            write_generation_tables(
                staging / CHUNKS_DB_FILE, units, chunks, busy_timeout_ms=self._busy_timeout_ms
            )
            _fsync(staging / CHUNKS_DB_FILE)

            step("vectors")
            index.save(staging / VECTORS_FILE, staging / GRAPH_FILE)

            step("manifest")
            manifest = manifest.model_copy(
                update={
                    "generation_id": session.generation_id,
                    "checksums": {name: file_sha256(staging / name) for name in PAYLOAD_FILES},
                }
            )
            manifest_path = staging / MANIFEST_FILE
            with manifest_path.open("w", encoding="utf-8") as f:
                f.write(manifest.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            _fsync(staging)

            step("publish")
            os.rename(staging, final)
            renamed = True
            _fsync(self._gen_root)

            self._write_pointer(session.generation_id)
        except BaseException:
            target = final if renamed else staging
            shutil.rmtree(target, ignore_errors=True)
            raise

        logger.info(
            "generation_committed",
            generation_id=session.generation_id,
            parent=session.parent_generation,
            chunks=manifest.chunk_count,
            model_id=manifest.model_id,
        )
        return session.generation_id

    def abort(self, session: BuildSession) -> None:
        """Remove the staging directory of a build that will not be committed."""
        shutil.rmtree(session.staging_dir, ignore_errors=True)
        logger.debug("generation_build_aborted", generation_id=session.generation_id)

    def _write_pointer(self, generation_id: str) -> None:
        tmp = self._root / f"{CURRENT_POINTER}.tmp"
        with tmp.open("w", encoding="utf-8") as f:
            f.write(generation_id + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self._pointer)
        _fsync(self._root)

    def discard_stale(self, before: str, token: LockToken) -> list[str]:
        """Reclaim superseded, abandoned and interrupted directories.

        Keeps ``before`` and the newest ``retain_generations - 1`` complete
        generations older than it. Requires the write lock.
        """
        token.ensure_held()
        removed: list[str] = []
        pivot = int(before)

        older = [g for g in self.list_generations() if int(g) < pivot]
        complete = [g for g in older if self.is_complete(g)]
        keep = set(complete[-(self._retain - 1) :]) if self._retain > 1 else set()
        for gen in older:
            if gen not in keep:
                shutil.rmtree(self.generation_dir(gen), ignore_errors=True)
                removed.append(gen)

        for gen in self.list_generations():
            if int(gen) > pivot:
                shutil.rmtree(self.generation_dir(gen), ignore_errors=True)
                removed.append(gen)

        for staging in self.list_staging():
            shutil.rmtree(staging, ignore_errors=True)
            removed.append(staging.name)

        if removed:
            logger.info("generations_reclaimed", current=before, removed=removed)
        return removed

    def clear(self) -> None:
        """Remove the pointer and every generation. Caller holds the write lock."""
        self._pointer.unlink(missing_ok=True)
        (self._root / f"{CURRENT_POINTER}.tmp").unlink(missing_ok=True)
        shutil.rmtree(self._gen_root, ignore_errors=True)
        with self._cache_lock:
            self._cached_key = None
            self._cached = None
            self._fallback_reason = None

    # ------------------------------------------------------------------
    # Reader side
    # ------------------------------------------------------------------

    def load(self, generation_id: str) -> LoadedGeneration:
        """Load and validate one generation.

        Raises:
            FileNotFoundError: the directory disappeared (reclaimed).
            CorruptGenerationError: the generation is incomplete or inconsistent.
        """
        gen_dir = self.generation_dir(generation_id)
        if not gen_dir.is_dir():
            raise FileNotFoundError(str(gen_dir))
        try:
            manifest = read_manifest(gen_dir)
        except FileNotFoundError:
            if not gen_dir.is_dir():
                raise
            raise CorruptGenerationError.incomplete(
                generation_id, "manifest.json missing"
            ) from None
        except (OSError, ValueError, ValidationError) as e:
            raise CorruptGenerationError.incomplete(generation_id, f"bad manifest: {e}") from e

        if manifest.generation_id != generation_id:
            raise CorruptGenerationError.incomplete(
                generation_id, f"manifest names generation {manifest.generation_id}"
            )

        for name in PAYLOAD_FILES:
            path = gen_dir / name
            if not path.is_file():
                if not gen_dir.is_dir():
                    raise FileNotFoundError(str(gen_dir))
                raise CorruptGenerationError.incomplete(generation_id, f"{name} missing")
            expected = manifest.checksums.get(name)
            if expected is not None and file_sha256(path) != expected:
                raise CorruptGenerationError.incomplete(generation_id, f"{name} checksum mismatch")

        try:
            units, chunks = read_generation_tables(
                gen_dir / CHUNKS_DB_FILE, busy_timeout_ms=self._busy_timeout_ms
            )
            index = HnswIndex.load(gen_dir / VECTORS_FILE, gen_dir / GRAPH_FILE)
        except FileNotFoundError:
            raise
        except Exception as e:
            raise CorruptGenerationError.incomplete(
                generation_id, f"payload unreadable: {e}"
            ) from e

        if not (len(chunks) == len(index) == manifest.chunk_count):
            raise CorruptGenerationError.incomplete(
                generation_id,
                f"{len(chunks)} chunks, {len(index)} vectors, manifest says {manifest.chunk_count}",
            )
        ids = index.ids
        for c in chunks:
            if c.model_id != manifest.model_id:
                raise CorruptGenerationError.incomplete(
                    generation_id, f"chunk {c.chunk_id} has model {c.model_id}"
                )
            if not (0 <= c.vector_row < len(ids)) or ids[c.vector_row] != c.chunk_id:
                raise CorruptGenerationError.incomplete(
                    generation_id, f"chunk {c.chunk_id} has no matching vector"
                )

        return LoadedGeneration(
            generation_id=generation_id,
            manifest=manifest,
            units={u.unit_id: u for u in units},
            chunks={c.chunk_id: c for c in chunks},
            index=index,
        )

    def current_generation(self) -> LoadedGeneration | None:
        """Return the committed generation the pointer names, loading it on change.

        A pointer naming a corrupt generation resolves to the newest complete
        generation below it (logged; see ``inspect``). Returns None before
        the first commit.
        """
        for _attempt in range(_LOAD_ATTEMPTS):
            pointer = self.read_pointer()
            key = pointer or ""
            with self._cache_lock:
                if self._cached_key == key:
                    return self._cached

            reason: str | None = None
            if pointer is None:
                if self.pointer_exists():
                    loaded, reason = self._fallback(None)
                else:
                    loaded = None
            else:
                try:
                    loaded = self.load(pointer)
                except FileNotFoundError:
                    # Reclaimed between reading the pointer and loading; re-read
                    continue
                except CorruptGenerationError as e:
                    logger.error(
                        "generation_corrupt",
                        generation_id=pointer,
                        reason=e.details.get("reason"),
                    )
                    loaded, reason = self._fallback(pointer)

            if self.read_pointer() != pointer:
                continue

            with self._cache_lock:
                self._cached_key = key
                self._cached = loaded
                self._fallback_reason = reason
            if loaded is not None:
                logger.debug("generation_loaded", generation_id=loaded.generation_id)
            return loaded

        with self._cache_lock:
            return self._cached

    def _fallback(self, below: str | None) -> tuple[LoadedGeneration | None, str]:
        """Newest loadable generation strictly below ``below`` (any, when None)."""
        candidates = self.list_generations()
        if below is not None:
            candidates = [g for g in candidates if int(g) < int(below)]
        for gen in reversed(candidates):
            try:
                loaded = self.load(gen)
            except (FileNotFoundError, CorruptGenerationError) as e:
                logger.warning("generation_fallback_skipped", generation_id=gen, error=str(e))
                continue
            logger.warning(
                "generation_fallback", pointer=below, generation_id=gen, rebuild_required=True
            )
            return loaded, f"fell back to generation {gen}"
        return None, "no complete generation to fall back to"

    def inspect(self, *, writer_active: bool) -> RecoveryState:
        """Detect interrupted commits and pointer problems without modifying disk."""
        pointer = self.read_pointer()
        state = RecoveryState(pointer=pointer, effective_generation=pointer)

        if pointer is None and self.pointer_exists():
            state.flag("CURRENT pointer is unreadable")

        generations = self.list_generations()
        if pointer is not None and pointer not in generations:
            state.flag(f"CURRENT names missing generation {pointer}")
        elif pointer is not None and not self.is_complete(pointer):
            state.flag(f"generation {pointer} is incomplete")

        if not writer_active:
            pivot = int(pointer) if pointer is not None else 0
            newer = [g for g in generations if int(g) > pivot]
            if newer:
                state.interrupted.extend(newer)
                state.flag(f"interrupted commit left generation(s) {', '.join(newer)}")
            staging = [p.name for p in self.list_staging()]
            if staging:
                state.interrupted.extend(staging)
                state.flag("interrupted build left staging directories")

        with self._cache_lock:
            fallback_reason = self._fallback_reason
            cached = self._cached
            cached_key = self._cached_key
        if fallback_reason and cached_key == (pointer or ""):
            state.flag(fallback_reason)
            state.effective_generation = cached.generation_id if cached else None

        return state

    def recover(self, *, writer_active: bool) -> RecoveryState:
        """Resolve the effective generation on open and log what needs a rebuild."""
        loaded = self.current_generation()
        state = self.inspect(writer_active=writer_active)
        state.effective_generation = loaded.generation_id if loaded else None
        if state.rebuild_required:
            logger.warning(
                "index_rebuild_required",
                pointer=state.pointer,
                effective_generation=state.effective_generation,
                reasons=state.reasons,
            )
        return state

    def verify(self, generation_id: str | None = None) -> IntegrityReport:
        """Full integrity check of one generation (default: the pointer's)."""
        gen = generation_id or self.read_pointer()
        if gen is None:
            return IntegrityReport(generation_id=None)
        return verify_generation(self.generation_dir(gen), busy_timeout_ms=self._busy_timeout_ms)

    def read_manifest(self, generation_id: str) -> Manifest | None:
        try:
            return read_manifest(self.generation_dir(generation_id))
        except (OSError, ValueError, ValidationError):
            return None

    def describe(self) -> list[dict[str, object]]:
        """Short listing of generation directories for status output."""
        out: list[dict[str, object]] = []
        for gen in self.list_generations():
            manifest = self.read_manifest(gen)
            out.append(
                {
                    "generation_id": gen,
                    "complete": manifest is not None and self.is_complete(gen),
                    "chunk_count": manifest.chunk_count if manifest else None,
                    "created_at": manifest.created_at if manifest else None,
                    "model_id": manifest.model_id if manifest else None,
                }
            )
        return out

