"""Tests for the rebuild session state machine and incremental reuse."""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence

import numpy as np
import pytest

from semindex.core.errors import (
    EmbeddingBackendDownError,
    IndexBusyError,
    InternalError,
    RebuildCancelledError,
)
from semindex.index.models import BuildMode, RebuildEvent, RebuildState, UnitInput, UnitKind
from semindex.index.ops import SemanticIndex

ADD = UnitInput.from_text("add.txt", "add two numbers", revision="r1")
SUB = UnitInput.from_text("sub.txt", "subtract two numbers", revision="r1")
GOOD = UnitInput.from_text("a.txt", "good text", revision="r1")
POISON = UnitInput.from_text("b.txt", "poison text", revision="r1")


class PoisonedBackend:
    """Wraps a backend and fails any batch containing "poison" while ``failing``."""

    def __init__(self, inner: object) -> None:
        self._inner = inner
        self.failing = True

    @property
    def model_id(self) -> str:
        return self._inner.model_id  # type: ignore[attr-defined,no-any-return]

    @property
    def dim(self) -> int:
        return self._inner.dim  # type: ignore[attr-defined,no-any-return]

    def embed(self, texts: Sequence[str]) -> list[np.ndarray]:
        if self.failing and any("poison" in t for t in texts):
            raise RuntimeError("cannot embed")
        return self._inner.embed(texts)  # type: ignore[attr-defined,no-any-return]


def _states(session_history: list) -> list[RebuildState]:
    return [change.state for change in session_history]


class TestStateMachine:
    """Transitions recorded by a session."""

    def test_successful_run(self, open_index: Callable[..., SemanticIndex]) -> None:
        session = open_index().new_session()

        session.run([ADD, SUB])

        assert _states(session.history) == [
            RebuildState.IDLE,
            RebuildState.LOCK_ACQUIRING,
            RebuildState.BUILDING,
            RebuildState.COMMITTING,
            RebuildState.IDLE,
        ]
        assert session.state == RebuildState.IDLE

    def test_rejected_when_lock_held(self, open_index: Callable[..., SemanticIndex]) -> None:
        index = open_index()
        session = index.new_session(lock_timeout_sec=0.0)

        with index.write_lock.acquire(session_id="other"):
            with pytest.raises(IndexBusyError):
                session.run([ADD])

        assert session.state == RebuildState.REJECTED
        assert index.store.read_pointer() is None
        assert index.analytics.events()[-1]["outcome"] == "rejected"

    def test_session_runs_once(self, open_index: Callable[..., SemanticIndex]) -> None:
        session = open_index().new_session()
        session.run([ADD])

        with pytest.raises(InternalError):
            session.run([ADD])

    def test_cancel_before_run_aborts(self, open_index: Callable[..., SemanticIndex]) -> None:
        index = open_index()
        session = index.new_session()
        session.cancel()

        with pytest.raises(RebuildCancelledError):
            session.run([ADD])

        assert _states(session.history)[-2:] == [RebuildState.ABORTED, RebuildState.IDLE]
        assert index.store.read_pointer() is None
        assert index.store.list_staging() == []
        assert not index.write_lock.writer_active()

    def test_cancel_during_embedding_keeps_previous(
        self, open_index: Callable[..., SemanticIndex]
    ) -> None:
        index = open_index(embedding__batch_size=1)
        index.rebuild([ADD])
        session_holder: dict[str, object] = {}

        def on_event(event: RebuildEvent) -> None:
            if event.kind == "progress" and event.chunks_done >= 1:
                session_holder["session"].cancel()  # type: ignore[attr-defined]

        session = index.new_session(on_event=on_event)
        session_holder["session"] = session
        units = [UnitInput.from_text(f"n{i}.txt", f"note {i} rain") for i in range(6)]

        with pytest.raises(RebuildCancelledError):
            session.run(units, BuildMode.FULL)

        assert index.store.read_pointer() == "00000001"
        assert index.store.list_generations() == ["00000001"]
        assert RebuildState.ABORTED in _states(session.history)

    def test_backend_down_aborts(
        self, open_index: Callable[..., SemanticIndex], keyword_backend_cls: type
    ) -> None:
        class BrokenBackend(keyword_backend_cls):  # type: ignore[misc, valid-type]
            def embed(self, texts):  # type: ignore[no-untyped-def]
                raise RuntimeError("backend offline")

        index = open_index(
            backend=BrokenBackend(),
            embedding__max_retries=0,
            embedding__max_consecutive_failures=2,
        )
        session = index.new_session()

        with pytest.raises(EmbeddingBackendDownError):
            session.run([ADD, SUB, UnitInput.from_text("c.txt", "sum")])

        assert session.state == RebuildState.IDLE
        assert RebuildState.ABORTED in _states(session.history)
        assert index.store.read_pointer() is None

    def test_concurrent_second_rebuild_rejected(
        self, open_index: Callable[..., SemanticIndex]
    ) -> None:
        index = open_index()
        inside = threading.Event()
        release = threading.Event()

        def slow_units():  # type: ignore[no-untyped-def]
            inside.set()
            release.wait(10)
            yield ADD

        worker = threading.Thread(target=lambda: index.rebuild(slow_units()))
        worker.start()
        try:
            assert inside.wait(10)
            with pytest.raises(IndexBusyError):
                open_index().rebuild([SUB], lock_timeout_sec=0.0)
        finally:
            release.set()
            worker.join(10)

        assert index.store.read_pointer() == "00000001"


class TestEvents:
    def test_event_sequence(self, open_index: Callable[..., SemanticIndex]) -> None:
        events: list[RebuildEvent] = []

        result = open_index().rebuild([ADD, SUB], on_event=events.append)

        kinds = [e.kind for e in events]
        assert kinds[0] == "started"
        assert kinds[-1] == "completed"
        assert events[-1].generation_id == result.generation_id
        assert any(e.message == "commit:publish" for e in events)
        assert {e.session_id for e in events} == {result.session_id}


class TestIncremental:
    """Reuse of work from the current generation."""

    def test_unchanged_units_not_read_or_embedded(
        self, open_index: Callable[..., SemanticIndex], keyword_backend
    ) -> None:
        index = open_index()
        index.rebuild([ADD, SUB])
        keyword_backend.calls.clear()

        def never_read() -> str:
            raise AssertionError("unchanged unit was read")

        unchanged = UnitInput(unit=ADD.unit, read=never_read)
        result = index.rebuild([unchanged, SUB])

        assert keyword_backend.calls == []
        assert result.stats.mode == BuildMode.INCREMENTAL
        assert result.stats.reused_chunks == 2
        assert result.stats.new_chunks == 0
        assert result.stats.units_changed == 0

    def test_changed_unit_reembedded(
        self, open_index: Callable[..., SemanticIndex], keyword_backend
    ) -> None:
        index = open_index()
        index.rebuild([ADD, SUB])
        keyword_backend.calls.clear()

        changed = UnitInput.from_text("sub.txt", "multiply two numbers", revision="r2")
        result = index.rebuild([ADD, changed])

        assert keyword_backend.embedded_texts == ["multiply two numbers"]
        assert result.stats.units_changed == 1
        assert result.stats.new_chunks == 1
        hits = index.query("product", min_confidence=0).hits
        assert hits[0].unit_id == "sub.txt"

    def test_known_content_hash_reuses_vector(
        self, open_index: Callable[..., SemanticIndex], keyword_backend
    ) -> None:
        index = open_index()
        index.rebuild([ADD])
        keyword_backend.calls.clear()

        copy = UnitInput.from_text("copy-of-add.txt", "add two numbers")
        result = index.rebuild([ADD, copy])

        assert keyword_backend.calls == []
        assert result.stats.units_changed == 1
        assert result.stats.reused_chunks == 2
        generation = index.store.current_generation()
        assert generation is not None
        assert len(generation.chunks_for_unit("copy-of-add.txt")) == 1

    def test_removed_units_dropped(self, open_index: Callable[..., SemanticIndex]) -> None:
        index = open_index()
        index.rebuild([ADD, SUB])

        result = index.rebuild([ADD])

        assert result.stats.units_removed == 1
        generation = index.store.current_generation()
        assert generation is not None
        assert set(generation.units) == {"add.txt"}

    def test_kind_change_is_a_change(self, open_index: Callable[..., SemanticIndex]) -> None:
        index = open_index()
        index.rebuild([ADD])

        as_note = UnitInput.from_text(
            "add.txt", "add two numbers", revision="r1", kind=UnitKind.NOTE
        )
        result = index.rebuild([as_note])

        assert result.stats.units_changed == 1
        generation = index.store.current_generation()
        assert generation is not None
        assert generation.units["add.txt"].kind == "note"

    def test_same_input_gives_same_chunk_ids(
        self, open_index: Callable[..., SemanticIndex]
    ) -> None:
        index = open_index()
        index.rebuild([ADD, SUB])
        first = index.store.current_generation()

        index.rebuild([ADD, SUB], BuildMode.FULL)
        second = index.store.current_generation()

        assert first is not None and second is not None
        assert second.generation_id != first.generation_id
        assert set(first.chunks) == set(second.chunks)

    def test_duplicate_unit_ids_ignored(self, open_index: Callable[..., SemanticIndex]) -> None:
        result = open_index().rebuild([ADD, ADD])
        assert result.stats.units_total == 1

    def test_unreadable_unit_skipped(self, open_index: Callable[..., SemanticIndex]) -> None:
        def broken() -> str:
            raise OSError("gone")

        missing = UnitInput(unit=SUB.unit, read=broken)
        result = open_index().rebuild([ADD, missing])

        assert result.stats.units_total == 1
        assert result.stats.chunks_total == 1


class TestUpgradeToFull:
    """Incremental requests become full builds when reuse would mix models or policies."""

    def test_model_change(
        self,
        open_index: Callable[..., SemanticIndex],
        keyword_backend_cls: type,
    ) -> None:
        open_index().rebuild([ADD, SUB])
        backend = keyword_backend_cls(model_id="keyword-test-v2")
        index = open_index(backend=backend)

        result = index.rebuild([ADD, SUB], BuildMode.INCREMENTAL)

        assert result.stats.mode == BuildMode.FULL
        assert result.stats.reused_chunks == 0
        assert len(backend.embedded_texts) == 2
        generation = index.store.current_generation()
        assert generation is not None
        assert {row.model_id for row in generation.chunks.values()} == {"keyword-test-v2"}
        assert index.query("addition", min_confidence=0).hits

    def test_chunking_change(self, open_index: Callable[..., SemanticIndex]) -> None:
        open_index().rebuild([ADD])

        result = open_index(chunking__max_chars=64).rebuild([ADD])

        assert result.stats.mode == BuildMode.FULL

    def test_first_build_is_full(self, open_index: Callable[..., SemanticIndex]) -> None:
        assert open_index().rebuild([ADD]).stats.mode == BuildMode.FULL


class TestDegradedRebuild:
    """Chunks that fail to embed are left out and retried by later rebuilds."""

    def test_failing_chunk_left_out(
        self, open_index: Callable[..., SemanticIndex], keyword_backend
    ) -> None:
        # Given a backend that cannot embed one of two units
        index = open_index(backend=PoisonedBackend(keyword_backend))

        # When rebuilding
        result = index.rebuild([GOOD, POISON])

        # Then the generation commits without that chunk and stays consistent
        assert result.stats.skipped_chunks == 1
        assert [s.unit_id for s in result.skipped] == ["b.txt"]
        generation = index.store.current_generation()
        assert generation is not None
        assert generation.manifest.skipped_chunks == 1
        assert {row.unit_id for row in generation.chunks.values()} == {"a.txt"}
        assert generation.units["b.txt"].skipped_chunks == 1
        assert generation.units["b.txt"].chunk_count == 0
        assert index.verify().passed

    def test_skipped_chunks_retried_on_incremental(
        self, open_index: Callable[..., SemanticIndex], keyword_backend
    ) -> None:
        # Given a generation missing b.txt's chunk
        backend = PoisonedBackend(keyword_backend)
        index = open_index(backend=backend)
        index.rebuild([GOOD, POISON])
        backend.failing = False
        keyword_backend.calls.clear()

        # When an incremental rebuild sees the same revisions
        result = index.rebuild([GOOD, POISON], BuildMode.INCREMENTAL)

        # Then only the missing chunk is embedded
        assert keyword_backend.embedded_texts == ["poison text"]
        assert result.stats.mode == BuildMode.INCREMENTAL
        assert result.stats.units_retried == 1
        assert result.stats.units_changed == 0
        assert result.stats.new_chunks == 1
        assert result.stats.skipped_chunks == 0
        generation = index.store.current_generation()
        assert generation is not None
        assert {row.unit_id for row in generation.chunks.values()} == {"a.txt", "b.txt"}
        assert generation.units["b.txt"].skipped_chunks == 0
        assert generation.manifest.skipped_chunks == 0
        assert index.verify().passed

    def test_still_failing_chunk_stays_reported(
        self, open_index: Callable[..., SemanticIndex], keyword_backend
    ) -> None:
        index = open_index(backend=PoisonedBackend(keyword_backend))
        index.rebuild([GOOD, POISON])

        result = index.rebuild([GOOD, POISON], BuildMode.INCREMENTAL)

        assert result.stats.units_retried == 1
        assert result.stats.skipped_chunks == 1
        generation = index.store.current_generation()
        assert generation is not None
        assert generation.manifest.skipped_chunks == 1
        assert generation.units["b.txt"].skipped_chunks == 1
