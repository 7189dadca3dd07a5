"""Tests for the background rebuilder."""

import threading
from collections.abc import Callable, Iterator
from unittest.mock import MagicMock

import pytest

from semindex.core.errors import IndexBusyError, InternalError, RebuildCancelledError
from semindex.daemon.rebuilder import BackgroundRebuilder, RebuilderState
from semindex.index.models import BuildMode, RebuildState, UnitInput
from semindex.index.ops import SemanticIndex

UNITS = [
    UnitInput.from_text("add.txt", "add two numbers"),
    UnitInput.from_text("sub.txt", "subtract two numbers"),
]


class TestBackgroundRebuilder:
    """Tests for BackgroundRebuilder."""

    def test_given_rebuilder_when_start_then_state_is_idle(self) -> None:
        """Rebuilder starts in idle state."""
        # Given
        rebuilder = BackgroundRebuilder(index=MagicMock())

        # When
        rebuilder.start()

        # Then
        assert rebuilder.status.state == RebuilderState.IDLE
        assert rebuilder.status.session_id is None

        # Cleanup
        rebuilder.stop()

    def test_given_stopped_rebuilder_when_submit_then_raises(self) -> None:
        """A stopped rebuilder refuses new work."""
        # Given
        rebuilder = BackgroundRebuilder(index=MagicMock())
        rebuilder.start()
        rebuilder.stop()

        # When / Then
        with pytest.raises(InternalError):
            rebuilder.submit(UNITS)
        assert rebuilder.status.state == RebuilderState.STOPPED

    def test_given_units_when_submit_then_generation_committed(
        self, open_index: Callable[..., SemanticIndex]
    ) -> None:
        """A submitted rebuild commits on the worker thread."""
        # Given
        index = open_index()

        # When
        result = index.start_rebuild(UNITS).result(timeout=30)

        # Then
        assert result.generation_id == "00000001"
        status = index.rebuilder.status
        assert status.state == RebuilderState.IDLE
        assert status.session_state == RebuildState.IDLE
        assert status.last_result == result
        assert index.query("addition", min_confidence=0).hits

    def test_given_factory_when_submit_then_called_on_worker(
        self, open_index: Callable[..., SemanticIndex]
    ) -> None:
        """A units factory is evaluated by the worker, not the caller."""
        # Given
        index = open_index()
        threads: list[str] = []

        def factory() -> list[UnitInput]:
            threads.append(threading.current_thread().name)
            return UNITS

        # When
        index.start_rebuild(factory).result(timeout=30)

        # Then
        assert threads and threads[0].startswith("semindex-rebuilder")

    def test_given_running_session_when_submit_again_then_rejected(
        self, open_index: Callable[..., SemanticIndex]
    ) -> None:
        """A second submit while one is in flight is rejected, not queued."""
        # Given
        index = open_index()
        inside = threading.Event()
        release = threading.Event()

        def slow() -> Iterator[UnitInput]:
            inside.set()
            release.wait(10)
            yield from UNITS

        future = index.start_rebuild(slow)
        assert inside.wait(10)

        # When / Then
        try:
            with pytest.raises(IndexBusyError):
                index.start_rebuild(UNITS)
        finally:
            release.set()
        assert future.result(timeout=30).generation_id == "00000001"

    def test_given_running_session_when_cancel_then_aborted(
        self, open_index: Callable[..., SemanticIndex]
    ) -> None:
        """Cancel aborts the in-flight session and keeps the previous generation."""
        # Given
        index = open_index()
        index.rebuild(UNITS)
        inside = threading.Event()
        release = threading.Event()

        def slow() -> Iterator[UnitInput]:
            inside.set()
            release.wait(10)
            yield from UNITS

        future = index.start_rebuild(slow, BuildMode.FULL)
        assert inside.wait(10)

        # When
        cancelled = index.rebuilder.cancel()
        release.set()

        # Then
        assert cancelled
        with pytest.raises(RebuildCancelledError):
            future.result(timeout=30)
        assert index.store.read_pointer() == "00000001"
        assert index.rebuilder.status.last_error is not None
        assert index.rebuilder.status.session_state == RebuildState.IDLE

    def test_given_idle_rebuilder_when_cancel_then_false(
        self, open_index: Callable[..., SemanticIndex]
    ) -> None:
        """Cancel with nothing running is a no-op."""
        index = open_index()
        assert not index.rebuilder.cancel()
        assert index.rebuilder.wait() is None

    def test_given_submitted_session_when_wait_then_returns_result(
        self, open_index: Callable[..., SemanticIndex]
    ) -> None:
        """wait() blocks until the session finishes."""
        # Given
        index = open_index()
        index.start_rebuild(UNITS)

        # When
        result = index.rebuilder.wait(timeout=30)

        # Then
        assert result is not None
        assert result.stats.chunks_total == 2

    def test_given_failed_session_when_submit_again_then_accepted(
        self, open_index: Callable[..., SemanticIndex]
    ) -> None:
        """A finished session, even a failed one, frees the rebuilder."""
        # Given
        index = open_index()

        def broken() -> list[UnitInput]:
            raise RuntimeError("source unavailable")

        with pytest.raises(RuntimeError):
            index.start_rebuild(broken).result(timeout=30)

        # When
        result = index.start_rebuild(UNITS).result(timeout=30)

        # Then
        assert result.generation_id == "00000001"
        assert index.rebuilder.status.last_error is None
