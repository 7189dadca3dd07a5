"""Background rebuilder using a single-worker thread pool."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from semindex.core.errors import IndexBusyError, InternalError, SemIndexError
from semindex.index.models import (
    BuildMode,
    RebuildEvent,
    RebuildResult,
    RebuildState,
    UnitInput,
)

if TYPE_CHECKING:
    from semindex.index._internal.session import RebuildSession
    from semindex.index.ops import SemanticIndex

logger = structlog.get_logger()


class RebuilderState(Enum):
    """Background rebuilder state."""

    IDLE = "idle"
    REBUILDING = "rebuilding"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class RebuilderStatus:
    """Current rebuilder status."""

    state: RebuilderState
    session_id: str | None = None
    session_state: RebuildState | None = None
    last_result: RebuildResult | None = None
    last_error: str | None = None


@dataclass
class BackgroundRebuilder:
    """
    Runs rebuild sessions off the caller's thread.

    Design:
    - One worker thread: at most one session per process at a time
    - The write lock still arbitrates between processes
    - A submit while a session is in flight is rejected, never queued
    - cancel() is honoured between embedding batches and commit steps
    """

    index: SemanticIndex
    max_workers: int = 1

    _state: RebuilderState = field(default=RebuilderState.IDLE, init=False)
    _executor: ThreadPoolExecutor | None = field(default=None, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)
    _session: RebuildSession | None = field(default=None, init=False)
    _future: Future[RebuildResult] | None = field(default=None, init=False)
    _last_result: RebuildResult | None = field(default=None, init=False)
    _last_error: str | None = field(default=None, init=False)

    def start(self) -> None:
        """Start the worker pool."""
        if self._executor is not None:
            return
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix="semindex-rebuilder",
        )
        self._state = RebuilderState.IDLE
        logger.info("background_rebuilder_started", root=str(self.index.root))

    def stop(self, *, cancel: bool = False) -> None:
        """Stop the worker, optionally cancelling the in-flight session first."""
        with self._lock:
            self._state = RebuilderState.STOPPING
            session = self._session
        if cancel and session is not None:
            session.cancel()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._state = RebuilderState.STOPPED
        logger.info("background_rebuilder_stopped")

    def submit(
        self,
        units: Iterable[UnitInput] | Callable[[], Iterable[UnitInput]],
        mode: BuildMode = BuildMode.INCREMENTAL,
        *,
        on_event: Callable[[RebuildEvent], None] | None = None,
    ) -> Future[RebuildResult]:
        """Schedule one rebuild. ``units`` may be a factory, called on the worker.

        Raises:
            IndexBusyError: a session submitted here has not finished yet.
            InternalError: the rebuilder is stopped.
        """
        with self._lock:
            if self._executor is None or self._state in (
                RebuilderState.STOPPING,
                RebuilderState.STOPPED,
            ):
                raise InternalError.unexpected("background rebuilder is not running")
            if self._future is not None and not self._future.done():
                holder = self._session.session_id if self._session else None
                raise IndexBusyError.held(
                    str(self.index.write_lock.path), {"session_id": holder}
                )
            session = self.index.new_session(on_event=on_event)
            self._session = session
            self._state = RebuilderState.REBUILDING
            future = self._executor.submit(self._run_sync, session, units, mode)
            self._future = future
        logger.debug("rebuild_submitted", session_id=session.session_id, mode=mode.value)
        return future

    def cancel(self) -> bool:
        """Cancel the in-flight session. Returns False when nothing is running."""
        with self._lock:
            session = self._session
            running = self._future is not None and not self._future.done()
        if session is None or not running:
            return False
        session.cancel()
        return True

    def wait(self, timeout: float | None = None) -> RebuildResult | None:
        """Block until the current session finishes; re-raises its error."""
        with self._lock:
            future = self._future
        if future is None:
            return None
        return future.result(timeout=timeout)

    def _run_sync(
        self,
        session: RebuildSession,
        units: Iterable[UnitInput] | Callable[[], Iterable[UnitInput]],
        mode: BuildMode,
    ) -> RebuildResult:
        """Synchronous rebuild - runs in the worker thread."""
        try:
            source = units() if callable(units) else units
            result = session.run(source, mode)
        except SemIndexError as e:
            self._last_error = e.message
            logger.error("background_rebuild_failed", error=e.error_name, message=e.message)
            raise
        except Exception as e:
            self._last_error = str(e)
            logger.error("background_rebuild_failed", error=str(e))
            raise
        else:
            self._last_result = result
            self._last_error = None
            self.index.recovery = None
            return result
        finally:
            with self._lock:
                if self._state == RebuilderState.REBUILDING:
                    self._state = RebuilderState.IDLE

    @property
    def status(self) -> RebuilderStatus:
        """Get current rebuilder status."""
        with self._lock:
            session = self._session
            state = self._state
        return RebuilderStatus(
            state=state,
            session_id=session.session_id if session else None,
            session_state=session.state if session else None,
            last_result=self._last_result,
            last_error=self._last_error,
        )
