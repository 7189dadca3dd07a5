"""Tests for the cross-process write lock."""

from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
import time
from collections.abc import Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from semindex.core.errors import IndexBusyError, InternalError
from semindex.index._internal import locking
from semindex.index._internal.locking import WriteLock
from semindex.index.models import LockState

SRC_DIR = Path(__file__).resolve().parents[3] / "src"

HOLDER_SCRIPT = """
import sys
from pathlib import Path
from semindex.index._internal.locking import WriteLock

token = WriteLock(Path(sys.argv[1]), heartbeat_interval_sec=0.1).acquire(session_id="child")
print("ready", flush=True)
sys.stdin.readline()
token.release()
"""


@pytest.fixture
def holder_process(tmp_path: Path) -> Iterator[subprocess.Popen[str]]:
    """A separate process holding the write lock on tmp_path until stdin closes."""
    env = dict(os.environ, PYTHONPATH=os.pathsep.join([str(SRC_DIR), *sys.path]))
    proc = subprocess.Popen(
        [sys.executable, "-c", HOLDER_SCRIPT, str(tmp_path)],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        text=True,
        env=env,
    )
    assert proc.stdout is not None
    assert proc.stdout.readline().strip() == "ready"
    yield proc
    if proc.poll() is None:
        proc.kill()
    proc.wait(30)


class TestAcquireRelease:
    """Single-process behaviour."""

    def test_acquire_writes_holder(self, tmp_path: Path) -> None:
        lock = WriteLock(tmp_path)

        with lock.acquire(session_id="s1") as token:
            status = lock.state()
            assert token.is_held
            assert status.state == LockState.HELD
            assert status.holder is not None
            assert status.holder.session_id == "s1"
            assert status.holder.pid == os.getpid()

        assert not token.is_held
        assert lock.state().state == LockState.FREE

    def test_second_acquire_is_busy(self, tmp_path: Path) -> None:
        lock = WriteLock(tmp_path)
        with lock.acquire(session_id="first"):
            with pytest.raises(IndexBusyError) as exc_info:
                WriteLock(tmp_path).acquire(0.0)
            assert exc_info.value.details["holder"]["session_id"] == "first"

    def test_timeout_waits_for_release(self, tmp_path: Path) -> None:
        lock = WriteLock(tmp_path, poll_interval_sec=0.01)
        token = lock.acquire()
        start = time.monotonic()

        with pytest.raises(IndexBusyError):
            lock.acquire(0.2)

        assert time.monotonic() - start >= 0.2
        token.release()
        lock.acquire(0.0).release()

    def test_release_is_idempotent(self, tmp_path: Path) -> None:
        token = WriteLock(tmp_path).acquire()
        token.release()
        token.release()
        with pytest.raises(InternalError):
            token.ensure_held()

    def test_heartbeat_refreshes_holder(self, tmp_path: Path) -> None:
        lock = WriteLock(tmp_path, heartbeat_interval_sec=0.05)
        with lock.acquire() as token:
            first = token.holder.acquired_at
            time.sleep(0.3)
            status = lock.state()
            assert status.holder is not None
            assert status.holder.heartbeat_at > first

    def test_rewrite_never_exposes_a_free_record(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        lock = WriteLock(tmp_path, heartbeat_interval_sec=60)
        seen: list[tuple[LockState, str | None]] = []
        real_pwrite, real_ftruncate = os.pwrite, os.ftruncate

        def observe() -> None:
            status = lock.state()
            seen.append((status.state, status.holder.session_id if status.holder else None))

        def observing_pwrite(fd: int, data: bytes, offset: int) -> int:
            observe()
            return real_pwrite(fd, data, offset)

        def observing_ftruncate(fd: int, length: int) -> None:
            observe()
            real_ftruncate(fd, length)

        with lock.acquire(session_id="long-session-name") as token:
            # A shorter record than the one on disk
            shorter = replace(token.holder, session_id="s", heartbeat_at=time.time())
            fd = os.open(lock.path, os.O_RDWR)
            try:
                with monkeypatch.context() as m:
                    m.setattr(locking.os, "pwrite", observing_pwrite)
                    m.setattr(locking.os, "ftruncate", observing_ftruncate)
                    locking._write_holder(fd, shorter)
            finally:
                os.close(fd)

            assert seen == [(LockState.HELD, "long-session-name"), (LockState.HELD, "s")]
            assert json.loads(lock.path.read_text())["session_id"] == "s"


class TestStaleness:
    """Stale holder records."""

    def _write_record(self, root: Path, *, pid: int, age: float) -> None:
        now = time.time()
        (root / "write.lock").write_text(
            json.dumps(
                {
                    "pid": pid,
                    "hostname": socket.gethostname(),
                    "session_id": "dead",
                    "acquired_at": now - age,
                    "heartbeat_at": now - age,
                }
            )
        )

    def test_dead_holder_reported_stale(self, tmp_path: Path) -> None:
        self._write_record(tmp_path, pid=2**22 + 12345, age=100)

        assert WriteLock(tmp_path, stale_grace_sec=30).state().state == LockState.STALE

    def test_record_without_flock_does_not_block(self, tmp_path: Path) -> None:
        self._write_record(tmp_path, pid=2**22 + 12345, age=1)

        with WriteLock(tmp_path).acquire(0.0) as token:
            assert token.holder.pid == os.getpid()

    def test_old_heartbeat_reported_stale(self, tmp_path: Path) -> None:
        self._write_record(tmp_path, pid=os.getpid(), age=100)

        assert WriteLock(tmp_path, stale_grace_sec=30).state().state == LockState.STALE

    def test_empty_file_is_free(self, tmp_path: Path) -> None:
        (tmp_path / "write.lock").write_text("")
        assert WriteLock(tmp_path).state().state == LockState.FREE
        assert not WriteLock(tmp_path).writer_active()


class TestCrossProcess:
    """Exclusion between processes."""

    def test_other_process_holding_lock_rejects(
        self, tmp_path: Path, holder_process: subprocess.Popen[str]
    ) -> None:
        lock = WriteLock(tmp_path)

        with pytest.raises(IndexBusyError) as exc_info:
            lock.acquire(0.0)
        assert exc_info.value.details["holder"]["pid"] == holder_process.pid
        assert lock.writer_active()

        assert holder_process.stdin is not None
        holder_process.stdin.close()
        holder_process.wait(30)
        with WriteLock(tmp_path).acquire(1.0):
            pass

    def test_killed_holder_releases_lock(
        self, tmp_path: Path, holder_process: subprocess.Popen[str]
    ) -> None:
        holder_process.kill()
        holder_process.wait(30)

        lock = WriteLock(tmp_path)
        assert lock.state().state == LockState.STALE
        with lock.acquire(1.0) as token:
            assert token.holder.pid == os.getpid()
