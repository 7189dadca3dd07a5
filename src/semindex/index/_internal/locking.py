"""Cross-process write lock for an index root.

At most one rebuild holds ``write.lock`` at a time. Exclusion is an
advisory ``fcntl.flock`` (exclusive, non-blocking, polled until a timeout);
the kernel drops it when the holder's process exits. Holder info is kept
in the lock file and refreshed by a heartbeat thread so other processes
can report who is writing and detect a stale holder.

A lock is stale when its recorded holder is on this host, its pid is gone
and its heartbeat is older than the grace period. That can only block
acquisition when the flock itself outlived the holder (e.g. an inherited
descriptor); the lock file is then unlinked and recreated, which gives
a fresh inode to lock.

Queries never touch this lock.
"""

from __future__ import annotations

import errno
import fcntl
import json
import os
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Any
from uuid import uuid4

import structlog

from semindex.config.constants import LOCK_FILE
from semindex.core.errors import IndexBusyError, InternalError
from semindex.index.models import LockState

logger = structlog.get_logger()


@dataclass
class LockHolder:
    """Who holds (or last held) the lock."""

    pid: int
    hostname: str
    session_id: str
    acquired_at: float
    heartbeat_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "hostname": self.hostname,
            "session_id": self.session_id,
            "acquired_at": self.acquired_at,
            "heartbeat_at": self.heartbeat_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockHolder:
        return cls(
            pid=int(data["pid"]),
            hostname=str(data["hostname"]),
            session_id=str(data["session_id"]),
            acquired_at=float(data["acquired_at"]),
            heartbeat_at=float(data["heartbeat_at"]),
        )


@dataclass
class LockStatus:
    """Observed lock state with holder info (None when free)."""

    state: LockState
    holder: LockHolder | None = None
    heartbeat_age_sec: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "holder": self.holder.to_dict() if self.holder else None,
            "heartbeat_age_sec": (
                round(self.heartbeat_age_sec, 3) if self.heartbeat_age_sec is not None else None
            ),
        }


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _write_holder(fd: int, holder: LockHolder) -> None:
    """Overwrite the holder record in place.

    The file never passes through an empty or partial-JSON state: the new
    record is padded with trailing spaces to the old length, written over
    it, and only then is the file truncated.
    """
    data = json.dumps(holder.to_dict()).encode("utf-8")
    data = data.ljust(os.fstat(fd).st_size)
    os.pwrite(fd, data, 0)
    os.ftruncate(fd, len(data))


class LockToken:
    """Exclusive ownership of the write path for one rebuild session."""

    def __init__(
        self, lock: WriteLock, fd: int, holder: LockHolder, heartbeat_interval_sec: float
    ) -> None:
        self._lock = lock
        self._fd = fd
        self._holder = holder
        self._released = False
        self._mutex = threading.Lock()
        self._stop = threading.Event()
        self._heartbeat = threading.Thread(
            target=self._beat,
            args=(heartbeat_interval_sec,),
            name="semindex-lock-heartbeat",
            daemon=True,
        )
        self._heartbeat.start()

    @property
    def session_id(self) -> str:
        return self._holder.session_id

    @property
    def holder(self) -> LockHolder:
        return self._holder

    @property
    def lock_path(self) -> Path:
        return self._lock.path

    @property
    def is_held(self) -> bool:
        return not self._released

    def ensure_held(self) -> None:
        if self._released:
            raise InternalError.unexpected(
                "write lock token already released", session_id=self.session_id
            )

    def release(self) -> None:
        """Release the lock. Safe to call more than once."""
        with self._mutex:
            if self._released:
                return
            self._released = True
            self._stop.set()
        if self._heartbeat is not threading.current_thread():
            self._heartbeat.join(timeout=5.0)
        try:
            os.ftruncate(self._fd, 0)
        except OSError:
            logger.debug("write_lock_clear_failed", path=str(self._lock.path), exc_info=True)
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
        logger.debug("write_lock_released", session_id=self.session_id)

    def _beat(self, interval: float) -> None:
        while not self._stop.wait(interval):
            with self._mutex:
                if self._released:
                    return
                self._holder.heartbeat_at = time.time()
                try:
                    _write_holder(self._fd, self._holder)
                except OSError as e:
                    logger.warning("write_lock_heartbeat_failed", error=str(e))

    def __enter__(self) -> LockToken:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()


class WriteLock:
    """flock-based write lock on ``<root>/write.lock``."""

    def __init__(
        self,
        root: Path,
        *,
        heartbeat_interval_sec: float = 5.0,
        stale_grace_sec: float = 30.0,
        poll_interval_sec: float = 0.05,
    ) -> None:
        self._root = root
        self._path = root / LOCK_FILE
        self._heartbeat_interval = heartbeat_interval_sec
        self._stale_grace = stale_grace_sec
        self._poll_interval = poll_interval_sec

    @property
    def path(self) -> Path:
        return self._path

    def acquire(self, timeout: float = 0.0, *, session_id: str | None = None) -> LockToken:
        """Acquire the lock, polling for up to ``timeout`` seconds.

        Raises:
            IndexBusyError: the lock is held by a live holder after the timeout.
        """
        self._root.mkdir(parents=True, exist_ok=True)
        sid = session_id or uuid4().hex[:12]
        deadline = time.monotonic() + max(0.0, timeout)

        while True:
            fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as e:
                os.close(fd)
                if e.errno not in (errno.EWOULDBLOCK, errno.EAGAIN, errno.EACCES):
                    raise
                holder = self._read_holder()
                if holder is not None and self._is_reclaimable(holder):
                    logger.warning("write_lock_stale_reclaimed", **holder.to_dict())
                    self._path.unlink(missing_ok=True)
                    continue
                if time.monotonic() >= deadline:
                    raise IndexBusyError.held(
                        str(self._path), holder.to_dict() if holder else None
                    ) from None
                time.sleep(self._poll_interval)
                continue

            # The path may have been unlinked and recreated between open and flock
            if not self._still_current(fd):
                os.close(fd)
                continue

            previous = self._read_holder()
            if previous is not None and previous.pid != os.getpid():
                logger.info(
                    "write_lock_previous_holder_gone",
                    pid=previous.pid,
                    session_id=previous.session_id,
                )

            now = time.time()
            holder = LockHolder(
                pid=os.getpid(),
                hostname=socket.gethostname(),
                session_id=sid,
                acquired_at=now,
                heartbeat_at=now,
            )
            try:
                _write_holder(fd, holder)
            except OSError:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
                raise
            logger.debug("write_lock_acquired", session_id=sid, path=str(self._path))
            return LockToken(self, fd, holder, self._heartbeat_interval)

    def state(self) -> LockStatus:
        """Report free/held/stale from the holder record, without locking."""
        holder = self._read_holder()
        if holder is None:
            return LockStatus(LockState.FREE)
        age = max(0.0, time.time() - holder.heartbeat_at)
        on_this_host = holder.hostname == socket.gethostname()
        if (on_this_host and not _pid_alive(holder.pid)) or age > self._stale_grace:
            return LockStatus(LockState.STALE, holder, age)
        return LockStatus(LockState.HELD, holder, age)

    def writer_active(self) -> bool:
        return self.state().state == LockState.HELD

    def _is_reclaimable(self, holder: LockHolder) -> bool:
        if holder.hostname != socket.gethostname() or _pid_alive(holder.pid):
            return False
        return time.time() - holder.heartbeat_at > self._stale_grace

    def _still_current(self, fd: int) -> bool:
        try:
            st_path = os.stat(self._path)
        except FileNotFoundError:
            return False
        st_fd = os.fstat(fd)
        return (st_fd.st_dev, st_fd.st_ino) == (st_path.st_dev, st_path.st_ino)

    def _read_holder(self) -> LockHolder | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        if not raw.strip():
            return None
        try:
            return LockHolder.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.debug("write_lock_holder_unreadable", path=str(self._path))
            return None
