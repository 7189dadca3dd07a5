"""SQLite access for a generation's chunk tables.

This module provides:
- Database: engine wrapper with durable pragmas and busy-retry
- BulkWriter: Core SQL bulk inserts, bypassing ORM overhead

A generation's chunks.db is written once inside the staging directory and
then only read. Rollback-journal mode (no WAL) keeps the database a single
file, so renaming the generation directory and later deleting it needs no
checkpoint and leaves no sidecar files behind.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine, select

from semindex.index.models import ChunkRow, UnitRow

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = structlog.get_logger()

T = TypeVar("T")

# Retry configuration for SQLite busy handling
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 0.1  # 100ms base
DEFAULT_RETRY_MAX_DELAY = 2.0  # 2s max

_GENERATION_TABLES = [UnitRow.__table__, ChunkRow.__table__]  # type: ignore[attr-defined]


def _is_database_locked_error(error: Exception) -> bool:
    """Check if error is a SQLite database locked error."""
    error_str = str(error).lower()
    return "database is locked" in error_str or "database is busy" in error_str


class Database:
    """SQLite connection manager for one chunks.db file.

    Includes retry logic with exponential backoff for handling
    SQLite busy timeouts.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        read_only: bool = False,
        busy_timeout_ms: int = 30000,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY,
    ) -> None:
        self.db_path = db_path
        self.read_only = read_only
        self._busy_timeout_ms = busy_timeout_ms
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self.engine = self._create_engine()

    def _create_engine(self) -> Engine:
        if self.read_only:
            url = f"sqlite:///file:{self.db_path}?mode=ro&uri=true"
        else:
            url = f"sqlite:///{self.db_path}"
        engine = create_engine(url, connect_args={"check_same_thread": False})
        busy_timeout_ms = self._busy_timeout_ms
        read_only = self.read_only

        def _on_connect(dbapi_conn: Any, _connection_record: Any) -> None:
            _configure_pragmas(dbapi_conn, busy_timeout_ms=busy_timeout_ms, read_only=read_only)

        event.listen(engine, "connect", _on_connect)
        return engine

    def create_all(self) -> None:
        """Create the generation tables."""
        SQLModel.metadata.create_all(self.engine, tables=_GENERATION_TABLES)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """ORM session for reads."""
        with Session(self.engine) as session:
            yield session

    def with_retry(self, fn: Callable[[], T]) -> T:
        """Run ``fn``, retrying with exponential backoff while the database is busy."""
        for attempt in range(self._max_retries + 1):
            try:
                return fn()
            except OperationalError as e:
                if not _is_database_locked_error(e) or attempt >= self._max_retries:
                    raise
                delay = min(self._retry_base_delay * (2**attempt), self._retry_max_delay)
                logger.warning(
                    "sqlite_busy_retry",
                    attempt=attempt + 1,
                    max_retries=self._max_retries,
                    delay_sec=delay,
                )
                time.sleep(delay)
        raise AssertionError("unreachable")

    @contextmanager
    def bulk_writer(self) -> Generator[BulkWriter, None, None]:
        """
        Bulk writer for high-volume inserts.

        Auto-commits on successful exit, rolls back on exception.
        """
        writer = BulkWriter(self.engine)
        try:
            yield writer
            writer.commit()
        except Exception:
            writer.rollback()
            raise
        finally:
            writer.close()

    def dispose(self) -> None:
        """Close pooled connections so the file can be renamed or removed."""
        self.engine.dispose()


def write_generation_tables(
    db_path: Path,
    units: list[UnitRow],
    chunks: list[ChunkRow],
    *,
    busy_timeout_ms: int = 30000,
) -> None:
    """Create chunks.db and bulk-insert all rows in one transaction."""
    db = Database(db_path, busy_timeout_ms=busy_timeout_ms)
    try:
        db.create_all()
        with db.bulk_writer() as writer:
            writer.insert_many(UnitRow, [u.model_dump() for u in units])
            writer.insert_many(ChunkRow, [c.model_dump() for c in chunks])
    finally:
        db.dispose()


def read_generation_tables(
    db_path: Path, *, busy_timeout_ms: int = 30000
) -> tuple[list[UnitRow], list[ChunkRow]]:
    """Read every unit and chunk row of a committed generation."""
    if not db_path.is_file():
        raise FileNotFoundError(str(db_path))
    db = Database(db_path, read_only=True, busy_timeout_ms=busy_timeout_ms)
    try:

        def _read() -> tuple[list[UnitRow], list[ChunkRow]]:
            with db.session() as session:
                units = list(session.exec(select(UnitRow)).all())
                chunks = list(session.exec(select(ChunkRow).order_by(ChunkRow.vector_row)).all())
                return units, chunks

        return db.with_retry(_read)
    finally:
        db.dispose()


def _configure_pragmas(dbapi_conn: Any, *, busy_timeout_ms: int, read_only: bool) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    if not read_only:
        cursor.execute("PRAGMA journal_mode=DELETE")
        cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA cache_size=-16000")  # 16MB cache
    cursor.close()


class BulkWriter:
    """High-performance bulk insert using Core SQL, bypassing ORM overhead."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.conn = engine.connect()
        self.transaction = self.conn.begin()

    def insert_many(self, model_class: type[SQLModel], records: list[dict[str, Any]]) -> int:
        """Bulk insert records into table, returning count inserted."""
        if not records:
            return 0

        table = model_class.__table__  # type: ignore[attr-defined]
        self.conn.execute(table.insert(), records)
        return len(records)

    def commit(self) -> None:
        self.transaction.commit()

    def rollback(self) -> None:
        self.transaction.rollback()

    def close(self) -> None:
        self.conn.close()
