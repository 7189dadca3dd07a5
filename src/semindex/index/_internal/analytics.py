"""Advisory query and rebuild analytics.

Events are appended to ``analytics.jsonl`` with a single O_APPEND write each,
so concurrent queries (threads or processes) never lose each other's
records and never serialise on a lock. Nothing here affects results:
write and read failures are logged and dropped.

The log is bounded. Once it holds more than ``max_events`` lines it is
compacted: every line is folded into one ``summary`` record (counters,
histogram, a recent latency sample and the last build outcome) and the
file is atomically replaced. Compactions serialise on an flock of
``analytics.jsonl.lock``; an append racing the final swap may be dropped.

Query text is not stored; only its length.
"""

from __future__ import annotations

import fcntl
import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import structlog

logger = structlog.get_logger()

_CONFIDENCE_BUCKETS: list[tuple[str, float, float]] = [
    ("0-50", 0.0, 50.0),
    ("50-60", 50.0, 60.0),
    ("60-70", 60.0, 70.0),
    ("70-80", 70.0, 80.0),
    ("80-90", 80.0, 90.0),
    ("90-100", 90.0, 100.0001),
]

LATENCY_SAMPLE_SIZE = 512
"""Most recent query latencies a summary record keeps for percentiles."""

# Lower bound on one serialised event; below max_events * this the log is not counted
_MIN_EVENT_BYTES = 128


def _empty_histogram() -> dict[str, int]:
    return {name: 0 for name, _lo, _hi in _CONFIDENCE_BUCKETS}


@dataclass
class AnalyticsSummary:
    """Aggregates over analytics.jsonl."""

    query_count: int = 0
    empty_result_count: int = 0
    failed_query_count: int = 0
    latency_p50_ms: float | None = None
    latency_p95_ms: float | None = None
    mean_hits: float | None = None
    confidence_histogram: dict[str, int] = field(default_factory=_empty_histogram)
    build_count: int = 0
    failed_build_count: int = 0
    last_attempt_ts: float | None = None
    last_success_ts: float | None = None
    last_duration_ms: int | None = None
    last_error: str | None = None
    last_generation: str | None = None
    compacted_events: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "query_count": self.query_count,
            "empty_result_count": self.empty_result_count,
            "failed_query_count": self.failed_query_count,
            "latency_p50_ms": self.latency_p50_ms,
            "latency_p95_ms": self.latency_p95_ms,
            "mean_hits": self.mean_hits,
            "confidence_histogram": dict(self.confidence_histogram),
            "build_count": self.build_count,
            "failed_build_count": self.failed_build_count,
            "last_attempt_ts": self.last_attempt_ts,
            "last_success_ts": self.last_success_ts,
            "last_duration_ms": self.last_duration_ms,
            "last_error": self.last_error,
            "last_generation": self.last_generation,
            "compacted_events": self.compacted_events,
        }


@dataclass
class _Totals:
    """Running fold of summary records and events."""

    query_count: int = 0
    failed_query_count: int = 0
    empty_result_count: int = 0
    answered_count: int = 0
    hits_total: int = 0
    latencies: list[float] = field(default_factory=list)
    histogram: dict[str, int] = field(default_factory=_empty_histogram)
    build_count: int = 0
    failed_build_count: int = 0
    last_attempt_ts: float | None = None
    last_success_ts: float | None = None
    last_duration_ms: int | None = None
    last_error: str | None = None
    last_generation: str | None = None
    compacted_events: int = 0

    def fold_summary(self, record: dict[str, Any]) -> None:
        self.compacted_events += int(record.get("events", 0))
        self.query_count += int(record.get("query_count", 0))
        self.failed_query_count += int(record.get("failed_query_count", 0))
        self.empty_result_count += int(record.get("empty_result_count", 0))
        self.answered_count += int(record.get("answered_count", 0))
        self.hits_total += int(record.get("hits_total", 0))
        self.latencies.extend(float(v) for v in record.get("latency_sample_ms", []))
        for name, count in record.get("confidence_histogram", {}).items():
            if name in self.histogram:
                self.histogram[name] += int(count)
        self.build_count += int(record.get("build_count", 0))
        self.failed_build_count += int(record.get("failed_build_count", 0))
        for key in (
            "last_attempt_ts",
            "last_success_ts",
            "last_duration_ms",
            "last_error",
            "last_generation",
        ):
            if record.get(key) is not None:
                setattr(self, key, record[key])

    def fold(self, event: dict[str, Any]) -> None:
        if event["type"] == "query":
            self.query_count += 1
            if event.get("error"):
                self.failed_query_count += 1
                return
            self.latencies.append(float(event.get("latency_ms", 0.0)))
            hits = int(event.get("hits", 0))
            self.answered_count += 1
            self.hits_total += hits
            if hits == 0:
                self.empty_result_count += 1
            for conf in event.get("confidences", []):
                bucket = _bucket(float(conf))
                if bucket is not None:
                    self.histogram[bucket] += 1
        elif event["type"] == "build":
            self.last_attempt_ts = event.get("started_at", event.get("ts"))
            if event.get("outcome") == "committed":
                self.build_count += 1
                self.last_success_ts = event.get("ts")
                self.last_duration_ms = event.get("duration_ms")
                self.last_generation = event.get("generation_id")
                self.last_error = None
            else:
                self.failed_build_count += 1
                self.last_error = event.get("error") or event.get("outcome")

    def to_record(self, events: int) -> dict[str, Any]:
        return {
            "type": "summary",
            "ts": time.time(),
            "events": self.compacted_events + events,
            "query_count": self.query_count,
            "failed_query_count": self.failed_query_count,
            "empty_result_count": self.empty_result_count,
            "answered_count": self.answered_count,
            "hits_total": self.hits_total,
            "latency_sample_ms": self.latencies[-LATENCY_SAMPLE_SIZE:],
            "confidence_histogram": dict(self.histogram),
            "build_count": self.build_count,
            "failed_build_count": self.failed_build_count,
            "last_attempt_ts": self.last_attempt_ts,
            "last_success_ts": self.last_success_ts,
            "last_duration_ms": self.last_duration_ms,
            "last_error": self.last_error,
            "last_generation": self.last_generation,
        }

    def to_summary(self) -> AnalyticsSummary:
        result = AnalyticsSummary(
            query_count=self.query_count,
            empty_result_count=self.empty_result_count,
            failed_query_count=self.failed_query_count,
            confidence_histogram=dict(self.histogram),
            build_count=self.build_count,
            failed_build_count=self.failed_build_count,
            last_attempt_ts=self.last_attempt_ts,
            last_success_ts=self.last_success_ts,
            last_duration_ms=self.last_duration_ms,
            last_error=self.last_error,
            last_generation=self.last_generation,
            compacted_events=self.compacted_events,
        )
        if self.latencies:
            arr = np.asarray(self.latencies, dtype=np.float64)
            result.latency_p50_ms = round(float(np.percentile(arr, 50)), 3)
            result.latency_p95_ms = round(float(np.percentile(arr, 95)), 3)
        if self.answered_count:
            result.mean_hits = round(self.hits_total / self.answered_count, 3)
        return result


class AnalyticsTracker:
    """Append-only event log with a summary reader."""

    def __init__(self, path: Path, *, enabled: bool = True, max_events: int = 1000) -> None:
        self._path = path
        self._enabled = enabled
        self._max_events = max(1, max_events)
        self._lock_path = path.with_name(path.name + ".lock")

    @property
    def path(self) -> Path:
        return self._path

    def record_query(
        self,
        *,
        query_chars: int,
        k: int,
        min_confidence: float | None,
        generation_id: str | None,
        candidates: int,
        confidences: list[float],
        latency_ms: float,
        error: str | None = None,
    ) -> None:
        self._append(
            {
                "type": "query",
                "ts": time.time(),
                "query_chars": query_chars,
                "k": k,
                "min_confidence": min_confidence,
                "generation_id": generation_id,
                "candidates": candidates,
                "hits": len(confidences),
                "confidences": [round(c, 2) for c in confidences],
                "latency_ms": round(latency_ms, 3),
                "error": error,
            }
        )

    def record_build(
        self,
        *,
        outcome: str,
        session_id: str,
        started_at: float,
        duration_ms: int,
        generation_id: str | None = None,
        stats: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        """outcome: ``committed``, ``aborted``, ``cancelled`` or ``rejected``."""
        self._append(
            {
                "type": "build",
                "ts": time.time(),
                "outcome": outcome,
                "session_id": session_id,
                "started_at": started_at,
                "duration_ms": duration_ms,
                "generation_id": generation_id,
                "stats": stats or {},
                "error": error,
            }
        )

    def _append(self, event: dict[str, Any]) -> None:
        if not self._enabled:
            return
        line = (json.dumps(event, separators=(",", ":")) + "\n").encode("utf-8")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
            try:
                os.write(fd, line)
                size = os.fstat(fd).st_size
            finally:
                os.close(fd)
        except OSError as e:
            logger.warning("analytics_write_failed", path=str(self._path), error=str(e))
            return
        if size > self._max_events * _MIN_EVENT_BYTES:
            self.compact()

    def compact(self, *, force: bool = False) -> int:
        """Fold the log into one summary record; returns the lines folded.

        Without ``force`` nothing happens until the log holds more than
        ``max_events`` lines. A compaction already running elsewhere makes
        this a no-op.
        """
        try:
            fd = os.open(self._lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            logger.warning("analytics_compact_failed", path=str(self._path), error=str(e))
            return 0
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return 0
            try:
                return self._compact_locked(force)
            except OSError as e:
                logger.warning("analytics_compact_failed", path=str(self._path), error=str(e))
                return 0
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _compact_locked(self, force: bool) -> int:
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return 0
        end = raw.rfind(b"\n") + 1
        head = raw[:end]
        lines = head.count(b"\n")
        if lines == 0 or (not force and lines <= self._max_events):
            return 0

        records = _parse(head)
        totals = _fold(records)
        folded = sum(1 for r in records if r["type"] != "summary")
        summary_line = json.dumps(totals.to_record(folded), separators=(",", ":")) + "\n"

        tmp = self._path.with_name(f".{self._path.name}.{os.getpid()}.tmp")
        with tmp.open("wb") as f:
            f.write(summary_line.encode("utf-8"))
            # Lines appended since the read above are carried over verbatim
            with self._path.open("rb") as src:
                src.seek(end)
                f.write(src.read())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self._path)
        logger.info("analytics_compacted", path=str(self._path), events=folded)
        return folded

    def clear(self) -> None:
        """Delete the log and its compaction lock file."""
        self._path.unlink(missing_ok=True)
        self._lock_path.unlink(missing_ok=True)

    def events(self) -> list[dict[str, Any]]:
        """All well-formed records; torn or foreign lines are skipped."""
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("analytics_read_failed", path=str(self._path), error=str(e))
            return []
        return _parse(raw)

    def summary(self) -> AnalyticsSummary:
        return _fold(self.events()).to_summary()


def _parse(raw: bytes) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for line in raw.splitlines():
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if isinstance(event, dict) and "type" in event:
            out.append(event)
    return out


def _fold(records: list[dict[str, Any]]) -> _Totals:
    """Summary records first (they predate every event beside them), then events in order."""
    totals = _Totals()
    for record in records:
        if record["type"] == "summary":
            totals.fold_summary(record)
    for record in records:
        if record["type"] != "summary":
            totals.fold(record)
    return totals


def _bucket(confidence: float) -> str | None:
    for name, lo, hi in _CONFIDENCE_BUCKETS:
        if lo <= confidence < hi:
            return name
    return None
