"""Generation integrity verification.

Checks, per generation directory:
1. manifest.json present and parseable
2. Payload files present and matching the manifest checksums
3. Chunk rows and index vectors in one-to-one correspondence
4. A single model id, equal to the manifest's
5. Manifest chunk_count and embedding_dim agree with the payload

A generation that fails any check is never made current by a reader.
"""

from __future__ import annotations

import hashlib
import json
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from semindex.config.constants import (
    CHUNKS_DB_FILE,
    GRAPH_FILE,
    MANIFEST_FILE,
    PAYLOAD_FILES,
    VECTORS_FILE,
)
from semindex.index._internal.db.database import read_generation_tables
from semindex.index._internal.hnsw import HnswIndex
from semindex.index.models import Manifest


@dataclass
class IntegrityIssue:
    """A single integrity issue detected."""

    category: str  # 'manifest', 'missing_file', 'checksum', 'orphan', 'model_mismatch', 'count'
    message: str
    count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category, "message": self.message, "count": self.count}


@dataclass
class IntegrityReport:
    """Result of integrity verification."""

    generation_id: str | None
    passed: bool = True
    issues: list[IntegrityIssue] = field(default_factory=list)
    chunks_checked: int = 0
    vectors_checked: int = 0

    def add_issue(self, issue: IntegrityIssue) -> None:
        """Add an issue and mark as failed."""
        self.issues.append(issue)
        self.passed = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "generation_id": self.generation_id,
            "passed": self.passed,
            "chunks_checked": self.chunks_checked,
            "vectors_checked": self.vectors_checked,
            "issues": [i.to_dict() for i in self.issues],
        }


def file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for block in iter(lambda: f.read(1 << 20), b""):
            h.update(block)
    return h.hexdigest()


def read_manifest(gen_dir: Path) -> Manifest:
    """Parse manifest.json. Raises OSError, ValueError or ValidationError."""
    with (gen_dir / MANIFEST_FILE).open(encoding="utf-8") as f:
        return Manifest.model_validate(json.load(f))


def verify_generation(gen_dir: Path, *, busy_timeout_ms: int = 30000) -> IntegrityReport:
    """Run every check against one generation directory."""
    report = IntegrityReport(generation_id=gen_dir.name)

    try:
        manifest = read_manifest(gen_dir)
    except (OSError, ValueError, ValidationError) as e:
        report.add_issue(IntegrityIssue("manifest", f"manifest unreadable: {e}"))
        return report

    if manifest.generation_id != gen_dir.name:
        report.add_issue(
            IntegrityIssue(
                "manifest",
                f"manifest names generation {manifest.generation_id}, directory is {gen_dir.name}",
            )
        )

    payload_ok = True
    for name in PAYLOAD_FILES:
        path = gen_dir / name
        if not path.is_file():
            report.add_issue(IntegrityIssue("missing_file", f"{name} is missing"))
            payload_ok = False
            continue
        expected = manifest.checksums.get(name)
        if expected is None:
            report.add_issue(IntegrityIssue("checksum", f"no checksum recorded for {name}"))
        elif file_sha256(path) != expected:
            report.add_issue(IntegrityIssue("checksum", f"{name} does not match its checksum"))
            payload_ok = False
    if not payload_ok:
        return report

    try:
        _units, chunks = read_generation_tables(
            gen_dir / CHUNKS_DB_FILE, busy_timeout_ms=busy_timeout_ms
        )
        index = HnswIndex.load(gen_dir / VECTORS_FILE, gen_dir / GRAPH_FILE)
    except Exception as e:
        report.add_issue(IntegrityIssue("payload", f"payload unreadable: {e}"))
        return report

    report.chunks_checked = len(chunks)
    report.vectors_checked = len(index)

    ids = index.ids
    row_ids = [c.chunk_id for c in chunks]
    dup_rows = [cid for cid, n in Counter(row_ids).items() if n > 1]
    if dup_rows:
        report.add_issue(
            IntegrityIssue("orphan", "chunk rows with duplicate ids", count=len(dup_rows))
        )

    missing_vectors = set(row_ids) - set(ids)
    if missing_vectors:
        report.add_issue(
            IntegrityIssue("orphan", "chunks without a vector", count=len(missing_vectors))
        )
    orphan_vectors = set(ids) - set(row_ids)
    if orphan_vectors:
        report.add_issue(
            IntegrityIssue("orphan", "vectors without a chunk", count=len(orphan_vectors))
        )

    misplaced = sum(
        1 for c in chunks if not (0 <= c.vector_row < len(ids)) or ids[c.vector_row] != c.chunk_id
    )
    if misplaced:
        report.add_issue(
            IntegrityIssue("orphan", "chunk rows pointing at the wrong vector", count=misplaced)
        )

    models = {c.model_id for c in chunks}
    foreign = models - {manifest.model_id}
    if foreign:
        report.add_issue(
            IntegrityIssue(
                "model_mismatch",
                f"chunks embedded with {sorted(foreign)} in a {manifest.model_id} generation",
                count=len(foreign),
            )
        )

    if manifest.chunk_count != len(chunks):
        report.add_issue(
            IntegrityIssue(
                "count",
                f"manifest chunk_count {manifest.chunk_count} != {len(chunks)} chunk rows",
            )
        )
    if len(index) and index.dim != manifest.embedding_dim:
        report.add_issue(
            IntegrityIssue(
                "count", f"index dim {index.dim} != manifest dim {manifest.embedding_dim}"
            )
        )

    return report
