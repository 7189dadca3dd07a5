"""Database layer for generation chunk tables."""

from semindex.index._internal.db.database import (
    BulkWriter,
    Database,
    read_generation_tables,
    write_generation_tables,
)
from semindex.index._internal.db.integrity import (
    IntegrityIssue,
    IntegrityReport,
    file_sha256,
    read_manifest,
    verify_generation,
)

__all__ = [
    "Database",
    "BulkWriter",
    "read_generation_tables",
    "write_generation_tables",
    "IntegrityIssue",
    "IntegrityReport",
    "file_sha256",
    "read_manifest",
    "verify_generation",
]
