"""Memory notes: free-form text units for the assistant memory store.

Notes live in ``notes.jsonl`` under the index root, one JSON object per
line. Every mutation rewrites the file atomically (tmp + os.replace) while
holding an flock on ``notes.jsonl.lock``, so concurrent writers never lose
each other's edits and readers never see a torn file.

Adding a note whose normalised text (case-folded, whitespace collapsed)
matches an existing note returns the existing note instead.

A note may record where it came from: a ``source`` (user message, tool
output, ...) and a metadata bag with the conversation, tool or file it was
captured from. Unknown metadata keys are kept as given.

Notes are indexed like files: ``units()`` yields one ``kind="note"`` unit
per note with unit id ``note:<note_id>`` and the text fingerprint as the
revision.
"""

from __future__ import annotations

import builtins
import fcntl
import json
import os
import re
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from semindex.config.constants import NOTES_FILE
from semindex.index.models import UnitInput, UnitKind, content_fingerprint

logger = structlog.get_logger()

NOTE_UNIT_PREFIX = "note:"

_SPACE_RE = re.compile(r"\s+")


class NoteSource(str, Enum):
    """What a note was captured from."""

    USER_MESSAGE = "user_message"
    ASSISTANT_MESSAGE = "assistant_message"
    TOOL_OUTPUT = "tool_output"
    FILE_DIFF = "file_diff"
    SYSTEM_MESSAGE = "system_message"


class NoteMetadata(BaseModel):
    """Provenance of a note. Extra keys are allowed."""

    model_config = ConfigDict(extra="allow")

    conversation_id: str | None = None
    session_source: str | None = None
    role: str | None = None
    tool_name: str | None = None
    call_id: str | None = None
    file_path: str | None = None


class Note(BaseModel):
    """A stored memory note."""

    note_id: str
    text: str
    tags: list[str] = Field(default_factory=list)
    source: NoteSource | None = None
    metadata: NoteMetadata = Field(default_factory=NoteMetadata)
    created_at: str
    updated_at: str

    @property
    def unit_id(self) -> str:
        return f"{NOTE_UNIT_PREFIX}{self.note_id}"


def normalize_note_text(text: str) -> str:
    return _SPACE_RE.sub(" ", text).strip().casefold()


class NoteStore:
    """CRUD over notes.jsonl."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._path = root / NOTES_FILE
        self._lock_path = root / f"{NOTES_FILE}.lock"

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(self) -> list[Note]:
        """All notes, oldest first."""
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        notes: list[Note] = []
        for lineno, line in enumerate(raw.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                notes.append(Note.model_validate(json.loads(line)))
            except (ValueError, ValidationError) as e:
                logger.warning("note_unreadable", path=str(self._path), line=lineno, error=str(e))
        return notes

    def get(self, note_id: str) -> Note | None:
        for note in self.list():
            if note.note_id == note_id:
                return note
        return None

    def units(self) -> Iterator[UnitInput]:
        for note in self.list():
            yield UnitInput.from_text(
                note.unit_id,
                note.text,
                revision=content_fingerprint(note.text),
                kind=UnitKind.NOTE,
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(
        self,
        text: str,
        *,
        tags: builtins.list[str] | None = None,
        source: NoteSource | str | None = None,
        metadata: NoteMetadata | dict[str, Any] | None = None,
    ) -> Note:
        """Store a note, or return the existing note with the same normalised text.

        The existing note keeps its own source and metadata.

        Raises:
            ValueError: empty text, an unknown source or invalid metadata.
        """
        if not text.strip():
            raise ValueError("note text must not be empty")
        note_source = NoteSource(source) if source is not None else None
        note_metadata = NoteMetadata.model_validate(metadata or {})
        key = normalize_note_text(text)
        with self._exclusive():
            notes = self.list()
            for existing in notes:
                if normalize_note_text(existing.text) == key:
                    logger.debug("note_duplicate", note_id=existing.note_id)
                    return existing
            now = datetime.now(UTC).isoformat()
            note = Note(
                note_id=uuid4().hex[:12],
                text=text,
                tags=sorted(set(tags or [])),
                source=note_source,
                metadata=note_metadata,
                created_at=now,
                updated_at=now,
            )
            notes.append(note)
            self._write(notes)
        logger.info(
            "note_added",
            note_id=note.note_id,
            source=note.source.value if note.source else None,
        )
        return note

    def update(
        self, note_id: str, text: str, *, tags: builtins.list[str] | None = None
    ) -> Note | None:
        """Replace a note's text (and tags when given). None if it does not exist."""
        if not text.strip():
            raise ValueError("note text must not be empty")
        with self._exclusive():
            notes = self.list()
            for i, note in enumerate(notes):
                if note.note_id == note_id:
                    updated = note.model_copy(
                        update={
                            "text": text,
                            "tags": sorted(set(tags)) if tags is not None else note.tags,
                            "updated_at": datetime.now(UTC).isoformat(),
                        }
                    )
                    notes[i] = updated
                    self._write(notes)
                    logger.info("note_updated", note_id=note_id)
                    return updated
        return None

    def delete(self, note_id: str) -> bool:
        with self._exclusive():
            notes = self.list()
            kept = [n for n in notes if n.note_id != note_id]
            if len(kept) == len(notes):
                return False
            self._write(kept)
        logger.info("note_deleted", note_id=note_id)
        return True

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        self._root.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _write(self, notes: builtins.list[Note]) -> None:
        tmp = self._path.with_name(f".{self._path.name}.{os.getpid()}.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            for note in notes:
                f.write(note.model_dump_json() + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self._path)
