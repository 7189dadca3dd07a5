"""Split a text unit into bounded, stable chunks.

Chunks are ordered, non-overlapping and together cover the whole unit.
Cuts prefer, in order: a paragraph break (blank line), a line end, any
whitespace. A window with no whitespace at all is an atomic block; it is
kept whole as one chunk whose embedded text is cut at ``max_chars`` and
flagged ``truncated``.

Boundaries depend only on the text and the policy, so an unchanged region
yields the same offsets and content hash on every rebuild.
"""

from __future__ import annotations

import bisect
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from semindex.index.models import Chunk, content_fingerprint, make_chunk_id

if TYPE_CHECKING:
    from semindex.config.models import ChunkingConfig

_PARAGRAPH_RE = re.compile(r"\n[ \t]*\n\s*")
_WHITESPACE_RE = re.compile(r"\s")


@dataclass(frozen=True, slots=True)
class ChunkPolicy:
    """Soft size limit and snippet length."""

    max_chars: int = 1500
    snippet_chars: int = 240

    @property
    def min_chars(self) -> int:
        """Preferred boundaries closer than this to the chunk start are ignored."""
        return max(1, self.max_chars // 4)

    @classmethod
    def from_config(cls, config: ChunkingConfig) -> ChunkPolicy:
        return cls(max_chars=config.max_chars, snippet_chars=config.snippet_chars)

    def to_dict(self) -> dict[str, int]:
        return {"max_chars": self.max_chars, "snippet_chars": self.snippet_chars}


class Chunker:
    """Deterministic text chunker."""

    def __init__(self, policy: ChunkPolicy | None = None) -> None:
        self._policy = policy or ChunkPolicy()

    @property
    def policy(self) -> ChunkPolicy:
        return self._policy

    def chunk(self, unit_id: str, text: str, model_id: str) -> list[Chunk]:
        """Chunk ``text``. Always returns at least one chunk."""
        line_starts = _line_starts(text)
        chunks: list[Chunk] = []
        for ordinal, (start, end, truncated) in enumerate(self.spans(text)):
            body = text[start:end]
            content_hash = content_fingerprint(body)
            embed_text = body[: self._policy.max_chars] if truncated else body
            chunks.append(
                Chunk(
                    chunk_id=make_chunk_id(unit_id, start, end, content_hash, model_id),
                    unit_id=unit_id,
                    ordinal=ordinal,
                    start_offset=start,
                    end_offset=end,
                    start_line=_line_of(line_starts, start),
                    end_line=_line_of(line_starts, max(start, end - 1)),
                    content_hash=content_hash,
                    model_id=model_id,
                    text=embed_text,
                    truncated=truncated,
                    snippet=_snippet(body, self._policy.snippet_chars),
                )
            )
        return chunks

    def spans(self, text: str) -> Iterator[tuple[int, int, bool]]:
        """Yield ``(start, end, truncated)`` covering ``[0, len(text))``."""
        n = len(text)
        if n == 0:
            yield 0, 0, False
            return

        max_chars = self._policy.max_chars
        pos = 0
        while pos < n:
            if n - pos <= max_chars:
                yield pos, n, False
                return

            limit = pos + max_chars
            cut = self._find_cut(text, pos, limit)
            if cut is not None:
                yield pos, cut, False
                pos = cut
                continue

            # Atomic block: extend to the next whitespace (or the end of text)
            m = _WHITESPACE_RE.search(text, limit)
            end = m.end() if m else n
            yield pos, end, True
            pos = end

    def _find_cut(self, text: str, pos: int, limit: int) -> int | None:
        """Best cut in ``(pos, limit]`` or None if the window has no whitespace."""
        floor = pos + self._policy.min_chars

        best: int | None = None
        for m in _PARAGRAPH_RE.finditer(text, floor, limit):
            if m.end() <= limit:
                best = m.end()
        if best is not None:
            return best

        nl = text.rfind("\n", floor, limit)
        if nl != -1:
            return nl + 1

        ws = _last_whitespace(text, floor, limit)
        if ws is None:
            ws = _last_whitespace(text, pos, limit)
        return ws


def _last_whitespace(text: str, lo: int, hi: int) -> int | None:
    for i in range(hi - 1, lo - 1, -1):
        if text[i].isspace():
            return i + 1
    return None


def _line_starts(text: str) -> list[int]:
    starts = [0]
    idx = text.find("\n")
    while idx != -1:
        starts.append(idx + 1)
        idx = text.find("\n", idx + 1)
    return starts


def _line_of(line_starts: list[int], offset: int) -> int:
    """1-based line number containing ``offset``."""
    return bisect.bisect_right(line_starts, offset)


def _snippet(body: str, limit: int) -> str:
    if limit <= 0:
        return ""
    return body.strip()[:limit]
