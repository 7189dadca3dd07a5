"""Directory walker: turns a source tree into UnitInputs.

Tiered exclusion:
- Tier 0 (HARDCODED_DIRS): always pruned
- Tier 1 (DEFAULT_PRUNABLE_DIRS): pruned unless negated in .semignore
- Tier 2 (.semignore at the source root): gitignore-like patterns,
  ``dir/`` matches contents, ``!pattern`` re-includes, last match wins

Files larger than ``max_file_bytes`` or that look binary (a NUL byte in
the first 8 KiB) are skipped. A unit's revision is ``mtime_ns:size``; the
file is only read when the rebuild decides the unit changed.
"""

from __future__ import annotations

import fnmatch
import os
from collections.abc import Callable, Iterator
from pathlib import Path

import structlog

from semindex.config.constants import BINARY_SNIFF_BYTES, DEFAULT_MAX_FILE_BYTES, IGNORE_FILE
from semindex.core.excludes import is_default_prunable, is_hardcoded_dir
from semindex.index.models import TextUnit, UnitInput, UnitKind

logger = structlog.get_logger()


class IgnoreChecker:
    """Decides whether a path under ``root`` is excluded.

    .semignore itself is never excluded so edits to it show up as a
    changed unit.
    """

    def __init__(self, root: Path, extra_patterns: list[str] | None = None) -> None:
        self._root = root
        self._patterns: list[tuple[str, bool]] = []  # (pattern, negated)
        self._negated_dirs: set[str] = set()
        self._load_ignore_file(root / IGNORE_FILE)
        for line in extra_patterns or []:
            self._add_pattern(line)

    @property
    def negated_dirs(self) -> frozenset[str]:
        return frozenset(self._negated_dirs)

    def should_prune_dir(self, dirname: str) -> bool:
        """Check if a directory should be skipped during traversal.

        Example:
            # .semignore contains "!vendor/"
            checker.should_prune_dir("vendor")        # False (opted in)
            checker.should_prune_dir(".git")          # True (hardcoded)
            checker.should_prune_dir("node_modules")  # True (default)
        """
        if is_hardcoded_dir(dirname):
            return True
        if is_default_prunable(dirname):
            return dirname not in self._negated_dirs
        return False

    def _load_ignore_file(self, path: Path) -> None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("ignore_file_unreadable", path=str(path), error=str(e))
            return
        for line in content.splitlines():
            self._add_pattern(line)

    def _add_pattern(self, raw: str) -> None:
        line = raw.strip()
        if not line or line.startswith("#"):
            return
        negated = line.startswith("!")
        if negated:
            line = line[1:]
        if not line:
            return

        # e.g. "!vendor/" -> vendor is walked even though it is prunable by default
        if negated:
            dir_name = line.strip("/")
            if dir_name and "/" not in dir_name and "*" not in dir_name:
                self._negated_dirs.add(dir_name)

        anchored = line.startswith("/")
        line = line.lstrip("/")
        pattern = f"{line}**" if line.endswith("/") else line
        if not anchored and "/" not in line.rstrip("/"):
            # Unanchored single-segment pattern matches at any depth
            self._patterns.append((pattern, negated))
            self._patterns.append((f"**/{pattern}", negated))
        else:
            self._patterns.append((pattern, negated))

    def is_excluded_rel(self, rel_path: str) -> bool:
        """gitignore-style evaluation over the path and its parent directories."""
        rel = rel_path.replace("\\", "/")
        if rel == IGNORE_FILE:
            return False
        parts = rel.split("/")
        candidates = ["/".join(parts[: i + 1]) for i in range(len(parts))]

        excluded = False
        for pattern, negated in self._patterns:
            if any(_match(c, pattern) for c in candidates):
                excluded = not negated
        return excluded


def _match(rel: str, pattern: str) -> bool:
    if fnmatch.fnmatchcase(rel, pattern):
        return True
    if pattern.startswith("**/"):
        return fnmatch.fnmatchcase(rel, pattern[3:])
    return False


def _looks_binary(path: Path) -> bool:
    with path.open("rb") as f:
        head = f.read(BINARY_SNIFF_BYTES)
    return b"\x00" in head


class DirectorySource:
    """Enumerates the text files under ``root`` as file units."""

    def __init__(
        self,
        root: Path,
        *,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        extra_patterns: list[str] | None = None,
        exclude_paths: list[Path] | None = None,
    ) -> None:
        self._root = root.resolve()
        self._max_file_bytes = max_file_bytes
        self._ignore = IgnoreChecker(self._root, extra_patterns)
        self._exclude = {p.resolve() for p in exclude_paths or []}

    @property
    def root(self) -> Path:
        return self._root

    def __iter__(self) -> Iterator[UnitInput]:
        return self.units()

    def units(self) -> Iterator[UnitInput]:
        """Yield units in a stable (sorted relative path) order."""
        skipped_large = 0
        skipped_binary = 0
        for dirpath, dirnames, filenames in os.walk(self._root):
            current = Path(dirpath)
            dirnames[:] = sorted(
                d
                for d in dirnames
                if not self._ignore.should_prune_dir(d)
                and (current / d) not in self._exclude
                and not self._ignore.is_excluded_rel(
                    (current / d).relative_to(self._root).as_posix()
                )
            )
            for filename in sorted(filenames):
                path = current / filename
                rel = path.relative_to(self._root).as_posix()
                if self._ignore.is_excluded_rel(rel):
                    continue
                try:
                    st = path.stat()
                    if not path.is_file():
                        continue
                    if st.st_size > self._max_file_bytes:
                        skipped_large += 1
                        continue
                    if _looks_binary(path):
                        skipped_binary += 1
                        continue
                except OSError as e:
                    logger.debug("unit_stat_failed", path=rel, error=str(e))
                    continue
                yield UnitInput(
                    unit=TextUnit(
                        unit_id=rel,
                        revision=f"{st.st_mtime_ns}:{st.st_size}",
                        kind=UnitKind.FILE,
                    ),
                    read=_reader(path),
                )
        if skipped_large or skipped_binary:
            logger.debug(
                "units_skipped",
                too_large=skipped_large,
                binary=skipped_binary,
                root=str(self._root),
            )


def _reader(path: Path) -> Callable[[], str]:
    def read() -> str:
        return path.read_text(encoding="utf-8")

    return read
