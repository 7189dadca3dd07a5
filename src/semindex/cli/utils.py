"""CLI utilities."""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from semindex.config.loader import load_config
from semindex.core.errors import ErrorCode, SemIndexError
from semindex.core.logging import configure_logging
from semindex.index.ops import SemanticIndex

INDEX_DIR_NAME = ".semindex"
INDEX_DIR_ENV = "SEMINDEX_INDEX_DIR"

# sysexits EX_TEMPFAIL: the caller may retry later
EXIT_BUSY = 75


def find_index_root(start_path: Path | None = None) -> Path:
    """Find the index directory for the given path.

    Walks up the directory tree looking for a .semindex directory. If none
    exists, returns ``<start_path>/.semindex`` so a first rebuild creates it.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    while True:
        candidate = current / INDEX_DIR_NAME
        if candidate.is_dir():
            return candidate
        if current == current.parent:
            break
        current = current.parent

    return start_path.resolve() / INDEX_DIR_NAME


def resolve_index_root(index_dir: Path | None) -> Path:
    if index_dir is not None:
        return index_dir.resolve()
    env = os.environ.get(INDEX_DIR_ENV)
    if env:
        return Path(env).expanduser().resolve()
    return find_index_root()


def open_index(ctx: click.Context) -> SemanticIndex:
    """Open the index selected by the group options (cached on the context)."""
    obj: dict[str, Any] = ctx.ensure_object(dict)
    if obj.get("index") is None:
        root = resolve_index_root(obj.get("index_dir"))
        overrides: dict[str, Any] = {}
        if obj.get("backend"):
            overrides["embedding"] = {"backend": obj["backend"]}
        with handle_errors():
            config = load_config(root, **overrides)
            configure_logging(
                config.logging, console_level="DEBUG" if obj.get("verbose") else "WARNING"
            )
            obj["index"] = SemanticIndex.open(root, config=config)
        ctx.call_on_close(obj["index"].close)
    index: SemanticIndex = obj["index"]
    return index


class SemIndexClickError(click.ClickException):
    """ClickException carrying a SemIndexError's code."""

    def __init__(self, error: SemIndexError) -> None:
        super().__init__(f"{error.message} [{error.error_name}]")
        self.error = error
        self.exit_code = EXIT_BUSY if error.code == ErrorCode.INDEX_BUSY else 1


@contextmanager
def handle_errors() -> Iterator[None]:
    """Convert SemIndexError into a clean CLI error."""
    try:
        yield
    except SemIndexError as e:
        raise SemIndexClickError(e) from e
