"""Shared fixtures for integration tests."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture
def corpus_dir(tmp_path: Path) -> Path:
    """A small source tree with an index directory inside it."""
    root = tmp_path / "corpus"
    (root / "calc").mkdir(parents=True)
    (root / "calc" / "add.py").write_text(
        '"""Add two numbers."""\n\n\ndef add(a, b):\n    return a + b\n'
    )
    (root / "calc" / "sub.py").write_text(
        '"""Subtract two numbers."""\n\n\ndef subtract(a, b):\n    return a - b\n'
    )
    (root / "notes.md").write_text("# Weather\n\nIt will rain on Tuesday.\n")
    (root / "node_modules" / "pkg").mkdir(parents=True)
    (root / "node_modules" / "pkg" / "index.js").write_text("module.exports = add\n")
    return root
