"""Fixtures for CLI tests."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from click.testing import CliRunner, Result

from semindex.cli.main import cli


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A small project directory; its index lives in project/.semindex."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "add.py").write_text("def add(a, b):\n    return a + b  # add two numbers\n")
    (root / "sub.py").write_text("def sub(a, b):\n    return a - b  # subtract two numbers\n")
    (root / "README.md").write_text("A tiny calculator with addition and subtraction.\n")
    return root


@pytest.fixture
def invoke(project: Path) -> Callable[..., Result]:
    """Run the CLI against project/.semindex with the hashing backend."""
    runner = CliRunner()

    def _invoke(*args: str, input: str | None = None) -> Result:
        return runner.invoke(
            cli,
            ["--backend", "hashing", "--index-dir", str(project / ".semindex"), *args],
            input=input,
            catch_exceptions=False,
        )

    return _invoke
