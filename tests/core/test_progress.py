"""Tests for core/progress.py module."""

from __future__ import annotations

from io import StringIO
from types import SimpleNamespace

import pytest
from rich.console import Console

from semindex.core import progress as progress_mod
from semindex.core.progress import (
    is_console_suppressed,
    make_histogram_table,
    pluralize,
    rebuild_bar,
    status,
    suppress_console_logs,
    task,
)


@pytest.fixture
def captured_console(monkeypatch: pytest.MonkeyPatch) -> StringIO:
    buf = StringIO()
    monkeypatch.setattr(progress_mod, "_console", Console(file=buf, force_terminal=False))
    return buf


class TestPluralize:
    """Tests for pluralize."""

    @pytest.mark.parametrize(
        ("count", "expected"),
        [(0, "0 chunks"), (1, "1 chunk"), (2, "2 chunks")],
    )
    def test_default_plural(self, count: int, expected: str) -> None:
        assert pluralize(count, "chunk") == expected

    def test_custom_plural(self) -> None:
        assert pluralize(3, "index", "indexes") == "3 indexes"


class TestStatus:
    """Tests for status()."""

    def test_success_prefix(self, captured_console: StringIO) -> None:
        status("Index ready", style="success")
        assert "✓ Index ready" in captured_console.getvalue()

    def test_indent(self, captured_console: StringIO) -> None:
        status("nested", style="none", indent=4)
        assert captured_console.getvalue().startswith("    nested")


class TestTask:
    """Tests for task()."""

    def test_reports_success_with_timing(self, captured_console: StringIO) -> None:
        with task("Verifying generation"):
            pass
        out = captured_console.getvalue()
        assert "Verifying generation..." in out
        assert "✓ Verifying generation (" in out

    def test_reports_failure_and_reraises(self, captured_console: StringIO) -> None:
        with pytest.raises(RuntimeError), task("Verifying generation"):
            raise RuntimeError("bad checksum")
        assert "Verifying generation failed: bad checksum" in captured_console.getvalue()


class TestSuppressConsoleLogs:
    """Tests for suppress_console_logs()."""

    def test_flag_is_scoped(self) -> None:
        assert not is_console_suppressed()
        with suppress_console_logs():
            assert is_console_suppressed()
        assert not is_console_suppressed()


class TestRebuildBar:
    """Tests for rebuild_bar() outside a TTY."""

    def test_callback_is_noop_without_tty(self, captured_console: StringIO) -> None:
        event = SimpleNamespace(kind="progress", chunks_done=1, chunks_total=2)
        with rebuild_bar() as on_event:
            on_event(event)
        assert captured_console.getvalue() == ""


class TestHistogramTable:
    """Tests for make_histogram_table()."""

    def test_one_row_per_bucket(self) -> None:
        table = make_histogram_table({"0-50": 0, "50-60": 4, "90-100": 16})
        assert table.row_count == 3

    def test_empty(self) -> None:
        assert make_histogram_table({}).row_count == 0
