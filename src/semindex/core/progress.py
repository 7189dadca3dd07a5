"""User-facing progress feedback for CLI operations.

Design principles:
- Single line updates on stderr, stdout stays clean for --json output
- Progress bar only on a TTY and only for long rebuilds
- Suppress structlog console output while a live display is active

Usage::

    from semindex.core.progress import status, spinner, rebuild_bar

    status("Index ready", style="success")  # ✓ Index ready

    with spinner("Loading generation 00000003"):
        do_work()

    with rebuild_bar() as on_event:
        index.rebuild(units, on_event=on_event)
"""

from __future__ import annotations

import math
import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

_console = Console(stderr=True)

_STYLES = {
    "success": "[green]✓[/green] ",
    "error": "[red]✗[/red] ",
    "warning": "[yellow]![/yellow] ",
    "info": "  ",
    "none": "",
}

_suppress_console_logs = threading.local()


def is_console_suppressed() -> bool:
    """Check if console logging is currently suppressed."""
    return getattr(_suppress_console_logs, "active", False)


@contextmanager
def suppress_console_logs() -> Iterator[None]:
    """Suppress structlog console output; file handlers still receive logs."""
    _suppress_console_logs.active = True
    try:
        yield
    finally:
        _suppress_console_logs.active = False


def _get_logger() -> BoundLogger:
    from semindex.core.logging import get_logger

    return get_logger("progress")


def _is_tty() -> bool:
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()


def get_console() -> Console:
    """Get the shared Rich console instance."""
    return _console


def status(message: str, *, style: str = "info", indent: int = 0) -> None:
    """Print a styled status message to stderr."""
    prefix = _STYLES.get(style, "")
    padding = " " * indent
    _console.print(f"{padding}{prefix}{message}", highlight=False)
    _get_logger().debug("status", message=message, style=style)


def pluralize(count: int, singular: str, plural: str | None = None) -> str:
    """Return "1 chunk" / "3 chunks"."""
    if plural is None:
        plural = singular + "s"
    word = singular if count == 1 else plural
    return f"{count} {word}"


@contextmanager
def spinner(message: str, *, indent: int = 0) -> Iterator[None]:
    """Spinner with log suppression; plain line when not a TTY."""
    padding = " " * indent
    if _is_tty():
        with (
            suppress_console_logs(),
            _console.status(f"{padding}[cyan]{message}[/cyan]", spinner="dots"),
        ):
            yield
    else:
        _console.print(f"{padding}{message}...")
        yield


@contextmanager
def task(name: str) -> Iterator[None]:
    """Context manager for a named task with timing.

    Usage::

        with task("Verifying generation"):
            ...
        # Prints: ✓ Verifying generation (0.4s)
    """
    import time

    log = _get_logger()
    log.debug("task_start", task=name)
    status(f"{name}...", style="none", indent=0)
    start = time.perf_counter()

    try:
        yield
        elapsed = time.perf_counter() - start
        status(f"{name} ({elapsed:.1f}s)", style="success")
        log.debug("task_done", task=name, elapsed_s=elapsed)
    except Exception as e:
        elapsed = time.perf_counter() - start
        status(f"{name} failed: {e}", style="error")
        log.error("task_failed", task=name, elapsed_s=elapsed, error=str(e))
        raise


@contextmanager
def rebuild_bar(*, force: bool = False) -> Iterator[Callable[[Any], None]]:
    """Yield a rebuild event callback that drives a transient chunk progress bar.

    The bar appears once the first ``progress`` event reports a total; on a
    non-TTY the callback is a no-op and the caller prints a summary instead.
    """
    if not (_is_tty() or force):
        yield lambda _event: None
        return

    pbar = Progress(
        TextColumn("    {task.description}:"),
        BarColumn(bar_width=25, style="cyan", complete_style="cyan"),
        TaskProgressColumn(),
        TextColumn("{task.completed}/{task.total} chunks"),
        console=_console,
        transient=True,
    )
    task_ids: dict[str, Any] = {}

    def on_event(event: Any) -> None:
        if event.kind != "progress" or not event.chunks_total:
            return
        if "embed" not in task_ids:
            task_ids["embed"] = pbar.add_task("Embedding", total=event.chunks_total)
        pbar.update(task_ids["embed"], completed=event.chunks_done)

    with suppress_console_logs(), pbar:
        yield on_event


def make_histogram_table(buckets: dict[str, int], *, max_bar_width: int = 20) -> Table:
    """Render a bucket -> count mapping (e.g. confidence histogram) as bars."""
    table = Table(show_header=False, box=None, padding=(0, 1), pad_edge=False)
    table.add_column("bucket", style="cyan", width=8)
    table.add_column("count", justify="right", width=5)
    table.add_column("bar", width=max_bar_width)

    if not buckets:
        return table

    max_count = max(buckets.values())
    max_sqrt = math.sqrt(max_count) if max_count > 0 else 0.0

    for bucket, count in buckets.items():
        bar_len = int(max_bar_width * math.sqrt(count) / max_sqrt) if max_sqrt > 0 else 0
        table.add_row(bucket, str(count), Text("█" * bar_len, style="blue"))

    return table
