"""semindex status command - show index, lock and analytics state."""

import json

import click
from rich.table import Table

from semindex.cli.utils import handle_errors, open_index
from semindex.core.progress import get_console, make_histogram_table, status
from semindex.index.models import LockState


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status_command(ctx: click.Context, as_json: bool) -> None:
    """Show the current generation, write lock and query analytics."""
    index = open_index(ctx)
    with handle_errors():
        info = index.status()

    if as_json:
        click.echo(json.dumps(info.to_dict()))
        return

    console = get_console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("key", style="bold")
    table.add_column("value")
    table.add_row("Index", info.root)
    table.add_row("Generation", info.generation_id or "[dim]none[/dim]")
    table.add_row("Chunks", f"{info.chunk_count} from {info.unit_count} units")
    table.add_row("Model", info.index_model_id or info.active_model_id)
    table.add_row("Last rebuild", info.last_rebuild_at or "[dim]never[/dim]")
    if info.threshold is not None:
        table.add_row(
            "Threshold",
            f"{info.threshold.confidence_threshold:g}% ({info.threshold.source})",
        )
    lock = info.lock
    if lock.state == LockState.FREE or lock.holder is None:
        table.add_row("Write lock", lock.state.value)
    else:
        table.add_row(
            "Write lock",
            f"{lock.state.value} by pid {lock.holder.pid} on {lock.holder.hostname} "
            f"(session {lock.holder.session_id})",
        )
    console.print(table)

    if info.rebuild_required:
        status("Rebuild required", style="warning")
        for reason in info.reasons:
            status(reason, indent=2)

    analytics = info.analytics
    if analytics is not None and analytics.query_count:
        console.print()
        p50 = analytics.latency_p50_ms or 0.0
        p95 = analytics.latency_p95_ms or 0.0
        status(
            f"{analytics.query_count} queries, {analytics.empty_result_count} empty, "
            f"p50 {p50:.1f} ms, p95 {p95:.1f} ms"
        )
        console.print(make_histogram_table(analytics.confidence_histogram))
