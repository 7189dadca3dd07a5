"""semindex rebuild command - build a new generation."""

import json
from pathlib import Path

import click

from semindex.cli.utils import handle_errors, open_index
from semindex.core.progress import pluralize, rebuild_bar, status
from semindex.index._internal.discovery import DirectorySource
from semindex.index.models import BuildMode
from semindex.index.notes import NoteStore


@click.command()
@click.option("--full", is_flag=True, help="Re-embed everything instead of reusing unchanged units")
@click.option(
    "--source",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory to index (default: the directory containing the index)",
)
@click.option("--notes", "use_notes", is_flag=True, help="Index the stored memory notes")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def rebuild_command(
    ctx: click.Context, full: bool, source: Path | None, use_notes: bool, as_json: bool
) -> None:
    """Build and commit a new index generation.

    By default the build is incremental: units whose revision did not change
    keep their chunks and vectors. Switching models always rebuilds fully.
    """
    if source is not None and use_notes:
        raise click.UsageError("--source and --notes are mutually exclusive")

    index = open_index(ctx)
    if use_notes:
        units = NoteStore(index.root).units()
        label = "notes"
    else:
        source_dir = source if source is not None else index.root.parent
        units = DirectorySource(source_dir, exclude_paths=[index.root]).units()
        label = str(source_dir)

    mode = BuildMode.FULL if full else BuildMode.INCREMENTAL
    with handle_errors():
        if as_json:
            result = index.rebuild(units, mode)
        else:
            status(f"Rebuilding index from {label} ({mode.value})")
            with rebuild_bar() as on_event:
                result = index.rebuild(units, mode, on_event=on_event)

    stats = result.stats
    if as_json:
        click.echo(
            json.dumps(
                {
                    "session_id": result.session_id,
                    "generation_id": result.generation_id,
                    "stats": stats.to_dict(),
                    "skipped": [
                        {"chunk_id": s.chunk_id, "unit_id": s.unit_id, "reason": s.reason}
                        for s in result.skipped
                    ],
                }
            )
        )
        return

    status(
        f"Generation {result.generation_id}: {pluralize(stats.chunks_total, 'chunk')} "
        f"from {pluralize(stats.units_total, 'unit')} "
        f"({stats.new_chunks} new, {stats.reused_chunks} reused) "
        f"in {stats.duration_ms / 1000:.2f}s",
        style="success",
    )
    if stats.skipped_chunks:
        status(
            f"{pluralize(stats.skipped_chunks, 'chunk')} could not be embedded and were skipped",
            style="warning",
        )
