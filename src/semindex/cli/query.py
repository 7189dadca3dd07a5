"""semindex query command - confidence-filtered semantic search."""

import json

import click
from rich.table import Table

from semindex.cli.utils import handle_errors, open_index
from semindex.core.progress import get_console, spinner, status


@click.command()
@click.argument("text", nargs=-1, required=True)
@click.option("-k", "k", type=int, default=None, help="Maximum number of hits")
@click.option(
    "--min-confidence",
    type=float,
    default=None,
    help="Drop hits below this confidence percent (default: stored threshold)",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def query_command(
    ctx: click.Context,
    text: tuple[str, ...],
    k: int | None,
    min_confidence: float | None,
    as_json: bool,
) -> None:
    """Search the current generation for TEXT.

    Hits are ranked by confidence (0-100). Only hits at or above the
    threshold are returned, so the result may be empty.
    """
    index = open_index(ctx)
    query_text = " ".join(text)
    with handle_errors():
        if as_json:
            result = index.query(query_text, k=k, min_confidence=min_confidence)
        else:
            with spinner("Searching"):
                result = index.query(query_text, k=k, min_confidence=min_confidence)

    if as_json:
        click.echo(json.dumps(result.to_dict()))
        return

    if not result.hits:
        status(f"No results above {result.min_confidence:g}%", style="warning")
        return

    table = Table(title=f"Generation {result.generation_id}", title_justify="left")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Confidence", justify="right", style="green")
    table.add_column("Unit", style="cyan")
    table.add_column("Lines", justify="right")
    table.add_column("Snippet", overflow="ellipsis", no_wrap=True, max_width=60)
    for hit in result.hits:
        table.add_row(
            str(hit.rank),
            f"{hit.confidence:.2f}%",
            hit.unit_id,
            f"{hit.start_line}-{hit.end_line}",
            hit.snippet.replace("\n", " "),
        )
    get_console().print(table)
