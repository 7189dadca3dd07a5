"""SemIndex CLI - semindex command."""

from pathlib import Path

import click

from semindex.cli.clean import clean_command
from semindex.cli.notes import notes_group
from semindex.cli.query import query_command
from semindex.cli.rebuild import rebuild_command
from semindex.cli.settings import settings_command
from semindex.cli.status import status_command
from semindex.cli.verify import verify_command
from semindex.core.logging import configure_logging


@click.group()
@click.version_option(version="0.1.0", prog_name="semindex")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option(
    "--index-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Index directory (default: nearest .semindex, or $SEMINDEX_INDEX_DIR)",
)
@click.option(
    "--backend",
    type=click.Choice(["fastembed", "hashing"]),
    default=None,
    help="Override the configured embedding backend",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, index_dir: Path | None, backend: str | None) -> None:
    """SemIndex - persistent semantic search over code and notes."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["index_dir"] = index_dir
    ctx.obj["backend"] = backend
    configure_logging(level="DEBUG" if verbose else "WARNING")


cli.add_command(rebuild_command, name="rebuild")
cli.add_command(query_command, name="query")
cli.add_command(settings_command, name="settings")
cli.add_command(status_command, name="status")
cli.add_command(verify_command, name="verify")
cli.add_command(clean_command, name="clean")
cli.add_command(notes_group, name="notes")


if __name__ == "__main__":
    cli()
