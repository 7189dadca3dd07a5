"""semindex settings command - read or change the default threshold."""

import json

import click

from semindex.cli.utils import handle_errors, open_index
from semindex.core.progress import status


@click.command()
@click.option("--set", "new_threshold", type=float, default=None, help="New threshold (0-100)")
@click.option("--reset", is_flag=True, help="Restore the configured default threshold")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def settings_command(
    ctx: click.Context, new_threshold: float | None, reset: bool, as_json: bool
) -> None:
    """Show or change the confidence threshold used when a query omits one."""
    if new_threshold is not None and reset:
        raise click.UsageError("--set and --reset are mutually exclusive")

    index = open_index(ctx)
    with handle_errors():
        if new_threshold is not None:
            index.set_settings(new_threshold)
        elif reset:
            index.reset_settings()
        info = index.get_settings()

    if as_json:
        click.echo(json.dumps(info.to_dict()))
        return

    status(f"Confidence threshold: {info.confidence_threshold:g}% (from {info.source})")
    if info.updated_at:
        status(f"Updated at {info.updated_at}", indent=2)
