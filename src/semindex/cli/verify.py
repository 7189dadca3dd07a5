"""semindex verify command - check a generation's integrity."""

import json

import click

from semindex.cli.utils import handle_errors, open_index
from semindex.core.progress import status, task


@click.command()
@click.option("--generation", "generation_id", default=None, help="Generation to check")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def verify_command(ctx: click.Context, generation_id: str | None, as_json: bool) -> None:
    """Verify checksums, counts and vector rows of a generation.

    Checks the current generation unless --generation is given. Exits 1 when
    any issue is found.
    """
    index = open_index(ctx)
    with handle_errors():
        if as_json:
            report = index.verify(generation_id)
        else:
            with task("Verifying generation"):
                report = index.verify(generation_id)

    if as_json:
        click.echo(json.dumps(report.to_dict()))
    elif report.generation_id is None:
        status("No generation to verify", style="warning")
    elif report.passed:
        status(
            f"Generation {report.generation_id} OK "
            f"({report.chunks_checked} chunks, {report.vectors_checked} vectors)",
            style="success",
        )
    else:
        status(f"Generation {report.generation_id} failed verification", style="error")
        for issue in report.issues:
            status(f"{issue.category}: {issue.message}", indent=2)

    if not report.passed:
        ctx.exit(1)
