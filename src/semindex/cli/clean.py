"""semindex clean command - drop all generations of an index."""

import click
import questionary

from semindex.cli.utils import handle_errors, open_index
from semindex.core.progress import get_console


@click.command()
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def clean_command(ctx: click.Context, yes: bool) -> None:
    """Remove every generation, the CURRENT pointer and query analytics.

    settings.yaml, config.yaml and stored notes are kept. Fails with exit
    code 75 while a rebuild holds the write lock.
    """
    console = get_console()
    index = open_index(ctx)
    generations = index.store.describe()

    if not generations:
        console.print("[yellow]Nothing to clean[/yellow] - no generations found")
        return

    console.print("\n[bold]The following will be permanently deleted:[/bold]\n")
    for gen in generations:
        console.print(f"  [cyan]•[/cyan] generation {gen['generation_id']}")
    console.print()

    if not yes:
        answer = questionary.select(
            "This action cannot be undone. Are you sure?",
            choices=[
                questionary.Choice("No, keep the index", value=False),
                questionary.Choice("Yes, delete all generations", value=True),
            ],
            style=questionary.Style(
                [
                    ("question", "bold"),
                    ("highlighted", "fg:red bold"),
                    ("selected", "fg:red"),
                ]
            ),
        ).ask()

        if not answer:
            console.print("[dim]Cancelled[/dim]")
            return

    with handle_errors():
        index.clean()
    console.print("[green]Index cleaned[/green]")
