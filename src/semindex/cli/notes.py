"""semindex notes commands - manage memory notes."""

import json

import click
from rich.table import Table

from semindex.cli.utils import resolve_index_root
from semindex.core.progress import get_console, status
from semindex.index.notes import NoteSource, NoteStore


def _store(ctx: click.Context) -> NoteStore:
    obj = ctx.ensure_object(dict)
    return NoteStore(resolve_index_root(obj.get("index_dir")))


@click.group("notes")
def notes_group() -> None:
    """Add, remove and list memory notes.

    Notes are indexed by ``semindex rebuild --notes``.
    """


@notes_group.command("add")
@click.argument("text", nargs=-1, required=True)
@click.option("--tag", "tags", multiple=True, help="Tag to attach (repeatable)")
@click.option(
    "--source",
    type=click.Choice([s.value for s in NoteSource]),
    default=None,
    help="What the note was captured from",
)
@click.option("--meta", "meta", multiple=True, help="Provenance field as KEY=VALUE (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def add_note(
    ctx: click.Context,
    text: tuple[str, ...],
    tags: tuple[str, ...],
    source: str | None,
    meta: tuple[str, ...],
    as_json: bool,
) -> None:
    """Store TEXT as a note (returns the existing note for duplicate text)."""
    metadata: dict[str, str] = {}
    for item in meta:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--meta")
        metadata[key] = value
    try:
        note = _store(ctx).add(" ".join(text), tags=list(tags), source=source, metadata=metadata)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="TEXT") from e
    if as_json:
        click.echo(note.model_dump_json())
    else:
        status(f"Note {note.note_id} stored", style="success")


@notes_group.command("rm")
@click.argument("note_id")
@click.pass_context
def remove_note(ctx: click.Context, note_id: str) -> None:
    """Delete the note NOTE_ID."""
    if not _store(ctx).delete(note_id):
        raise click.ClickException(f"No note with id {note_id}")
    status(f"Note {note_id} deleted", style="success")


@notes_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def list_notes(ctx: click.Context, as_json: bool) -> None:
    """List stored notes, oldest first."""
    notes = _store(ctx).list()
    if as_json:
        click.echo(json.dumps([n.model_dump(mode="json") for n in notes]))
        return
    if not notes:
        status("No notes stored")
        return

    table = Table()
    table.add_column("ID", style="cyan")
    table.add_column("Tags", style="magenta")
    table.add_column("Source", style="dim")
    table.add_column("Text", overflow="ellipsis", no_wrap=True, max_width=70)
    for note in notes:
        table.add_row(
            note.note_id,
            ", ".join(note.tags),
            note.source.value if note.source else "",
            note.text.replace("\n", " "),
        )
    get_console().print(table)
