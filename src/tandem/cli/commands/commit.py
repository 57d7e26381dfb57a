"""tandem commit -- commit a JSON change list onto a track."""

from __future__ import annotations

from typing import IO

import click
from pydantic import TypeAdapter

from tandem.models.commit import ArtifactChange

_CHANGES = TypeAdapter(list[ArtifactChange])


@click.command()
@click.argument("track")
@click.argument("changes_file", type=click.File("r"))
@click.option("-m", "--message", default=None, help="Commit message.")
@click.option("--author", default=None, help="Commit author.")
@click.option("--request-id", default=None, help="Idempotency key for retries.")
@click.pass_context
def commit(
    ctx: click.Context,
    track: str,
    changes_file: IO[str],
    message: str | None,
    author: str | None,
    request_id: str | None,
) -> None:
    """Commit the changes in CHANGES_FILE onto TRACK.

    CHANGES_FILE holds a JSON list of ``{"kind": "add"|"modify"|"delete",
    "key": {...}, "artifact": {...}}`` objects (``-`` reads stdin).
    """
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        changes = _CHANGES.validate_json(changes_file.read())
        info = t.submit_commit(
            track, changes, message=message, author=author, request_id=request_id
        )
        console.print(
            f"[green]{track}[/green] -> [yellow]{info.commit_hash[:8]}[/yellow] "
            f"({len(info.changes)} change(s))"
        )
