"""tandem log -- show track history."""

from __future__ import annotations

import click

from tandem.cli.formatting import format_log


@click.command()
@click.argument("track")
@click.option("-n", "--limit", default=20, type=int, help="Maximum number of commits to show.")
@click.pass_context
def log(ctx: click.Context, track: str, limit: int) -> None:
    """Show TRACK's first-parent history from its head backward."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        format_log(t.log(track, limit=limit), console)
