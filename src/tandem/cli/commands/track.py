"""tandem track -- create and list tracks."""

from __future__ import annotations

import click

from tandem.cli.formatting import format_tracks


@click.group()
def track() -> None:
    """Manage RUN and BUILD tracks."""


@track.command("create")
@click.argument("name")
@click.option(
    "--role",
    type=click.Choice(["run", "build"], case_sensitive=False),
    required=True,
    help="RUN mirrors production; BUILD mirrors the next release.",
)
@click.option("--from", "from_track", default=None, help="Fork at this track's head.")
@click.option("--env", "environment", default=None, help="Environment the track deploys to.")
@click.pass_context
def create(
    ctx: click.Context, name: str, role: str, from_track: str | None, environment: str | None
) -> None:
    """Create track NAME, empty or forked from another track."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        info = t.create_track(name, role.lower(), from_track=from_track, environment=environment)
        console.print(f"Created track [green]{info.name}[/green] ({info.role.value})")


@track.command("list")
@click.pass_context
def list_tracks(ctx: click.Context) -> None:
    """List tracks with their heads and bindings."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        format_tracks(t.list_tracks(), console)
