"""tandem env -- manage deployment environments."""

from __future__ import annotations

import click

from tandem.cli.formatting import format_environments


@click.group()
def env() -> None:
    """Manage deployment environments."""


@env.command("create")
@click.argument("env_id")
@click.option("--track", default=None, help="Track to bind to the environment.")
@click.pass_context
def create(ctx: click.Context, env_id: str, track: str | None) -> None:
    """Register environment ENV_ID."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        info = t.create_environment(env_id, track=track)
        console.print(f"Created environment [green]{info.env_id}[/green]")


@env.command("list")
@click.pass_context
def list_envs(ctx: click.Context) -> None:
    """List environments and their last applied commits."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        format_environments(t.list_environments(), console)


@env.command("bind")
@click.argument("track")
@click.argument("env_id")
@click.pass_context
def bind(ctx: click.Context, track: str, env_id: str) -> None:
    """Bind TRACK to deploy into ENV_ID."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        t.bind(track, env_id)
        console.print(f"Bound [green]{track}[/green] -> {env_id}")


@env.command("absorb")
@click.argument("env_id")
@click.argument("keys", nargs=-1)
@click.option("-m", "--message", default=None, help="Commit message.")
@click.pass_context
def absorb(ctx: click.Context, env_id: str, keys: tuple[str, ...], message: str | None) -> None:
    """Commit live drift of ENV_ID onto its bound track.

    KEYS limits absorption to the given ``Type:Name`` artifacts.
    """
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        info = t.absorb_drift(env_id, list(keys) or None, message=message)
        if info is None:
            console.print("[dim]Nothing to absorb.[/dim]")
        else:
            console.print(
                f"Absorbed {len(info.changes)} artifact(s) into [green]{info.track}[/green] "
                f"as [yellow]{info.commit_hash[:8]}[/yellow]"
            )


@env.command("clear-quarantine")
@click.argument("env_id")
@click.pass_context
def clear_quarantine(ctx: click.Context, env_id: str) -> None:
    """Re-enable deployments to ENV_ID after manual repair."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        t.clear_quarantine(env_id)
        console.print(f"Quarantine cleared on [green]{env_id}[/green]")
