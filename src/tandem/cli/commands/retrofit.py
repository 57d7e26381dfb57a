"""tandem retrofit / resolve / conflicts -- merge RUN work into BUILD."""

from __future__ import annotations

from pathlib import Path

import click

from tandem.cli.formatting import format_conflict_set, format_merge_result
from tandem.models.artifact import Artifact
from tandem.models.merge import Resolution


@click.command()
@click.argument("source")
@click.argument("target")
@click.option(
    "--policy",
    type=click.Choice(["partial", "atomic"], case_sensitive=False),
    default=None,
    help="Conflict policy (default: from config).",
)
@click.option("--request-id", default=None, help="Idempotency key for retries.")
@click.pass_context
def retrofit(
    ctx: click.Context, source: str, target: str, policy: str | None, request_id: str | None
) -> None:
    """Merge SOURCE track into TARGET track, keeping ancestry."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        result = t.request_retrofit(source, target, policy=policy, request_id=request_id)
        format_merge_result(result, console)


def parse_resolution(arg: str) -> tuple[str, Resolution]:
    """Parse ``Type:Name=CHOICE``.

    CHOICE is ``ours``, ``theirs``, ``delete`` or ``@file.json`` holding a
    custom artifact.
    """
    key, sep, choice = arg.rpartition("=")
    if not sep or not key:
        raise click.BadParameter(f"expected KEY=CHOICE, got '{arg}'")
    if choice in ("ours", "theirs"):
        return key, Resolution(choice=choice)
    if choice == "delete":
        return key, Resolution.custom(None)
    if choice.startswith("@"):
        artifact = Artifact.model_validate_json(Path(choice[1:]).read_text())
        return key, Resolution.custom(artifact)
    raise click.BadParameter(f"unknown choice '{choice}' for {key}")


@click.command()
@click.argument("conflict_set_id")
@click.argument("resolutions", nargs=-1, required=True)
@click.option("--request-id", default=None, help="Idempotency key for retries.")
@click.pass_context
def resolve(
    ctx: click.Context,
    conflict_set_id: str,
    resolutions: tuple[str, ...],
    request_id: str | None,
) -> None:
    """Resolve every entry of CONFLICT_SET_ID and complete the merge.

    Each RESOLUTION is ``Type:Name=ours|theirs|delete|@artifact.json``.
    """
    from tandem.cli import _tandem_session

    chosen = dict(parse_resolution(r) for r in resolutions)
    with _tandem_session(ctx) as (t, console):
        result = t.resolve_conflict(conflict_set_id, chosen, request_id=request_id)
        format_merge_result(result, console)


@click.command()
@click.option("--all", "show_all", is_flag=True, help="Include resolved and superseded sets.")
@click.option("--target", default=None, help="Only sets merging into this track.")
@click.pass_context
def conflicts(ctx: click.Context, show_all: bool, target: str | None) -> None:
    """List conflict sets awaiting resolution."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        sets = t.list_conflict_sets(target_track=target, status=None if show_all else "open")
        if not sets:
            console.print("[dim]No conflict sets.[/dim]")
            return
        for cs in sets:
            console.print(f"[bold]{cs.source_track} -> {cs.target_track}[/bold]")
            format_conflict_set(cs, console)
