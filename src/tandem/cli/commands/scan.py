"""tandem scan / lag -- drift and retrofit-lag monitoring."""

from __future__ import annotations

import click

from tandem.cli.formatting import format_lag, format_scan


@click.command()
@click.argument("env_id")
@click.option("--request-id", default=None, help="Idempotency key for retries.")
@click.pass_context
def scan(ctx: click.Context, env_id: str, request_id: str | None) -> None:
    """Compare ENV_ID's live state with its last applied commit."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        format_scan(t.request_drift_scan(env_id, request_id=request_id), console)


@click.command()
@click.pass_context
def lag(ctx: click.Context) -> None:
    """Report RUN commits waiting too long for a retrofit."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        format_lag(t.check_retrofit_lag(), console)
