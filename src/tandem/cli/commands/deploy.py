"""tandem deploy / jobs / cancel -- promote a track head into an environment."""

from __future__ import annotations

import click

from tandem.cli.formatting import format_error, format_job, format_jobs


@click.command()
@click.argument("track")
@click.argument("env_id")
@click.option(
    "--overwrite-drift",
    is_flag=True,
    help="Deploy over artifacts edited manually on the target.",
)
@click.option("--request-id", default=None, help="Idempotency key for retries.")
@click.pass_context
def deploy(
    ctx: click.Context, track: str, env_id: str, overwrite_drift: bool, request_id: str | None
) -> None:
    """Deploy TRACK's head into ENV_ID and wait for the outcome."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        job = t.request_deployment(
            track, env_id, overwrite_drift=overwrite_drift, request_id=request_id
        )
        format_job(job, console)
        if job.state.value != "deployed":
            format_error(f"deployment ended in {job.state.value}", console)
            raise SystemExit(1)


@click.command()
@click.option("--env", "env_id", default=None, help="Only jobs for this environment.")
@click.option("--recover", is_flag=True, help="Settle jobs left running by a crash first.")
@click.pass_context
def jobs(ctx: click.Context, env_id: str | None, recover: bool) -> None:
    """List deployment jobs."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        if recover:
            recovered = t.recover_interrupted_jobs()
            console.print(f"Recovered {len(recovered)} interrupted job(s)")
        format_jobs(t.list_jobs(env_id), console)


@click.command()
@click.argument("job_id")
@click.pass_context
def cancel(ctx: click.Context, job_id: str) -> None:
    """Cancel JOB_ID before it starts deploying."""
    from tandem.cli import _tandem_session

    with _tandem_session(ctx) as (t, console):
        format_job(t.cancel_job(job_id), console)
