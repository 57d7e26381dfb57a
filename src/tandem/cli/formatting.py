"""Rich formatting helpers for the Tandem CLI.

Provides functions that format SDK data structures for terminal display.
Rich auto-detects TTY and degrades gracefully when piped (no ANSI codes).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from tandem.models.commit import CommitInfo
    from tandem.models.deployment import DeploymentJob
    from tandem.models.drift import DriftScanResult
    from tandem.models.events import RetrofitLagExceeded
    from tandem.models.merge import ConflictSet, MergeResult
    from tandem.models.track import EnvironmentInfo, TrackInfo

_JOB_STYLES = {
    "deployed": "green",
    "validation_failed": "yellow",
    "rolled_back": "yellow",
    "rollback_failed": "bold red",
    "cancelled": "dim",
}


def get_console(stderr: bool = False) -> Console:
    """Create a Rich Console that auto-detects TTY for graceful pipe degradation."""
    return Console(stderr=stderr)


def _short(commit_hash: str | None) -> str:
    return commit_hash[:8] if commit_hash else "-"


def format_tracks(tracks: list[TrackInfo], console: Console) -> None:
    if not tracks:
        console.print("[dim]No tracks.[/dim]")
        return
    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Track", style="green")
    table.add_column("Role", style="cyan")
    table.add_column("Head", style="yellow", width=8)
    table.add_column("Environment")
    for t in tracks:
        table.add_row(escape(t.name), t.role.value, _short(t.head), escape(t.environment or "-"))
    console.print(table)


def format_environments(envs: list[EnvironmentInfo], console: Console) -> None:
    if not envs:
        console.print("[dim]No environments.[/dim]")
        return
    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Environment", style="green")
    table.add_column("Track", style="cyan")
    table.add_column("Applied", style="yellow", width=8)
    table.add_column("Status")
    for e in envs:
        status = (
            f"[bold red]quarantined[/bold red] {escape(e.quarantine_reason or '')}"
            if e.quarantined
            else "ok"
        )
        table.add_row(
            escape(e.env_id), escape(e.track or "-"), _short(e.last_applied_commit), status
        )
    console.print(table)


def format_log(entries: list[CommitInfo], console: Console) -> None:
    """Display commit log in compact table format."""
    if not entries:
        console.print("[dim]No commits.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Hash", style="yellow", width=8)
    table.add_column("Time", style="dim")
    table.add_column("Kind", style="cyan", width=7)
    table.add_column("Changes", justify="right", style="green")
    table.add_column("Message")

    for entry in entries:
        table.add_row(
            entry.commit_hash[:8],
            entry.created_at.strftime("%Y-%m-%d %H:%M"),
            entry.kind.value,
            str(len(entry.changes)),
            escape(entry.message) if entry.message else "",
        )

    console.print(table)


def format_merge_result(result: MergeResult, console: Console) -> None:
    """Display the outcome of a retrofit or a conflict resolution."""
    if result.status == "up_to_date":
        console.print(
            f"[dim]'{escape(result.target_track)}' is up to date with "
            f"'{escape(result.source_track)}'.[/dim]"
        )
        return
    if result.status == "merged":
        console.print(
            f"Merged '{escape(result.source_track)}' into '{escape(result.target_track)}': "
            f"[yellow]{_short(result.merge_commit)}[/yellow] "
            f"({len(result.merged_keys)} artifact(s))"
        )
        return
    cs = result.conflict_set
    console.print(
        f"[bold yellow]Conflict[/bold yellow] retrofitting '{escape(result.source_track)}' "
        f"into '{escape(result.target_track)}'"
    )
    if result.partial_commit:
        console.print(f"  Partial commit: [yellow]{_short(result.partial_commit)}[/yellow]")
    if cs is not None:
        format_conflict_set(cs, console)


def format_conflict_set(cs: ConflictSet, console: Console) -> None:
    console.print(
        f"  Conflict set [bold]{cs.conflict_set_id}[/bold] ({cs.status.value}, "
        f"{len(cs.entries)} entr{'y' if len(cs.entries) == 1 else 'ies'})"
    )
    for entry in cs.entries:
        console.print(f"    {escape(str(entry))}")


def format_job(job: DeploymentJob, console: Console) -> None:
    style = _JOB_STYLES.get(job.state.value, "cyan")
    console.print(
        f"Job [bold]{job.job_id}[/bold] {escape(job.track)} -> {escape(job.env_id)} "
        f"@ [yellow]{_short(job.commit_hash)}[/yellow]: [{style}]{job.state.value}[/{style}]"
    )
    if job.planned_keys:
        console.print(f"  Planned: {escape(', '.join(str(k) for k in job.planned_keys))}")
    if job.error:
        console.print(f"  [red]{escape(job.error)}[/red]")


def format_jobs(jobs: list[DeploymentJob], console: Console) -> None:
    if not jobs:
        console.print("[dim]No deployment jobs.[/dim]")
        return
    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Job", width=12)
    table.add_column("Environment", style="green")
    table.add_column("Commit", style="yellow", width=8)
    table.add_column("State")
    table.add_column("Updated", style="dim")
    for job in jobs:
        style = _JOB_STYLES.get(job.state.value, "cyan")
        table.add_row(
            job.job_id[:12],
            escape(job.env_id),
            _short(job.commit_hash),
            f"[{style}]{job.state.value}[/{style}]",
            job.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


def format_scan(result: DriftScanResult, console: Console) -> None:
    if not result.records:
        console.print(f"[green]No drift on {escape(result.env_id)}.[/green]")
        return
    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Artifact")
    table.add_column("Kind", style="cyan")
    table.add_column("Severity")
    table.add_column("Since", style="dim")
    for r in result.records:
        sev = "[bold red]critical[/bold red]" if r.severity.value == "critical" else "[yellow]warning[/yellow]"
        table.add_row(
            escape(str(r.key)), r.kind.value, sev, r.detected_at.strftime("%Y-%m-%d %H:%M")
        )
    console.print(table)


def format_lag(events: list[RetrofitLagExceeded], console: Console) -> None:
    if not events:
        console.print("[green]No retrofit lag.[/green]")
        return
    for e in events:
        console.print(
            f"[yellow]Lagging:[/yellow] {escape(e.source_track)} -> {escape(e.target_track)}: "
            f"{e.pending_commits} commit(s), oldest {_short(e.oldest_commit)} "
            f"from {e.oldest_commit_at.strftime('%Y-%m-%d %H:%M')}"
        )


def format_error(message: str, console: Console) -> None:
    """Display an error message."""
    console.print(f"[red]Error:[/red] {message}", highlight=False)
