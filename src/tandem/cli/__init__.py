"""Tandem CLI -- terminal interface for track and environment synchronization.

This module is NEVER imported from tandem/__init__.py.
It is only loaded via the ``tandem`` entry point defined in pyproject.toml.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

try:
    import click
except ImportError:
    raise ImportError(
        "CLI dependencies not installed. Install with: pip install tandem-sync[cli]"
    ) from None

from dotenv import load_dotenv
from rich.logging import RichHandler

from tandem.cli.formatting import format_error, get_console

if TYPE_CHECKING:
    from collections.abc import Iterator

    from rich.console import Console

    from tandem.tandem import Tandem


@click.group()
@click.option(
    "--db",
    default=None,
    envvar="TANDEM_DB",
    help="Path to tandem database (default: .tandem.db, or db_path from --config).",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    envvar="TANDEM_CONFIG",
    type=click.Path(exists=True, dir_okay=False),
    help="TOML configuration file.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log engine activity to stderr.")
@click.pass_context
def cli(ctx: click.Context, db: str | None, config_path: str | None, verbose: bool) -> None:
    """Tandem: keep RUN and BUILD tracks and their environments reconciled."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db
    ctx.obj["config_path"] = config_path
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=get_console(stderr=True), show_path=False)],
        )


def main() -> None:
    """Console entry point: load ``.env`` then run the group."""
    load_dotenv()
    cli(obj={})


def _get_tandem(ctx: click.Context) -> Tandem:
    """Open a Tandem instance from Click context.

    ``--db`` wins over the configuration file's ``db_path``.
    """
    from tandem.models.config import SyncConfig, load_config
    from tandem.tandem import Tandem

    config_path = ctx.obj.get("config_path")
    config = load_config(config_path) if config_path else SyncConfig()
    db_path = ctx.obj.get("db_path")
    if db_path is None and config.db_path == ":memory:" and config.db_url is None:
        db_path = ".tandem.db"
    return Tandem.open(db_path, config=config)


@contextmanager
def _tandem_session(ctx: click.Context) -> Iterator[tuple[Tandem, Console]]:
    """Context manager that opens a Tandem, yields (tandem, console), and handles cleanup.

    Ensures the instance is closed on exit and formats exceptions as CLI
    errors.  Commands with special exception handling can catch specific
    errors inside the ``with`` block before this handler runs.
    """
    console = get_console()
    try:
        t = _get_tandem(ctx)
        try:
            yield t, console
        finally:
            t.close()
    except SystemExit:
        raise
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None


# Register subcommands after cli group is defined
from tandem.cli.commands.commit import commit  # noqa: E402
from tandem.cli.commands.deploy import cancel, deploy, jobs  # noqa: E402
from tandem.cli.commands.env import env  # noqa: E402
from tandem.cli.commands.log import log  # noqa: E402
from tandem.cli.commands.retrofit import conflicts, resolve, retrofit  # noqa: E402
from tandem.cli.commands.scan import lag, scan  # noqa: E402
from tandem.cli.commands.track import track  # noqa: E402

cli.add_command(track)
cli.add_command(env)
cli.add_command(commit)
cli.add_command(log)
cli.add_command(retrofit)
cli.add_command(resolve)
cli.add_command(conflicts)
cli.add_command(deploy)
cli.add_command(jobs)
cli.add_command(cancel)
cli.add_command(scan)
cli.add_command(lag)
