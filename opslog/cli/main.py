"""opslog CLI - Main entry point.

Usage:
    opslog login
    opslog logs fetch <task-id> <work-id> --tail 100
    opslog logs stream <task-id> <work-id>
    opslog config show
"""

import sys
import click

from opslog import __version__
from opslog.cli.utils.config import apply_env_profile
from opslog.cli.context import (
    Context,
    pass_context,
    EXIT_GENERAL_ERROR,
)
from opslog.cli.commands import login, logout, whoami, logs, config


def _apply_profile_option(ctx: click.Context, param: click.Parameter, value: str | None) -> str | None:
    if value:
        return apply_env_profile(value)
    return value


@click.group()
@click.option(
    "--profile",
    help="Apply env profile (OPSLOG_PROFILE_<NAME>_*)",
    is_eager=True,
    callback=_apply_profile_option,
)
@click.version_option(version=__version__, prog_name="opslog")
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Output as JSON (machine-readable)",
)
@click.option(
    "--debug",
    is_flag=True,
    help="Enable debug logging",
)
@pass_context
def main(ctx: Context, profile: str | None, json_output: bool, debug: bool) -> None:
    """Operations log client.

    Follow the logs of long-running platform tasks live, or fetch
    snapshots of them, with a stored login session.

    \b
    Examples:
        opslog login
        opslog logs stream 42 7
        opslog logs fetch 42 7 --tail 100
        opslog --json logs fetch 42 7
    """
    ctx.json_output = json_output
    ctx.debug = debug
    ctx.profile = profile

    if debug:
        import logging

        logging.basicConfig(level=logging.DEBUG)


# Register commands
main.add_command(login)
main.add_command(logout)
main.add_command(whoami)
main.add_command(logs)
main.add_command(config)


def cli() -> None:
    """Entry point for the CLI."""
    try:
        main()
    except Exception as e:  # pragma: no cover - top-level safety net
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_GENERAL_ERROR)


if __name__ == "__main__":  # pragma: no cover
    cli()
