"""Command-line interface for backupagent.

This module provides the main CLI entry point and assembles all commands.

Commands:
- register: Register this machine with the backup server
- backup-now: Run one full backup
- watch: Back up continuously as files change
- ping: Check that the server is reachable
- show-config: Print the effective configuration
- server: Server administration commands
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from backupagent.client.cli.backup import backup_now, watch
from backupagent.client.cli.register import register
from backupagent.client.cli.server import server
from backupagent.client.cli.status import ping, show_config


def configure_logging(verbosity: int) -> None:
    """Send backupagent logs to stderr.

    Args:
        verbosity: 0 for warnings, 1 for info, 2 or more for debug.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    package_logger = logging.getLogger("backupagent")
    for existing in package_logger.handlers[:]:
        package_logger.removeHandler(existing)
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False


@click.group()
@click.version_option(package_name="backupagent")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Configuration file (default: BACKUPAGENT_CONFIG or ~/.backupagent/config.yml).",
)
@click.option("--verbose", "-v", count=True, help="Increase log output (-v info, -vv debug).")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: int) -> None:
    """backupagent - personal file backup to your own server."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    configure_logging(verbose)


# Backup commands
cli.add_command(register)
cli.add_command(backup_now)
cli.add_command(watch)

# Diagnostics
cli.add_command(ping)
cli.add_command(show_config)

# Server admin commands
cli.add_command(server)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "configure_logging",
    "main",
]
