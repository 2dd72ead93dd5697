"""Backup commands.

Commands:
- backup-now: Run one full backup of every watch directory
- watch: Back up continuously as files change
"""

from __future__ import annotations

import sys
import time
from typing import TYPE_CHECKING

import click

from backupagent.client.cli.config import load_agent_config, open_state, require_credential

if TYPE_CHECKING:
    from backupagent.client.sync import FlushReport


def _echo_report(report: FlushReport) -> None:
    parts = []
    if report.uploaded:
        parts.append(f"{len(report.uploaded)} uploaded")
    if report.deleted:
        parts.append(f"{len(report.deleted)} deleted")
    if report.unchanged:
        parts.append(f"{report.unchanged} unchanged")
    if report.skipped:
        parts.append(f"{report.skipped} skipped")
    if report.scan_errors:
        parts.append(click.style(f"{report.scan_errors} unreadable", fg="yellow"))
    if not report.ok:
        parts.append(click.style("failed", fg="red"))
    click.echo(f"  ✓ {', '.join(parts) or 'nothing to do'}")


def _echo_failure(report: FlushReport) -> None:
    click.echo(f"Error: {report.result.message}", err=True)
    if report.result.auth_failed:
        click.echo("Register this device again with 'backupagent register'.", err=True)


@click.command("backup-now")
@click.pass_context
def backup_now(ctx: click.Context) -> None:
    """Back up every watch directory once.

    Files whose content did not change since the last backup are skipped;
    files removed locally are deleted on the server.
    """
    from backupagent.client.api import BackupClient
    from backupagent.client.sync import BackupCoordinator, TransferClient
    from backupagent.core.errors import InvalidWatchRootError

    config = load_agent_config(ctx)
    require_credential(config)

    with BackupClient(config.server) as client, open_state(config) as state:
        coordinator = BackupCoordinator(config, TransferClient(client), state)
        click.echo("Scanning watch directories...")
        try:
            report = coordinator.run_full_backup()
        except InvalidWatchRootError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    _echo_report(report)
    if not report.ok:
        _echo_failure(report)
        sys.exit(1)


@click.command()
@click.option(
    "--skip-initial-backup",
    is_flag=True,
    help="Do not run a full backup before watching.",
)
@click.pass_context
def watch(ctx: click.Context, skip_initial_backup: bool) -> None:
    """Watch the configured directories and back up changes continuously.

    Runs a full backup first, then uploads changes once the filesystem has
    been quiet for the debounce window. Pending changes are saved on exit.
    """
    from backupagent.client.api import BackupClient
    from backupagent.client.sync import BackupCoordinator, TransferClient
    from backupagent.core.errors import InvalidWatchRootError

    config = load_agent_config(ctx)
    require_credential(config)

    with BackupClient(config.server) as client, open_state(config) as state:
        coordinator = BackupCoordinator(config, TransferClient(client), state)

        try:
            if not skip_initial_backup:
                click.echo("Running initial backup...")
                report = coordinator.run_full_backup()
                _echo_report(report)
                if not report.ok:
                    _echo_failure(report)
                    if report.result.auth_failed:
                        sys.exit(1)

            coordinator.set_on_flush(_echo_report)
            coordinator.start()
        except InvalidWatchRootError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        click.echo("\nWatching for changes... (Ctrl+C to stop)\n")
        try:
            while not coordinator.is_halted:
                time.sleep(0.5)
        except KeyboardInterrupt:
            click.echo("\nStopping...")
        finally:
            coordinator.stop()

        if coordinator.is_halted:
            click.echo(f"Error: Backups halted: {coordinator.halt_reason}", err=True)
            click.echo("Pending changes were saved and will be retried on the next run.", err=True)
            sys.exit(1)
