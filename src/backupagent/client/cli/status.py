"""Connectivity and configuration commands.

Commands:
- ping: Check that the server is reachable
- show-config: Print the effective configuration
"""

from __future__ import annotations

import sys

import click

from backupagent.client.cli.config import load_agent_config


@click.command()
@click.pass_context
def ping(ctx: click.Context) -> None:
    """Check that the backup server answers."""
    from backupagent.client.api import BackupClient

    config = load_agent_config(ctx)
    with BackupClient(config.server) as client:
        reachable = client.ping()

    if not reachable:
        click.echo(f"Error: Server at {config.server.server_url} is not reachable", err=True)
        sys.exit(1)
    click.echo(f"Server at {config.server.server_url} is reachable")


@click.command("show-config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the effective configuration (credential hidden)."""
    from backupagent.client.identity import DeviceIdentity

    config = load_agent_config(ctx)
    identity = DeviceIdentity.local()

    click.echo(f"Config file:   {config.source_path}")
    click.echo(f"Client name:   {config.client_name or '-'}")
    click.echo(f"Device id:     {identity.device_id}")
    click.echo(f"Server:        {config.server.server_url}")
    click.echo(f"Registered:    {'yes' if config.server.has_token else 'no'}")
    click.echo(f"State db:      {config.state_path}")
    click.echo(f"Debounce:      {config.debounce.quiet_window:.3f}s")
    if config.max_file_size is not None:
        click.echo(f"Max file size: {config.max_file_size} bytes")
    click.echo("Watch directories:")
    for root in config.watch_roots:
        click.echo(f"  {root.label}: {root.path}")
    if config.watch_roots and config.watch_roots[0].excludes:
        click.echo("Excludes:")
        for pattern in config.watch_roots[0].excludes:
            click.echo(f"  {pattern.pattern}")
