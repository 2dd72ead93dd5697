"""Device registration command.

Commands:
- register: Register this machine with the backup server
"""

from __future__ import annotations

import sys

import click

from backupagent.client.cli.config import load_agent_config


@click.command()
@click.pass_context
def register(ctx: click.Context) -> None:
    """Register this machine with the backup server.

    The server derives the device id from this machine's hostname and OS;
    the issued credential is written to the configuration file.
    """
    from backupagent.client.api import BackupClient
    from backupagent.client.identity import DeviceIdentity
    from backupagent.core.errors import (
        BackupAgentError,
        ConflictError,
        TransportError,
        ValidationError,
    )

    config = load_agent_config(ctx)

    if config.server.has_token:
        click.echo("Warning: This machine already has a credential.", err=True)
        if not click.confirm("Do you want to register again?"):
            sys.exit(0)

    identity = DeviceIdentity.local()
    click.echo(f"Registering {identity.hostname} ({identity.os_name}) with {config.server.server_url}...")

    with BackupClient(config.server) as client:
        try:
            credential = identity.register(client, config.source_path)
        except ConflictError:
            click.echo("Error: This device is already registered on the server.", err=True)
            click.echo("Ask the server admin to revoke it before registering again.")
            sys.exit(1)
        except ValidationError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        except TransportError:
            click.echo(f"Error: Could not connect to server at {config.server.server_url}", err=True)
            click.echo("Make sure the server is running and accessible.")
            sys.exit(1)
        except BackupAgentError as e:
            click.echo(f"Error: Registration failed: {e}", err=True)
            sys.exit(1)

    click.echo("\nDevice registered successfully!")
    click.echo(f"Device id: {credential.device_id}")
