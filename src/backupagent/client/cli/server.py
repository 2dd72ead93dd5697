"""Server administration commands.

Commands:
- server serve: Run the backup server
- server list-devices: List registered devices
- server revoke-device: Delete a device, revoking its credential
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from backupagent.server.database import Database

db_path_option = click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: BACKUPAGENT_DB_PATH or ./backupagent.db).",
)


def _open_database(db_path: str | None) -> Database:
    from backupagent.server.app import DB_PATH_ENV, DEFAULT_DB_PATH
    from backupagent.server.database import Database

    db_file = Path(db_path or os.environ.get(DB_PATH_ENV, DEFAULT_DB_PATH))
    if not db_file.exists():
        click.echo(f"Error: Database not found: {db_file}", err=True)
        click.echo("Make sure the server has been run at least once.", err=True)
        sys.exit(1)
    return Database(db_file)


@click.group()
def server() -> None:
    """Server management commands.

    These commands are for administrators of the backup server.
    """


@server.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port.")
def serve(host: str, port: int) -> None:
    """Run the backup server.

    Configuration comes from the environment: BACKUPAGENT_JWT_SECRET
    (required), BACKUPAGENT_DB_PATH, BACKUPAGENT_STORAGE_PATH,
    BACKUPAGENT_LOG_PATH and BACKUPAGENT_TOKEN_TTL_DAYS.
    """
    import uvicorn

    from backupagent.core.errors import ConfigError
    from backupagent.server.app import ServerSettings

    # Fail fast with a readable message instead of a uvicorn traceback
    try:
        ServerSettings.from_env()
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    uvicorn.run("backupagent.server.app:app_factory", factory=True, host=host, port=port)


@server.command("list-devices")
@db_path_option
def list_devices(db_path: str | None) -> None:
    """List registered devices."""
    db = _open_database(db_path)
    try:
        devices = db.list_devices()
    finally:
        db.close()

    if not devices:
        click.echo("No registered devices.")
        return
    for device in devices:
        click.echo(
            f"{device.device_id}  {device.hostname} ({device.os})  "
            f"last seen {device.last_seen.isoformat(timespec='seconds')}"
        )


@server.command("revoke-device")
@click.argument("device_id")
@db_path_option
def revoke_device(device_id: str, db_path: str | None) -> None:
    """Delete a registered device, revoking its credential.

    The device may register again afterwards. Files already backed up stay
    in storage.
    """
    db = _open_database(db_path)
    try:
        deleted = db.delete_device(device_id)
    finally:
        db.close()

    if not deleted:
        click.echo(f"Error: Device not found: {device_id}", err=True)
        sys.exit(1)
    click.echo(f"Revoked device {device_id}")
