"""Configuration helpers shared by CLI commands."""

from __future__ import annotations

import sys
from pathlib import Path

import click

from backupagent.client.config import AgentConfig, load_config
from backupagent.client.state import LocalBackupState
from backupagent.core.errors import ConfigError


def load_agent_config(ctx: click.Context) -> AgentConfig:
    """Load the configuration selected by --config, exiting on errors."""
    path: Path | None = ctx.obj.get("config_path") if ctx.obj else None
    try:
        return load_config(path)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def require_credential(config: AgentConfig) -> None:
    """Exit unless the device has been registered."""
    if not config.server.has_token:
        click.echo(
            "Error: Not registered with a server. Run 'backupagent register' first.",
            err=True,
        )
        sys.exit(1)


def open_state(config: AgentConfig) -> LocalBackupState:
    """Open the local state database next to the configuration."""
    config.state_path.parent.mkdir(parents=True, exist_ok=True)
    return LocalBackupState(config.state_path)
