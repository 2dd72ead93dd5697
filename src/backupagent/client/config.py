"""Agent configuration loaded from YAML.

This module provides:
- AgentConfig: Explicit configuration object passed to every component
- WatchRoot: A watched directory plus its compiled exclusions
- load_config / update_config: Read the YAML file and rewrite single keys

Example file:

    client:
      name: laptop
    backup:
      watch_directories:
        - ~/Documents
      exclude:
        - "*.log"
        - "node_modules/*"
    server:
      address: http://localhost:8000
      auth_token: ""
    advanced:
      debounce_ms: 500
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from backupagent.client.sync.filter import ExcludePattern, compile_patterns
from backupagent.core.config import ServerConfig
from backupagent.core.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "BACKUPAGENT_CONFIG"


def get_config_dir() -> Path:
    """Get the configuration directory for backupagent.

    Returns:
        Path to ~/.backupagent or equivalent.
    """
    return Path.home() / ".backupagent"


def get_config_file() -> Path:
    """Get the path to the config file (BACKUPAGENT_CONFIG overrides)."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return get_config_dir() / "config.yml"


@dataclass(frozen=True)
class WatchRoot:
    """A watched directory and its exclusion patterns."""

    path: Path
    label: str
    excludes: tuple[ExcludePattern, ...] = ()

    def contains(self, path: Path) -> bool:
        return path == self.path or self.path in path.parents

    def relative_name(self, path: Path) -> str:
        """Name of a file as sent to the server: label/relative/path."""
        rel = path.relative_to(self.path).as_posix()
        return f"{self.label}/{rel}"


@dataclass
class DebounceSettings:
    """Time-based parameters of the event pipeline, in seconds."""

    quiet_window: float = 0.5
    tick_interval: float = 0.1


@dataclass
class RetrySettings:
    """Backoff policy for failed transfers."""

    initial_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    fatal_retry_limit: int = 0


@dataclass
class AgentConfig:
    """Complete agent configuration, constructed once at startup."""

    client_name: str
    watch_roots: list[WatchRoot]
    server: ServerConfig
    debounce: DebounceSettings = field(default_factory=DebounceSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    max_file_size: int | None = None  # bytes
    state_path: Path = field(default_factory=lambda: get_config_dir() / "state.db")
    source_path: Path | None = None

    def root_for(self, path: Path) -> WatchRoot | None:
        """Find the watch root owning a path (deepest match wins)."""
        matches = [r for r in self.watch_roots if r.contains(path)]
        if not matches:
            return None
        return max(matches, key=lambda r: len(r.path.parts))


def _section(raw: dict[str, Any], name: str, required: bool = True) -> dict[str, Any]:
    value = raw.get(name)
    if value is None:
        if required:
            raise ConfigError(f"Missing '{name}' section in configuration")
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' section must be a mapping")
    return value


def _as_float(value: Any, key: str) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be a number, got {value!r}") from e
    if result < 0:
        raise ConfigError(f"'{key}' must not be negative")
    return result


def _build_watch_roots(directories: Any, exclude: Any) -> list[WatchRoot]:
    if not isinstance(directories, list) or not directories:
        raise ConfigError("'backup.watch_directories' must be a non-empty list")
    if exclude is None:
        exclude = []
    if not isinstance(exclude, list) or not all(isinstance(p, str) for p in exclude):
        raise ConfigError("'backup.exclude' must be a list of glob patterns")

    patterns = compile_patterns(exclude)

    roots: list[WatchRoot] = []
    labels: set[str] = set()
    for entry in directories:
        if isinstance(entry, dict):
            raw_path = entry.get("path")
            label = entry.get("label")
        else:
            raw_path, label = entry, None
        if not isinstance(raw_path, str) or not raw_path:
            raise ConfigError(f"Invalid watch directory entry: {entry!r}")

        path = Path(raw_path).expanduser().resolve()
        label = label or path.name or "root"
        if label in labels:
            raise ConfigError(
                f"Duplicate watch directory label '{label}'; set an explicit 'label'"
            )
        labels.add(label)
        roots.append(WatchRoot(path=path, label=label, excludes=patterns))
    return roots


def parse_config(raw: dict[str, Any], source_path: Path | None = None) -> AgentConfig:
    """Build an AgentConfig from a parsed YAML mapping.

    Raises:
        ConfigError: On missing sections, wrong types or invalid patterns.
    """
    client = _section(raw, "client", required=False)
    backup = _section(raw, "backup")
    server = _section(raw, "server")
    advanced = _section(raw, "advanced", required=False)

    address = server.get("address")
    if not isinstance(address, str) or not address:
        raise ConfigError("'server.address' is required")
    if not address.startswith(("http://", "https://")):
        address = f"http://{address}"

    server_config = ServerConfig(
        server_url=address,
        token=str(server.get("auth_token") or ""),
        timeout=_as_float(server.get("timeout", 30.0), "server.timeout"),
        verify_ssl=bool(server.get("verify_ssl", True)),
    )

    debounce = DebounceSettings(
        quiet_window=_as_float(advanced.get("debounce_ms", 500), "advanced.debounce_ms") / 1000,
        tick_interval=_as_float(advanced.get("tick_ms", 100), "advanced.tick_ms") / 1000,
    )
    if debounce.tick_interval == 0:
        raise ConfigError("'advanced.tick_ms' must be greater than zero")

    retry = RetrySettings(
        initial_delay=_as_float(
            advanced.get("retry_delay_seconds", 1.0), "advanced.retry_delay_seconds"
        ),
        max_delay=_as_float(
            advanced.get("max_retry_delay_seconds", 60.0), "advanced.max_retry_delay_seconds"
        ),
        fatal_retry_limit=int(_as_float(
            advanced.get("fatal_retry_limit", 0), "advanced.fatal_retry_limit"
        )),
    )

    max_size_mb = advanced.get("max_file_size_mb")
    max_file_size = None
    if max_size_mb is not None:
        max_file_size = int(_as_float(max_size_mb, "advanced.max_file_size_mb") * 1024 * 1024)

    state_path = advanced.get("state_path")

    config = AgentConfig(
        client_name=str(client.get("name") or ""),
        watch_roots=_build_watch_roots(
            backup.get("watch_directories"), backup.get("exclude")
        ),
        server=server_config,
        debounce=debounce,
        retry=retry,
        max_file_size=max_file_size,
        source_path=source_path,
    )
    if state_path:
        config.state_path = Path(state_path).expanduser()
    return config


def load_config(path: Path | None = None) -> AgentConfig:
    """Load and validate the YAML configuration file.

    Args:
        path: Config file (default: get_config_file()).

    Returns:
        Validated AgentConfig.

    Raises:
        ConfigError: If the file is missing, unparsable or invalid.
    """
    config_file = Path(path) if path else get_config_file()
    try:
        text = config_file.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file {config_file}: {e}") from e

    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse configuration: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be a mapping")

    config = parse_config(raw, source_path=config_file)
    logger.debug(
        "Loaded config from %s (%d watch roots)", config_file, len(config.watch_roots)
    )
    return config


def update_config(path: Path, key_path: str, value: Any) -> None:
    """Set one dotted key in the YAML file, creating missing mappings.

    Args:
        path: Config file to rewrite.
        key_path: Dot-separated key, e.g. "server.auth_token".
        value: New value.

    Raises:
        ConfigError: If the file cannot be read/written or a key along the
            path is not a mapping.
    """
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) if path.exists() else {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Error while updating config: {e}") from e
    raw = raw or {}

    keys = key_path.split(".")
    node = raw
    for key in keys[:-1]:
        if not isinstance(node, dict):
            raise ConfigError(f"Error while updating config: '{key_path}' is not a mapping")
        child = node.get(key)
        if child is None:
            child = {}
            node[key] = child
        node = child
    if not isinstance(node, dict):
        raise ConfigError(f"Error while updating config: '{key_path}' is not a mapping")
    node[keys[-1]] = value

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(raw, sort_keys=False), encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Error while updating config: {e}") from e
