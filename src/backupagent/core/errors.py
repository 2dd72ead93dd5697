"""Error taxonomy shared by the backup agent and the backup server.

Categories:
- ConfigError: malformed or missing settings, fatal at startup
- FilesystemError: per-operation filesystem failures, logged as warnings
- APIError and subclasses: failures talking to the backup server
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class BackupAgentError(Exception):
    """Base exception for backupagent errors."""


class ConfigError(BackupAgentError):
    """Configuration is missing or invalid."""


class InvalidWatchRootError(ConfigError):
    """A watch root does not exist or is not a directory."""


class FilesystemError(BackupAgentError):
    """A filesystem operation failed for a single path."""

    def __init__(self, message: str, path: Path) -> None:
        super().__init__(message)
        self.path = path


class APIError(BackupAgentError):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransportError(APIError):
    """Network failure (connection refused, timeout). Retryable."""


class AuthenticationError(APIError):
    """Credential missing, invalid or revoked."""


class NotFoundError(APIError):
    """Endpoint or resource not found."""


class ConflictError(APIError):
    """Device already registered."""


class ValidationError(APIError):
    """Server rejected the request payload."""


class ProtocolError(APIError):
    """Unexpected server response shape or status."""
