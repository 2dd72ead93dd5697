"""Shared configuration classes for backupagent.

This module defines configuration classes used by both client and server components.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ServerConfig:
    """Configuration for connecting to a backup server.

    Attributes:
        server_url: Base URL of the server (e.g., "https://backup.example.com").
        token: Bearer credential for this device ("" if not registered yet).
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str = ""
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def has_token(self) -> bool:
        """Check if a credential is configured."""
        return bool(self.token)

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS.

        Returns:
            True if server uses HTTPS.
        """
        return self.server_url.startswith("https://")
