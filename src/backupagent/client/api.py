"""HTTP client for the backup server API.

This module provides:
- BackupClient: HTTP client for communicating with the server
- Registration, health check and multipart backup upload
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any

import httpx

from backupagent.core.config import ServerConfig
from backupagent.core.errors import (
    APIError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ProtocolError,
    TransportError,
    ValidationError,
)
from backupagent.core.types import UploadBatch

logger = logging.getLogger(__name__)


@dataclass
class RegistrationResult:
    """Response of a successful registration."""

    status: str
    token: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegistrationResult:
        """Create from API response dictionary."""
        try:
            return cls(status=data["status"], token=data["token"])
        except (KeyError, TypeError) as e:
            raise ProtocolError(f"Malformed registration response: {data!r}") from e


def _detail(response: httpx.Response, default: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return default
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("error") or default)
    return default


class BackupClient:
    """HTTP client for the backup server API."""

    def __init__(self, config: ServerConfig) -> None:
        """Initialize the backup client.

        Args:
            config: Server address, credential and timeout.
        """
        self._config = config
        headers = {}
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers=headers,
        )

    @property
    def config(self) -> ServerConfig:
        return self._config

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> BackupClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def set_token(self, token: str) -> None:
        """Replace the bearer credential used on subsequent requests."""
        self._config.token = token
        self._client.headers["Authorization"] = f"Bearer {token}"

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 400:
            raise ValidationError(_detail(response, "Bad request"), 400)
        if response.status_code == 401:
            raise AuthenticationError("Invalid or revoked credential", 401)
        if response.status_code == 404:
            raise NotFoundError(f"Endpoint not found: {response.request.url}", 404)
        if response.status_code == 409:
            raise ConflictError(_detail(response, "Conflict"), 409)
        if response.status_code >= 400:
            raise APIError(_detail(response, "Unknown error"), response.status_code)
        return response

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransportError(f"Request to {url} failed: {e}") from e

    # === Health check ===

    def ping(self) -> bool:
        """Check if the server is reachable.

        Returns:
            True if GET /ping answered 200.
        """
        try:
            response = self._client.get("/ping")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Device registration ===

    def register(self, hostname: str, os_name: str) -> RegistrationResult:
        """Register this device.

        The server derives the device id from hostname and OS itself.

        Args:
            hostname: Machine hostname.
            os_name: Operating system name.

        Returns:
            RegistrationResult holding the issued credential.

        Raises:
            ValidationError: If hostname or os is empty.
            ConflictError: If the device is already registered.
            TransportError: If the server cannot be reached.
        """
        response = self._handle_response(
            self._request("POST", "/register", json={"hostname": hostname, "os": os_name})
        )
        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError("Registration response is not JSON") from e
        return RegistrationResult.from_dict(data)

    # === Backup upload ===

    def post_backup(self, batch: UploadBatch) -> httpx.Response:
        """Send a batch to POST /backup and return the raw response.

        File contents are streamed from open handles; httpx reads them in
        chunks while writing the multipart body.

        Raises:
            TransportError: On connection failures and timeouts.
            FileNotFoundError: If a file vanished after the batch was built.
        """
        data: dict[str, list[str]] = {
            "paths": [f.relative_name for f in batch.files],
            "deletions": list(batch.deletions),
        }
        with ExitStack() as stack:
            files = [
                (
                    "files",
                    (
                        f.relative_name.rsplit("/", 1)[-1],
                        stack.enter_context(open(f.local_path, "rb")),
                        "application/octet-stream",
                    ),
                )
                for f in batch.files
            ]
            logger.debug(
                "Uploading %d files, %d deletions", len(batch.files), len(batch.deletions)
            )
            return self._request("POST", "/backup", data=data, files=files or None)
