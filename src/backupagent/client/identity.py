"""Device identity and credential lifecycle on the agent side.

This module provides:
- DeviceIdentity: Derives this machine's device id and manages its credential
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from backupagent.client.config import update_config
from backupagent.core.errors import AuthenticationError
from backupagent.core.identity import generate_device_id, local_host_identity
from backupagent.core.types import DeviceCredential

if TYPE_CHECKING:
    from pathlib import Path

    from backupagent.client.api import BackupClient
    from backupagent.client.config import AgentConfig

logger = logging.getLogger(__name__)

TOKEN_CONFIG_KEY = "server.auth_token"


class DeviceIdentity:
    """Identity of this machine towards the backup server.

    The device id is never sent to the server: registration transmits the
    hostname and OS and the server derives the same id independently.
    """

    def __init__(self, hostname: str, os_name: str) -> None:
        self.hostname = hostname
        self.os_name = os_name
        self.device_id = generate_device_id(hostname, os_name)

    @classmethod
    def local(cls) -> DeviceIdentity:
        """Identity of the machine the agent runs on."""
        hostname, os_name = local_host_identity()
        return cls(hostname, os_name)

    def credential_from(self, config: AgentConfig) -> DeviceCredential:
        """Get the stored credential.

        Raises:
            AuthenticationError: If no credential is configured.
        """
        if not config.server.token:
            raise AuthenticationError(
                "No credential configured. Run 'backupagent register' first."
            )
        return DeviceCredential(device_id=self.device_id, token=config.server.token)

    def register(
        self,
        client: BackupClient,
        config_path: Path | None = None,
    ) -> DeviceCredential:
        """Register with the server and persist the issued credential.

        Registration is one-time: a second attempt from the same machine is
        rejected by the server with a ConflictError.

        Args:
            client: Unauthenticated client pointing at the server.
            config_path: YAML file to store the credential in (skipped if None).

        Returns:
            The new DeviceCredential.
        """
        logger.info("Registering device %s (%s/%s)", self.device_id, self.hostname, self.os_name)
        result = client.register(self.hostname, self.os_name)
        credential = DeviceCredential(device_id=self.device_id, token=result.token)

        if config_path is not None:
            update_config(config_path, TOKEN_CONFIG_KEY, credential.token)
            logger.info("Stored credential in %s", config_path)

        client.set_token(credential.token)
        return credential
