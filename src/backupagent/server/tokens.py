"""Device credential signing and verification.

Credentials are HS256 JWTs carrying the device id. A decoded credential is
only accepted by the API if its device is still registered and the stored
token hash matches, so deleting a device revokes its credential.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEVICE_CLAIM = "device_id"


class TokenSigner:
    """Issues and decodes device credentials."""

    def __init__(self, secret_key: str, ttl_days: int | None = None) -> None:
        """Initialize the signer.

        Args:
            secret_key: HMAC secret.
            ttl_days: Credential lifetime; None issues non-expiring credentials.

        Raises:
            ValueError: If the secret is empty.
        """
        if not secret_key:
            raise ValueError("JWT secret must not be empty")
        self._secret_key = secret_key
        self._ttl = timedelta(days=ttl_days) if ttl_days else None

    def issue(self, device_id: str) -> str:
        """Create a signed credential for a device."""
        now = datetime.now(UTC)
        claims: dict[str, Any] = {
            DEVICE_CLAIM: device_id,
            "iat": now,
            "jti": uuid.uuid4().hex,
        }
        if self._ttl is not None:
            claims["exp"] = now + self._ttl
        return str(jwt.encode(claims, self._secret_key, algorithm=ALGORITHM))

    def verify(self, token: str) -> str | None:
        """Decode a credential.

        Returns:
            The device id, or None if the signature, expiry or claims are invalid.
        """
        try:
            payload: dict[str, Any] = jwt.decode(token, self._secret_key, algorithms=[ALGORITHM])
        except JWTError:
            logger.debug("Failed to decode device credential", exc_info=True)
            return None

        device_id = payload.get(DEVICE_CLAIM)
        if not isinstance(device_id, str) or not device_id:
            return None
        return device_id
