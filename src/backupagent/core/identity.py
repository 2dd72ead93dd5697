"""Deterministic device identifiers.

Both the agent and the server derive the device id from the host identity,
so the client never has to transmit an id of its own choosing.
"""

from __future__ import annotations

import hashlib
import platform
import socket
import uuid

DEVICE_ID_SEPARATOR = "/"


def generate_device_id(hostname: str, os_name: str) -> str:
    """Derive a stable device id from hostname and OS name.

    The pair is joined with a fixed separator and hashed with SHA-256; the
    raw 32-byte digest is the name of a UUIDv5 in the URL namespace.

    Args:
        hostname: Machine hostname.
        os_name: Operating system name (e.g. "linux").

    Returns:
        Canonical UUID string (36 characters).
    """
    combined = f"{hostname}{DEVICE_ID_SEPARATOR}{os_name}"
    digest = hashlib.sha256(combined.encode("utf-8")).digest()
    # uuid.uuid5 only accepts bytes names from Python 3.12 on
    name_hash = hashlib.sha1(uuid.NAMESPACE_URL.bytes + digest).digest()
    return str(uuid.UUID(bytes=name_hash[:16], version=5))


def local_host_identity() -> tuple[str, str]:
    """Get the (hostname, os) pair for this machine."""
    return socket.gethostname(), platform.system().lower()
