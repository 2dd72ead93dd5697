"""Storage of backed-up file contents on the local filesystem.

Layout: <base>/<device_id>/<label>/<relative path>. Only the current copy of
each file is kept.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import BinaryIO

logger = logging.getLogger(__name__)

COPY_BLOCK_SIZE = 64 * 1024


class UnsafePathError(ValueError):
    """Raised when a client path would escape the device directory."""


class BackupStorage:
    """Local filesystem storage, one directory per device."""

    def __init__(self, base_path: Path | str) -> None:
        """Initialize local storage.

        Args:
            base_path: Base directory for backups.
        """
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        """Return the local storage path."""
        return f"Local filesystem: {self._base_path}"

    @property
    def base_path(self) -> Path:
        return self._base_path

    def device_dir(self, device_id: str) -> Path:
        return self._base_path / device_id

    def resolve(self, device_id: str, relative_name: str) -> Path:
        """Map a client-supplied relative name to a path in the device dir.

        Raises:
            UnsafePathError: If the name is empty, absolute or escapes the
                device directory.
        """
        name = PurePosixPath(relative_name.replace("\\", "/"))
        if not relative_name or name.is_absolute() or ".." in name.parts:
            raise UnsafePathError(f"Invalid backup path: {relative_name!r}")

        device_dir = self.device_dir(device_id).resolve()
        target = (device_dir / Path(*name.parts)).resolve()
        if target == device_dir or device_dir not in target.parents:
            raise UnsafePathError(f"Invalid backup path: {relative_name!r}")
        return target

    def save(self, device_id: str, relative_name: str, stream: BinaryIO) -> tuple[int, str]:
        """Store a file, replacing any previous copy atomically.

        Args:
            device_id: Owning device.
            relative_name: Client relative name ("label/sub/file").
            stream: Binary stream with the file contents.

        Returns:
            Tuple of (size in bytes, SHA-256 hex digest).
        """
        target = self.resolve(device_id, relative_name)
        target.parent.mkdir(parents=True, exist_ok=True)

        hasher = hashlib.sha256()
        size = 0
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as out:
                while block := stream.read(COPY_BLOCK_SIZE):
                    out.write(block)
                    hasher.update(block)
                    size += len(block)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug("Stored %s for %s (%d bytes)", relative_name, device_id, size)
        return size, hasher.hexdigest()

    def delete(self, device_id: str, relative_name: str) -> bool:
        """Delete a stored file.

        Returns:
            True if a file was removed.
        """
        target = self.resolve(device_id, relative_name)
        if not target.is_file():
            return False
        target.unlink()
        return True

    def exists(self, device_id: str, relative_name: str) -> bool:
        return self.resolve(device_id, relative_name).is_file()

    def read(self, device_id: str, relative_name: str) -> bytes:
        return self.resolve(device_id, relative_name).read_bytes()
