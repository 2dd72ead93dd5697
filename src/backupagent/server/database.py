"""Server database using SQLAlchemy with SQLite.

This module provides:
- Device registry (registration, lookup, revocation)
- Metadata of the files currently stored for each device
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backupagent.server.models import BackedUpFile, Base, Device

if TYPE_CHECKING:
    from sqlalchemy import Engine


def hash_token(token: str) -> str:
    """Hash a token using SHA-256.

    Args:
        token: Raw token string.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    return hashlib.sha256(token.encode()).hexdigest()


class DeviceExistsError(Exception):
    """Raised when registering a device id that is already known."""


class Database:
    """SQLAlchemy database for server metadata.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )

        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")

        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)

    # === Device operations ===

    def create_device(self, device_id: str, hostname: str, os: str, token_hash: str) -> Device:
        """Register a new device.

        Args:
            device_id: Derived device identifier.
            hostname: Hostname reported at registration.
            os: Operating system reported at registration.
            token_hash: SHA-256 of the credential issued to the device.

        Returns:
            Created Device object.

        Raises:
            DeviceExistsError: If the device id is already registered.
        """
        with self._session() as session:
            device = Device(device_id=device_id, hostname=hostname, os=os, token_hash=token_hash)
            session.add(device)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DeviceExistsError(f"Device {device_id} is already registered") from e
            session.refresh(device)
            session.expunge(device)
            return device

    def get_device(self, device_id: str) -> Device | None:
        """Get a device by its device id.

        Args:
            device_id: Device identifier.

        Returns:
            Device if found, None otherwise.
        """
        with self._session() as session:
            stmt = select(Device).where(Device.device_id == device_id)
            device = session.execute(stmt).scalar_one_or_none()
            if device:
                session.expunge(device)
            return device

    def list_devices(self) -> list[Device]:
        """List all registered devices, oldest first."""
        with self._session() as session:
            stmt = select(Device).order_by(Device.created_at, Device.id)
            devices = list(session.execute(stmt).scalars().all())
            for device in devices:
                session.expunge(device)
            return devices

    def update_last_seen(self, device_id: str) -> None:
        """Update a device's last_seen timestamp."""
        with self._session() as session:
            stmt = select(Device).where(Device.device_id == device_id)
            device = session.execute(stmt).scalar_one_or_none()
            if device:
                device.last_seen = datetime.now(UTC)
                session.commit()

    def delete_device(self, device_id: str) -> bool:
        """Delete a device, revoking its credential.

        Stored file metadata is removed with it; stored file contents are
        left on disk.

        Returns:
            True if the device existed.
        """
        with self._session() as session:
            stmt = select(Device).where(Device.device_id == device_id)
            device = session.execute(stmt).scalar_one_or_none()
            if device is None:
                return False
            session.delete(device)
            session.commit()
            return True

    # === File metadata ===

    def record_file(self, device_id: str, path: str, size: int, content_hash: str) -> None:
        """Insert or update the metadata of a stored file.

        Raises:
            ValueError: If the device is unknown.
        """
        with self._session() as session:
            device = session.execute(
                select(Device).where(Device.device_id == device_id)
            ).scalar_one_or_none()
            if device is None:
                raise ValueError(f"Unknown device: {device_id}")

            stmt = select(BackedUpFile).where(
                BackedUpFile.device_pk == device.id, BackedUpFile.path == path
            )
            file = session.execute(stmt).scalar_one_or_none()
            if file is None:
                session.add(
                    BackedUpFile(
                        device_pk=device.id, path=path, size=size, content_hash=content_hash
                    )
                )
            else:
                file.size = size
                file.content_hash = content_hash
                file.stored_at = datetime.now(UTC)
            session.commit()

    def remove_file(self, device_id: str, path: str) -> bool:
        """Remove the metadata of a deleted file.

        Returns:
            True if a record was removed.
        """
        with self._session() as session:
            stmt = (
                select(BackedUpFile)
                .join(Device)
                .where(Device.device_id == device_id, BackedUpFile.path == path)
            )
            file = session.execute(stmt).scalar_one_or_none()
            if file is None:
                return False
            session.delete(file)
            session.commit()
            return True

    def list_files(self, device_id: str) -> list[BackedUpFile]:
        """List stored files of a device, ordered by path."""
        with self._session() as session:
            stmt = (
                select(BackedUpFile)
                .join(Device)
                .where(Device.device_id == device_id)
                .order_by(BackedUpFile.path)
            )
            files = list(session.execute(stmt).scalars().all())
            for file in files:
                session.expunge(file)
            return files
