"""Tests for server database models."""

from collections.abc import Generator
from pathlib import Path

import pytest

from backupagent.server.database import (
    Database,
    DeviceExistsError,
    hash_token,
)


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


class TestDatabaseCreation:
    """Tests for database initialization."""

    def test_creates_db_file(self, tmp_path: Path) -> None:
        """Database should create SQLite file."""
        db_path = tmp_path / "nested" / "test.db"
        db = Database(db_path)
        assert db_path.exists()
        assert db.path == db_path
        db.close()

    def test_uses_wal_mode(self, tmp_path: Path) -> None:
        """Database should use WAL mode for concurrency."""
        db = Database(tmp_path / "test.db")
        with db._engine.connect() as conn:
            result = conn.exec_driver_sql("PRAGMA journal_mode").fetchone()
        assert result is not None
        assert result[0].lower() == "wal"
        db.close()


class TestDeviceOperations:
    """Tests for device management."""

    def test_create_device(self, db: Database) -> None:
        device = db.create_device("dev-1", "laptop", "linux", hash_token("tok"))

        assert device.id is not None
        assert device.device_id == "dev-1"
        assert device.hostname == "laptop"
        assert device.os == "linux"
        assert device.token_hash == hash_token("tok")
        assert device.created_at is not None
        assert device.last_seen is not None

    def test_duplicate_device_rejected(self, db: Database) -> None:
        db.create_device("dev-1", "laptop", "linux", "h1")

        with pytest.raises(DeviceExistsError):
            db.create_device("dev-1", "laptop", "linux", "h2")

        device = db.get_device("dev-1")
        assert device is not None
        assert device.token_hash == "h1"

    def test_get_unknown_device(self, db: Database) -> None:
        assert db.get_device("missing") is None

    def test_list_devices_oldest_first(self, db: Database) -> None:
        db.create_device("dev-1", "a", "linux", "h1")
        db.create_device("dev-2", "b", "darwin", "h2")

        assert [d.device_id for d in db.list_devices()] == ["dev-1", "dev-2"]

    def test_update_last_seen(self, db: Database) -> None:
        created = db.create_device("dev-1", "laptop", "linux", "h")

        db.update_last_seen("dev-1")

        device = db.get_device("dev-1")
        assert device is not None
        assert device.last_seen >= created.last_seen

    def test_update_last_seen_unknown_is_noop(self, db: Database) -> None:
        db.update_last_seen("missing")
        assert db.list_devices() == []

    def test_delete_device(self, db: Database) -> None:
        db.create_device("dev-1", "laptop", "linux", "h")
        db.record_file("dev-1", "docs/a.txt", 3, "abc")

        assert db.delete_device("dev-1") is True
        assert db.get_device("dev-1") is None
        assert db.list_files("dev-1") == []
        assert db.delete_device("dev-1") is False

    def test_reregister_after_delete(self, db: Database) -> None:
        db.create_device("dev-1", "laptop", "linux", "old")
        db.delete_device("dev-1")

        device = db.create_device("dev-1", "laptop", "linux", "new")

        assert device.token_hash == "new"


class TestFileOperations:
    """Tests for stored file metadata."""

    @pytest.fixture(autouse=True)
    def device(self, db: Database) -> None:
        db.create_device("dev-1", "laptop", "linux", "h")

    def test_record_and_list(self, db: Database) -> None:
        db.record_file("dev-1", "docs/b.txt", 2, "h2")
        db.record_file("dev-1", "docs/a.txt", 1, "h1")

        files = db.list_files("dev-1")

        assert [(f.path, f.size, f.content_hash) for f in files] == [
            ("docs/a.txt", 1, "h1"),
            ("docs/b.txt", 2, "h2"),
        ]

    def test_record_overwrites(self, db: Database) -> None:
        db.record_file("dev-1", "docs/a.txt", 1, "h1")
        db.record_file("dev-1", "docs/a.txt", 5, "h5")

        files = db.list_files("dev-1")

        assert len(files) == 1
        assert files[0].size == 5
        assert files[0].content_hash == "h5"

    def test_record_unknown_device(self, db: Database) -> None:
        with pytest.raises(ValueError):
            db.record_file("missing", "docs/a.txt", 1, "h")

    def test_remove_file(self, db: Database) -> None:
        db.record_file("dev-1", "docs/a.txt", 1, "h1")

        assert db.remove_file("dev-1", "docs/a.txt") is True
        assert db.remove_file("dev-1", "docs/a.txt") is False
        assert db.list_files("dev-1") == []

    def test_files_scoped_per_device(self, db: Database) -> None:
        db.create_device("dev-2", "desktop", "linux", "h")
        db.record_file("dev-1", "docs/a.txt", 1, "h1")
        db.record_file("dev-2", "docs/a.txt", 2, "h2")

        db.remove_file("dev-1", "docs/a.txt")

        assert db.list_files("dev-1") == []
        assert [f.size for f in db.list_files("dev-2")] == [2]


class TestHashToken:
    """Tests for token hashing."""

    def test_deterministic(self) -> None:
        assert hash_token("abc") == hash_token("abc")

    def test_hex_sha256(self) -> None:
        digest = hash_token("abc")
        assert len(digest) == 64
        assert digest != hash_token("abd")
