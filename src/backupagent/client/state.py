"""Local state management for the backup agent.

This module provides:
- LocalBackupState: SQLite-based store for FileRecords and PendingActions

FileRecords remember the digest of the last uploaded content so unchanged
files are never re-sent. PendingActions are persisted so that debounced
but unflushed work survives an agent restart.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Iterable
from pathlib import Path

from backupagent.core.types import ChangeAction, FileRecord, PendingAction

logger = logging.getLogger(__name__)


class LocalBackupState:
    """SQLite-based local state for the backup agent.

    Connections are shared across threads (the coordinator loop and the
    transfer worker) and serialized with a lock.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize local state database.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._db_path = db_path
        if db_path != ":memory:":
            self._db_path = Path(db_path)
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS file_records (
                path TEXT PRIMARY KEY,
                content_hash TEXT NOT NULL,
                size INTEGER NOT NULL,
                last_synced_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pending_actions (
                path TEXT PRIMARY KEY,
                action TEXT NOT NULL,
                saved_at REAL NOT NULL
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> LocalBackupState:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # === File records ===

    def get_record(self, path: Path | str) -> FileRecord | None:
        """Get the last synchronized state of a file.

        Args:
            path: Absolute path of the file.

        Returns:
            FileRecord if the file was backed up before, None otherwise.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM file_records WHERE path = ?",
                (str(path),),
            ).fetchone()
        if row is None:
            return None
        return FileRecord(
            path=row["path"],
            content_hash=row["content_hash"],
            size=row["size"],
            last_synced_at=row["last_synced_at"],
        )

    def list_records(self, under: Path | None = None) -> list[FileRecord]:
        """List file records, optionally restricted to a directory."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM file_records ORDER BY path"
            ).fetchall()
        records = [
            FileRecord(
                path=row["path"],
                content_hash=row["content_hash"],
                size=row["size"],
                last_synced_at=row["last_synced_at"],
            )
            for row in rows
        ]
        if under is None:
            return records
        return [r for r in records if under in Path(r.path).parents]

    def save_record(
        self,
        path: Path | str,
        content_hash: str,
        size: int,
        synced_at: float | None = None,
    ) -> None:
        """Record that a file was backed up with the given content."""
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO file_records
                (path, content_hash, size, last_synced_at)
                VALUES (?, ?, ?, ?)
                """,
                (str(path), content_hash, size, synced_at or time.time()),
            )

    def remove_record(self, path: Path | str) -> None:
        """Forget a file (after its deletion was backed up)."""
        with self._lock:
            self._conn.execute(
                "DELETE FROM file_records WHERE path = ?", (str(path),)
            )

    # === Pending actions ===

    def save_pending(self, actions: Iterable[PendingAction]) -> int:
        """Replace the persisted pending actions.

        Returns:
            Number of actions saved.
        """
        now = time.time()
        rows = [(str(a.path), a.action.value, now) for a in actions]
        with self._lock:
            self._conn.execute("BEGIN")
            try:
                self._conn.execute("DELETE FROM pending_actions")
                self._conn.executemany(
                    "INSERT INTO pending_actions (path, action, saved_at) VALUES (?, ?, ?)",
                    rows,
                )
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._conn.execute("ROLLBACK")
                raise
        if rows:
            logger.debug("Persisted %d pending actions", len(rows))
        return len(rows)

    def load_pending(self, now: float) -> list[PendingAction]:
        """Load persisted pending actions.

        Args:
            now: Timestamp (on the caller's clock) to use as last_seen.

        Returns:
            Pending actions from the previous run.
        """
        with self._lock:
            rows = self._conn.execute(
                "SELECT path, action FROM pending_actions ORDER BY path"
            ).fetchall()
        actions = []
        for row in rows:
            try:
                action = ChangeAction(row["action"])
            except ValueError:
                logger.warning("Ignoring persisted action %r for %s", row["action"], row["path"])
                continue
            actions.append(PendingAction(path=Path(row["path"]), action=action, last_seen=now))
        return actions
