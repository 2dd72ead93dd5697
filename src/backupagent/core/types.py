"""Shared types for backupagent.

This module defines the records that flow through the change-detection
pipeline, from raw filesystem notification to upload batch.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ChangeAction(str, Enum):
    """What happened to a path, as seen by the watcher."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    UNKNOWN = "unknown"


class CoordinatorState(str, Enum):
    """State of the backup coordinator."""

    IDLE = "idle"
    SCANNING = "scanning"
    WATCHING = "watching"
    FLUSHING = "flushing"


@dataclass(frozen=True)
class ChangeEvent:
    """A single classified filesystem notification."""

    path: Path
    action: ChangeAction
    observed_at: float = field(default_factory=time.monotonic)
    is_directory: bool = False  # only set for DELETED


@dataclass
class PendingAction:
    """Debounced unit of work for one path.

    Attributes:
        path: Absolute path of the file.
        action: Resolved action (never UNKNOWN).
        last_seen: Timestamp of the most recent event folded into it.
    """

    path: Path
    action: ChangeAction
    last_seen: float


@dataclass
class FileRecord:
    """Last known synchronized state of a file."""

    path: str
    content_hash: str
    size: int
    last_synced_at: float


@dataclass(frozen=True)
class DeviceCredential:
    """Device identity plus the bearer token issued for it."""

    device_id: str
    token: str


@dataclass(frozen=True)
class BatchFile:
    """A file scheduled for upload within a batch."""

    local_path: Path
    relative_name: str
    content_hash: str
    size: int


@dataclass
class UploadBatch:
    """Files and deletion markers sent together in one transfer attempt."""

    files: list[BatchFile] = field(default_factory=list)
    deletions: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """Check if there is nothing to send."""
        return not self.files and not self.deletions

    def __len__(self) -> int:
        return len(self.files) + len(self.deletions)
