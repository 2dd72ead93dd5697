"""Translation of watchdog notifications into ChangeEvents.

watchdog's event classes are an open-ended hierarchy; this module is the
single boundary where they are mapped onto the closed ChangeAction enum.
"""

from __future__ import annotations

import time
from pathlib import Path

from watchdog.events import (
    DirDeletedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
)

from backupagent.core.types import ChangeAction, ChangeEvent


def _to_path(raw: str | bytes) -> Path:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return Path(raw)


def classify(event: FileSystemEvent) -> ChangeAction:
    """Map a watchdog event to a ChangeAction.

    Directory events and kinds without a backup meaning (opened, closed,
    moved) map to UNKNOWN. Moves are handled by to_change_events().
    """
    if event.is_directory:
        return ChangeAction.UNKNOWN
    if isinstance(event, FileCreatedEvent):
        return ChangeAction.CREATED
    if isinstance(event, FileModifiedEvent):
        return ChangeAction.MODIFIED
    if isinstance(event, FileDeletedEvent):
        return ChangeAction.DELETED
    return ChangeAction.UNKNOWN


def to_change_events(
    event: FileSystemEvent,
    now: float | None = None,
) -> list[ChangeEvent]:
    """Convert a watchdog event into zero or more ChangeEvents.

    A file move becomes DELETED for the source and CREATED for the
    destination. A deleted directory becomes a single DELETED event with
    `is_directory` set; the coordinator expands it to the files backed up
    below it. UNKNOWN events are dropped here and never queued.

    Args:
        event: Raw watchdog event.
        now: Observation timestamp (defaults to time.monotonic()).

    Returns:
        List of classified events, possibly empty.
    """
    observed_at = time.monotonic() if now is None else now

    if isinstance(event, FileMovedEvent) and not event.is_directory:
        return [
            ChangeEvent(_to_path(event.src_path), ChangeAction.DELETED, observed_at),
            ChangeEvent(_to_path(event.dest_path), ChangeAction.CREATED, observed_at),
        ]

    if isinstance(event, DirDeletedEvent):
        return [
            ChangeEvent(
                _to_path(event.src_path), ChangeAction.DELETED, observed_at, is_directory=True
            )
        ]

    action = classify(event)
    if action is ChangeAction.UNKNOWN:
        return []
    return [ChangeEvent(_to_path(event.src_path), action, observed_at)]
