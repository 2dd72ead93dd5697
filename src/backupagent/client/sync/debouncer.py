"""Debouncing of filesystem events into PendingActions.

Editors typically emit create+modify+modify bursts for one logical save.
EventDebouncer folds such bursts into a single PendingAction per path and
reports the whole set as due once no new event has arrived for the quiet
window. A single global quiet window is used instead of per-path timers,
so every concurrently-dirty path is flushed in the same batch.

The debouncer is not thread-safe. It is owned by the coordinator's
consumer loop, which is the only code that mutates it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from backupagent.core.types import ChangeAction, ChangeEvent, PendingAction

logger = logging.getLogger(__name__)

DEFAULT_QUIET_WINDOW = 0.5  # seconds
DEFAULT_TICK_INTERVAL = 0.1  # seconds


class EventDebouncer:
    """Coalesces ChangeEvents into at most one PendingAction per path.

    Usage:
        debouncer = EventDebouncer(quiet_window=0.5)
        debouncer.record(event)
        ...
        if debouncer.is_due():
            actions = debouncer.drain()
    """

    def __init__(
        self,
        quiet_window: float = DEFAULT_QUIET_WINDOW,
        clock: Callable[[], float] = time.monotonic,
        exists: Callable[[Path], bool] = Path.exists,
        is_file: Callable[[Path], bool] = Path.is_file,
    ) -> None:
        """Initialize the debouncer.

        Args:
            quiet_window: Seconds without new events before the set is due.
            clock: Monotonic clock, injectable for tests.
            exists: Existence check used when resolving non-delete actions.
            is_file: Regular-file check used when resolving non-delete actions.
        """
        self._quiet_window = quiet_window
        self._clock = clock
        self._exists = exists
        self._is_file = is_file

        # Pending actions keyed by path
        self._pending: dict[Path, PendingAction] = {}
        self._last_activity: float | None = None

    @property
    def quiet_window(self) -> float:
        return self._quiet_window

    @property
    def last_activity(self) -> float | None:
        """Time of the most recent recorded event, or None."""
        return self._last_activity

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, path: object) -> bool:
        return path in self._pending

    def get(self, path: Path) -> PendingAction | None:
        """Get the pending action for a path, if any."""
        return self._pending.get(path)

    def pending(self) -> list[PendingAction]:
        """Snapshot of all pending actions."""
        return list(self._pending.values())

    def record(self, event: ChangeEvent) -> PendingAction | None:
        """Fold an event into the pending set.

        Deletes overwrite unconditionally. Any other action re-checks the
        path on disk: a vanished path becomes a Delete, a path that exists
        but is not a regular file is ignored.

        Args:
            event: Classified event. UNKNOWN events are ignored.

        Returns:
            The resulting PendingAction, or None if the event was ignored.
        """
        if event.action is ChangeAction.UNKNOWN:
            return None

        now = self._clock()
        action = event.action

        if action is not ChangeAction.DELETED:
            if not self._exists(event.path):
                logger.debug("%s vanished before queuing, treating as delete", event.path)
                action = ChangeAction.DELETED
            elif not self._is_file(event.path):
                return None

        pending = PendingAction(path=event.path, action=action, last_seen=now)
        self._pending[event.path] = pending
        self._last_activity = now
        return pending

    def is_due(self, now: float | None = None) -> bool:
        """Check if the quiet window has elapsed with actions pending."""
        if not self._pending or self._last_activity is None:
            return False
        if now is None:
            now = self._clock()
        return now - self._last_activity >= self._quiet_window

    def drain(self) -> list[PendingAction]:
        """Remove and return every pending action."""
        actions = list(self._pending.values())
        self._pending.clear()
        return actions

    def restore(self, actions: Iterable[PendingAction]) -> int:
        """Put back actions from a failed or interrupted flush.

        Actions already superseded by a newer event for the same path are
        dropped, so a restore never overwrites fresher state.

        Args:
            actions: Actions to merge back.

        Returns:
            Number of actions restored.
        """
        restored = 0
        for action in actions:
            current = self._pending.get(action.path)
            if current is not None and current.last_seen >= action.last_seen:
                continue
            self._pending[action.path] = action
            restored += 1
        if restored and self._last_activity is None:
            self._last_activity = self._clock()
        return restored
