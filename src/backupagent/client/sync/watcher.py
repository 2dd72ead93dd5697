"""File system watcher feeding the coordinator.

This module provides:
- ChannelEventHandler: watchdog handler that classifies, filters and forwards
- FileWatcher: Watches every WatchRoot with a single watchdog Observer

The watcher is the only producer on the event channel; the coordinator is
the only consumer. The handler never touches PendingActions.
"""

from __future__ import annotations

import logging
import queue
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from backupagent.client.sync.classifier import to_change_events
from backupagent.client.sync.filter import is_excluded
from backupagent.client.sync.scanner import ensure_directory
from backupagent.core.types import ChangeEvent

if TYPE_CHECKING:
    from collections.abc import Iterable

    from watchdog.observers.api import BaseObserver

    from backupagent.client.config import WatchRoot

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_SIZE = 10_000


class ChannelEventHandler(FileSystemEventHandler):
    """Forwards classified, non-excluded events for one root into a channel."""

    def __init__(self, root: WatchRoot, channel: queue.Queue[ChangeEvent]) -> None:
        """Initialize the handler.

        Args:
            root: Watch root this handler is scheduled on.
            channel: Bounded queue read by the coordinator.
        """
        super().__init__()
        self._root = root
        self._channel = channel
        self._accepting = True

    def close(self) -> None:
        """Stop forwarding events."""
        self._accepting = False

    def dispatch(self, event: FileSystemEvent) -> None:
        """Handle any watchdog event."""
        if not self._accepting:
            return

        for change in to_change_events(event):
            if not self._root.contains(change.path):
                continue
            if is_excluded(change.path, self._root.excludes, self._root.path):
                continue
            # Blocks when the channel is full: backpressure, not loss
            self._channel.put(change)
            logger.debug("Watcher queued %s %s", change.action.value, change.path)


class FileWatcher:
    """Watches the configured roots for file changes.

    Usage:
        channel = queue.Queue(maxsize=DEFAULT_CHANNEL_SIZE)
        with FileWatcher(config.watch_roots, channel):
            ...
    """

    def __init__(
        self,
        roots: Iterable[WatchRoot],
        channel: queue.Queue[ChangeEvent],
    ) -> None:
        """Initialize the file watcher.

        Args:
            roots: Directories to watch recursively.
            channel: Queue to push ChangeEvents into.

        Raises:
            InvalidWatchRootError: If a root is missing or not a directory.
        """
        self._roots = list(roots)
        for root in self._roots:
            ensure_directory(root.path)

        self._channel = channel
        self._handlers = [ChannelEventHandler(root, channel) for root in self._roots]
        self._observer: BaseObserver = Observer()
        self._running = False

    @property
    def channel(self) -> queue.Queue[ChangeEvent]:
        """Get the event channel."""
        return self._channel

    @property
    def watch_paths(self) -> list[Path]:
        """Get the watched directory paths."""
        return [root.path for root in self._roots]

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    def start(self) -> None:
        """Start watching for changes."""
        if self._running:
            return

        for root, handler in zip(self._roots, self._handlers):
            self._observer.schedule(handler, str(root.path), recursive=True)
            logger.info("Watching %s", root.path)
        self._observer.start()
        self._running = True

    def stop(self) -> None:
        """Stop watching. Events already queued stay in the channel."""
        if not self._running:
            return

        for handler in self._handlers:
            handler.close()
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._running = False

    def __enter__(self) -> FileWatcher:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
