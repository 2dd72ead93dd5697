"""Change detection and upload.

Architecture:
    FileWatcher → event channel → BackupCoordinator → TransferClient

Components:
- **FileWatcher**: watchdog observer over every watch root, classifies and
  filters raw events, pushes ChangeEvents into a bounded channel
- **EventDebouncer**: Collapses events per path, flushes after a quiet window
- **BackupCoordinator**: Owns pending actions, builds batches, handles failures
- **TransferClient**: Sends a batch and classifies the server's answer
- **scan_directory**: Recursive walk used by full backups
"""

from backupagent.client.sync.classifier import classify, to_change_events
from backupagent.client.sync.coordinator import (
    BackupCoordinator,
    CoordinatorStats,
    FlushReport,
)
from backupagent.client.sync.debouncer import (
    DEFAULT_QUIET_WINDOW,
    DEFAULT_TICK_INTERVAL,
    EventDebouncer,
)
from backupagent.client.sync.filter import (
    ExcludePattern,
    compile_pattern,
    compile_patterns,
    is_excluded,
    is_temp_name,
)
from backupagent.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    Backoff,
)
from backupagent.client.sync.scanner import ScanResult, ensure_directory, scan_directory
from backupagent.client.sync.transfer import (
    TransferClient,
    TransferOutcome,
    TransferResult,
    classify_status,
)
from backupagent.client.sync.watcher import (
    DEFAULT_CHANNEL_SIZE,
    ChannelEventHandler,
    FileWatcher,
)

__all__ = [
    # Classification / filtering
    "classify",
    "to_change_events",
    "ExcludePattern",
    "compile_pattern",
    "compile_patterns",
    "is_excluded",
    "is_temp_name",
    # Debounce
    "DEFAULT_QUIET_WINDOW",
    "DEFAULT_TICK_INTERVAL",
    "EventDebouncer",
    # Scanning / watching
    "ScanResult",
    "ensure_directory",
    "scan_directory",
    "DEFAULT_CHANNEL_SIZE",
    "ChannelEventHandler",
    "FileWatcher",
    # Transfer
    "TransferClient",
    "TransferOutcome",
    "TransferResult",
    "classify_status",
    "Backoff",
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    # Coordinator
    "BackupCoordinator",
    "CoordinatorStats",
    "FlushReport",
]
