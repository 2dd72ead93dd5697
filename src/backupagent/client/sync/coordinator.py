"""Backup coordinator orchestrating change detection and upload.

This module provides:
- BackupCoordinator: Owns the debounced action set and drives transfers
- FlushReport: What happened to one flushed batch

State machine:

    IDLE ──run_full_backup()──> SCANNING ──> FLUSHING ──> IDLE
    IDLE ──start()──> WATCHING ──quiet window──> FLUSHING ──> WATCHING
                         ^                                      │
                         └──────────── stop() ──> IDLE <────────┘

Threads:
- the watchdog observer is the single producer on the event channel
- the coordinator loop is the single consumer and the only code that
  touches the EventDebouncer (no locking needed)
- each flush runs on a short-lived transfer thread; at most one is in
  flight, and actions that become due meanwhile wait for the next batch

Failure policy:
    | Outcome   | Pending actions | Next step                              |
    |-----------|-----------------|----------------------------------------|
    | SUCCESS   | cleared         | FileRecords updated, backoff reset     |
    | RETRYABLE | restored        | retry after exponential backoff        |
    | FATAL     | restored        | halted until resume() (401: until      |
    |           |                 | replace_credential()), unless          |
    |           |                 | fatal_retry_limit allows a retry       |
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from backupagent.client.sync.debouncer import EventDebouncer
from backupagent.client.sync.retry import Backoff
from backupagent.client.sync.scanner import scan_directory
from backupagent.client.sync.transfer import TransferOutcome, TransferResult
from backupagent.client.sync.watcher import DEFAULT_CHANNEL_SIZE, FileWatcher
from backupagent.core.hashing import compute_file_hash
from backupagent.core.types import (
    BatchFile,
    ChangeAction,
    ChangeEvent,
    CoordinatorState,
    PendingAction,
    UploadBatch,
)

if TYPE_CHECKING:
    from backupagent.client.config import AgentConfig
    from backupagent.client.state import LocalBackupState
    from backupagent.client.sync.transfer import TransferClient

logger = logging.getLogger(__name__)


@dataclass
class FlushReport:
    """Result of flushing one set of pending actions.

    Attributes:
        result: Transfer outcome (SUCCESS without network if nothing to send).
        uploaded: Relative names of uploaded files.
        deleted: Relative names of deletions sent.
        unchanged: Files skipped because their digest matched the FileRecord.
        skipped: Actions dropped (outside roots, unreadable, too large,
            deletions of never-backed-up files).
        scan_errors: Unreadable entries met while scanning (full backups).
    """

    result: TransferResult
    uploaded: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: int = 0
    skipped: int = 0
    scan_errors: int = 0

    @property
    def ok(self) -> bool:
        return self.result.ok


@dataclass
class CoordinatorStats:
    """Statistics about coordinator operations."""

    events_received: int = 0
    batches_sent: int = 0
    files_uploaded: int = 0
    deletions_sent: int = 0
    unchanged_skipped: int = 0
    retryable_failures: int = 0
    fatal_failures: int = 0
    errors: int = 0


@dataclass
class _BatchPlan:
    batch: UploadBatch = field(default_factory=UploadBatch)
    deleted_paths: dict[str, Path] = field(default_factory=dict)
    unchanged: int = 0
    skipped: int = 0


class BackupCoordinator:
    """Central orchestrator for backups.

    Usage:
        coordinator = BackupCoordinator(config, transfer, state)

        # One-shot full backup
        report = coordinator.run_full_backup()

        # Or continuous incremental backup
        coordinator.start()
        ...
        coordinator.stop()
    """

    def __init__(
        self,
        config: AgentConfig,
        transfer: TransferClient,
        state: LocalBackupState,
        channel: queue.Queue[ChangeEvent] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the coordinator.

        Args:
            config: Agent configuration.
            transfer: Client used to send batches.
            state: Local FileRecord / PendingAction store.
            channel: Event channel (created if not given).
            clock: Monotonic clock, injectable for tests.
        """
        self._config = config
        self._transfer = transfer
        self._local = state
        self._channel: queue.Queue[ChangeEvent] = channel or queue.Queue(
            maxsize=DEFAULT_CHANNEL_SIZE
        )
        self._clock = clock

        self._debouncer = EventDebouncer(config.debounce.quiet_window, clock=clock)
        self._backoff = Backoff(
            initial=config.retry.initial_delay,
            maximum=config.retry.max_delay,
            multiplier=config.retry.multiplier,
        )

        # State
        self._state = CoordinatorState.IDLE
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._watcher: FileWatcher | None = None

        # In-flight transfer
        self._worker: threading.Thread | None = None
        self._results: queue.Queue[FlushReport] = queue.Queue()
        self._in_flight: list[PendingAction] = []

        # Failure handling
        self._retry_at: float | None = None
        self._fatal_count = 0
        self._halt_reason: str | None = None

        self._stats = CoordinatorStats()
        self._last_report: FlushReport | None = None
        self._on_flush: Callable[[FlushReport], None] | None = None

    # === Properties ===

    @property
    def state(self) -> CoordinatorState:
        """Get current coordinator state."""
        return self._state

    @property
    def stats(self) -> CoordinatorStats:
        """Get coordinator statistics."""
        return self._stats

    @property
    def channel(self) -> queue.Queue[ChangeEvent]:
        """Event channel the watcher produces into."""
        return self._channel

    @property
    def debouncer(self) -> EventDebouncer:
        return self._debouncer

    @property
    def is_halted(self) -> bool:
        """True when automatic flushing stopped after a fatal failure."""
        return self._halt_reason is not None

    @property
    def halt_reason(self) -> str | None:
        return self._halt_reason

    @property
    def retry_at(self) -> float | None:
        """Clock time of the next scheduled retry, if any."""
        return self._retry_at

    @property
    def last_report(self) -> FlushReport | None:
        return self._last_report

    @property
    def transfer_in_progress(self) -> bool:
        return self._worker is not None

    def set_on_flush(self, callback: Callable[[FlushReport], None]) -> None:
        """Set callback invoked (on the coordinator thread) after each flush."""
        self._on_flush = callback

    def _set_state(self, state: CoordinatorState) -> None:
        with self._lock:
            if self._state is not state:
                logger.debug("Coordinator %s -> %s", self._state.value, state.value)
                self._state = state

    # === Operator controls ===

    def resume(self) -> None:
        """Re-enable automatic flushing after a fatal failure."""
        if self._halt_reason is not None:
            logger.info("Resuming backups (was halted: %s)", self._halt_reason)
        self._halt_reason = None
        self._fatal_count = 0
        self._retry_at = None
        self._backoff.reset()

    def replace_credential(self, token: str) -> None:
        """Install a new credential (after re-registration) and resume."""
        self._transfer.client.set_token(token)
        self.resume()

    # === Full backup ===

    def run_full_backup(self) -> FlushReport:
        """Scan every watch root and upload everything that changed.

        Files are compared with their FileRecord by content digest, and
        records whose file disappeared are sent as deletions.

        Returns:
            FlushReport for the single batch sent.

        Raises:
            InvalidWatchRootError: If a watch root is missing.
            RuntimeError: If the coordinator is watching or busy.
        """
        with self._lock:
            if self._state is not CoordinatorState.IDLE:
                raise RuntimeError(f"Coordinator is busy ({self._state.value})")
            self._set_state(CoordinatorState.SCANNING)

        try:
            now = self._clock()
            actions: list[PendingAction] = []
            scan_errors = 0

            for root in self._config.watch_roots:
                result = scan_directory(root.path, root.excludes)
                scan_errors += len(result.errors)
                seen = set(result.files)
                actions.extend(
                    PendingAction(path, ChangeAction.MODIFIED, now) for path in result.files
                )
                for record in self._local.list_records(under=root.path):
                    path = Path(record.path)
                    if path not in seen and not path.exists():
                        actions.append(PendingAction(path, ChangeAction.DELETED, now))

            logger.info("Full backup: %d candidate actions", len(actions))
            self._set_state(CoordinatorState.FLUSHING)
            report = self.flush(actions)
            report.scan_errors = scan_errors
            self._account(report)
            if not report.ok:
                # Picked up by the next start()
                self._debouncer.restore(self._local.load_pending(now))
                self._debouncer.restore(actions)
                saved = self._local.save_pending(self._debouncer.drain())
                logger.warning("Full backup failed; %d actions saved as pending", saved)
            return report
        finally:
            self._set_state(CoordinatorState.IDLE)

    # === Flush ===

    def flush(self, actions: list[PendingAction]) -> FlushReport:
        """Build a batch from actions, send it and update FileRecords.

        Runs synchronously; used by the transfer thread and full backups.
        """
        plan = self._build_batch(actions)
        result = self._transfer.send(plan.batch)
        while result.missing_path is not None and self._replan_missing(plan, result.missing_path):
            result = self._transfer.send(plan.batch)

        report = FlushReport(
            result=result,
            unchanged=plan.unchanged,
            skipped=plan.skipped,
        )
        if result.ok:
            synced_at = time.time()
            for f in plan.batch.files:
                self._local.save_record(f.local_path, f.content_hash, f.size, synced_at)
            for path in plan.deleted_paths.values():
                self._local.remove_record(path)
            report.uploaded = [f.relative_name for f in plan.batch.files]
            report.deleted = list(plan.batch.deletions)
        return report

    def _build_batch(self, actions: list[PendingAction]) -> _BatchPlan:
        plan = _BatchPlan()

        for pending in actions:
            path = pending.path
            root = self._config.root_for(path)
            if root is None:
                logger.warning("Ignoring %s: not under any watch root", path)
                plan.skipped += 1
                continue
            name = root.relative_name(path)

            # The disk at flush time decides between upload and delete
            if not path.is_file():
                if path.exists():
                    plan.skipped += 1
                    continue
                if pending.action is not ChangeAction.DELETED:
                    logger.debug("%s vanished before flush, sending delete", path)
                self._plan_deletion(plan, path, name)
                continue

            try:
                size = path.stat().st_size
                if self._config.max_file_size is not None and size > self._config.max_file_size:
                    logger.warning("Skipping %s: %d bytes exceeds the size limit", path, size)
                    plan.skipped += 1
                    continue
                digest = compute_file_hash(path)
            except FileNotFoundError:
                self._plan_deletion(plan, path, name)
                continue
            except OSError as e:
                logger.warning("Cannot read %s: %s", path, e)
                plan.skipped += 1
                continue

            record = self._local.get_record(path)
            if record is not None and record.content_hash == digest:
                logger.debug("Unchanged content, skipping %s", path)
                plan.unchanged += 1
                continue

            plan.batch.files.append(
                BatchFile(local_path=path, relative_name=name, content_hash=digest, size=size)
            )

        return plan

    def _replan_missing(self, plan: _BatchPlan, path: Path) -> bool:
        """Turn the upload of a file that vanished mid-send into a delete.

        Returns:
            True if the batch changed and should be sent again.
        """
        for f in plan.batch.files:
            if f.local_path == path:
                break
        else:
            return False

        logger.debug("%s vanished while sending, sending delete", path)
        plan.batch.files.remove(f)
        self._plan_deletion(plan, path, f.relative_name)
        return True

    def _plan_deletion(self, plan: _BatchPlan, path: Path, name: str) -> None:
        if self._local.get_record(path) is None:
            # Never backed up, nothing to delete remotely
            plan.skipped += 1
            return
        plan.batch.deletions.append(name)
        plan.deleted_paths[name] = path

    def _account(self, report: FlushReport) -> None:
        result = report.result
        self._stats.unchanged_skipped += report.unchanged
        if result.outcome is TransferOutcome.SUCCESS:
            if report.uploaded or report.deleted:
                self._stats.batches_sent += 1
            self._stats.files_uploaded += len(report.uploaded)
            self._stats.deletions_sent += len(report.deleted)
        elif result.outcome is TransferOutcome.RETRYABLE:
            self._stats.retryable_failures += 1
        else:
            self._stats.fatal_failures += 1
        self._last_report = report

    # === Incremental (watch) mode ===

    def start(self, watch: bool = True) -> None:
        """Start the coordinator loop.

        Args:
            watch: Also start a FileWatcher on the configured roots. Tests
                may pass False and feed the channel directly.
        """
        with self._lock:
            if self._state is not CoordinatorState.IDLE:
                logger.warning("Coordinator already running")
                return

            restored = self._debouncer.restore(self._local.load_pending(self._clock()))
            if restored:
                logger.info("Restored %d pending actions from previous run", restored)

            if watch:
                self._watcher = FileWatcher(self._config.watch_roots, self._channel)
                self._watcher.start()

            self._stop_event.clear()
            self._set_state(CoordinatorState.WATCHING)
            self._thread = threading.Thread(
                target=self._run,
                name="BackupCoordinator",
                daemon=True,
            )
            self._thread.start()
            logger.info("Coordinator started")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop gracefully without losing pending actions.

        Stops accepting filesystem events, folds events already queued into
        the pending set and persists it (in-flight actions included) before
        waiting, bounded by `server.timeout`, for an in-flight transfer.

        Args:
            timeout: Time allowed for the loop to exit, on top of the
                transfer wait.
        """
        if self._thread is None:
            return

        logger.info("Coordinator stopping...")
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None

        self._stop_event.set()
        wait = timeout + self._config.server.timeout
        self._thread.join(timeout=wait)
        if self._thread.is_alive():
            logger.warning("Coordinator loop did not stop within %.1fs", wait)
        self._thread = None
        logger.info("Coordinator stopped")

    def submit(self, event: ChangeEvent) -> None:
        """Queue an event as if it came from the watcher."""
        self._channel.put(event)

    def _run(self) -> None:
        """Main processing loop."""
        logger.debug("Coordinator processing loop started")
        tick = self._config.debounce.tick_interval

        while not self._stop_event.is_set():
            try:
                self.poll_once(tick)
            except Exception:
                logger.exception("Error in coordinator loop")
                self._stats.errors += 1

        self._shutdown()
        logger.debug("Coordinator processing loop ended")

    def poll_once(self, timeout: float = 0.0) -> None:
        """Consume available events, then run one debounce tick.

        Args:
            timeout: Seconds to wait for the first event.
        """
        try:
            if timeout > 0:
                event = self._channel.get(timeout=timeout)
            else:
                event = self._channel.get_nowait()
        except queue.Empty:
            event = None

        while event is not None:
            self._record(event)
            try:
                event = self._channel.get_nowait()
            except queue.Empty:
                event = None

        self.tick()

    def _record(self, event: ChangeEvent) -> None:
        self._stats.events_received += 1
        if not event.is_directory:
            self._debouncer.record(event)
            return

        # A removed directory only reports itself; delete what was backed up below it
        for record in self._local.list_records(under=event.path):
            self._debouncer.record(
                ChangeEvent(Path(record.path), ChangeAction.DELETED, event.observed_at)
            )

    def tick(self) -> None:
        """Collect a finished transfer and start a new one if due."""
        self._collect_result()

        if self._worker is not None:
            return  # deferred until the in-flight transfer ends
        if self._halt_reason is not None or not len(self._debouncer):
            return

        now = self._clock()
        if self._retry_at is not None and now < self._retry_at:
            return
        if self._debouncer.is_due(now):
            self._start_flush()

    def wait_for_transfer(self, timeout: float | None = None) -> bool:
        """Block until the in-flight transfer finishes and handle its result.

        Returns:
            True if no transfer is in flight anymore.
        """
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout=timeout)
        if worker.is_alive():
            return False
        self._collect_result()
        return True

    def _start_flush(self) -> None:
        actions = self._debouncer.drain()
        self._in_flight = actions
        self._retry_at = None
        self._set_state(CoordinatorState.FLUSHING)
        logger.debug("Flushing %d pending actions", len(actions))

        self._worker = threading.Thread(
            target=self._transfer_worker,
            args=(actions,),
            name="BackupTransfer",
            daemon=True,
        )
        self._worker.start()

    def _transfer_worker(self, actions: list[PendingAction]) -> None:
        try:
            report = self.flush(actions)
        except Exception as e:
            logger.exception("Transfer error")
            report = FlushReport(
                result=TransferResult(TransferOutcome.RETRYABLE, message=str(e))
            )
        self._results.put(report)

    def _collect_result(self) -> None:
        try:
            report = self._results.get_nowait()
        except queue.Empty:
            return

        if self._worker is not None:
            self._worker.join()
            self._worker = None
        actions, self._in_flight = self._in_flight, []
        self._handle_report(report, actions)

    def _handle_report(self, report: FlushReport, actions: list[PendingAction]) -> None:
        self._account(report)
        result = report.result
        now = self._clock()

        if result.outcome is TransferOutcome.SUCCESS:
            self._backoff.reset()
            self._fatal_count = 0
        elif result.outcome is TransferOutcome.RETRYABLE:
            self._debouncer.restore(actions)
            delay = self._backoff.next_delay()
            self._retry_at = now + delay
            logger.warning(
                "Transfer failed (%s); %d actions kept, retrying in %.1fs",
                result.message,
                len(actions),
                delay,
            )
        else:
            self._debouncer.restore(actions)
            self._fatal_count += 1
            if result.auth_failed:
                self._halt(result.message)
            elif self._fatal_count > self._config.retry.fatal_retry_limit:
                self._halt(result.message)
            else:
                delay = self._backoff.next_delay()
                self._retry_at = now + delay
                logger.error(
                    "Transfer failed: %s (attempt %d/%d, retrying in %.1fs)",
                    result.message,
                    self._fatal_count,
                    self._config.retry.fatal_retry_limit + 1,
                    delay,
                )

        self._local.save_pending(self._pending_snapshot())
        if self._state is CoordinatorState.FLUSHING:
            self._set_state(CoordinatorState.WATCHING)
        if self._on_flush:
            self._on_flush(report)

    def _halt(self, reason: str) -> None:
        self._halt_reason = reason
        self._retry_at = None
        logger.error(
            "Backups halted: %s. %d actions are kept pending until resumed.",
            reason,
            len(self._debouncer),
        )

    def _pending_snapshot(self) -> list[PendingAction]:
        # One action per path; events recorded during the transfer are newer
        snapshot = {action.path: action for action in self._in_flight}
        snapshot.update((action.path, action) for action in self._debouncer.pending())
        return list(snapshot.values())

    def _shutdown(self) -> None:
        """Drain, persist, wait for the transfer and persist again.

        Runs on the loop thread. Pending actions are saved before waiting so
        a transfer that outlives stop() cannot take them with it.
        """
        try:
            while True:
                try:
                    event = self._channel.get_nowait()
                except queue.Empty:
                    break
                self._record(event)

            self._local.save_pending(self._pending_snapshot())

            if not self.wait_for_transfer(timeout=self._config.server.timeout):
                logger.warning("Transfer still running at shutdown; its actions stay pending")

            saved = self._local.save_pending(self._pending_snapshot())
            if saved:
                logger.info("Saved %d pending actions for the next run", saved)
        finally:
            self._set_state(CoordinatorState.IDLE)
