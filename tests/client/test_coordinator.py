"""Tests for the backup coordinator."""

from __future__ import annotations

import shutil
import threading
import time
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from backupagent.client.config import AgentConfig, parse_config
from backupagent.client.state import LocalBackupState
from backupagent.client.sync.coordinator import BackupCoordinator
from backupagent.client.sync.transfer import TransferOutcome, TransferResult
from backupagent.core.errors import InvalidWatchRootError
from backupagent.core.hashing import compute_file_hash
from backupagent.core.types import ChangeAction, ChangeEvent, CoordinatorState, UploadBatch

OK = TransferResult(TransferOutcome.SUCCESS, 200)
RETRY = TransferResult(TransferOutcome.RETRYABLE, message="Connection refused")
UNAUTHORIZED = TransferResult(TransferOutcome.FATAL, 401, "Credential rejected", auth_failed=True)
NOT_FOUND = TransferResult(TransferOutcome.FATAL, 404, "Backup endpoint not found")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClient:
    def __init__(self) -> None:
        self.token = "old"

    def set_token(self, token: str) -> None:
        self.token = token


class FakeTransfer:
    """Records batches and answers with scripted results (SUCCESS when exhausted)."""

    def __init__(self, *results: TransferResult) -> None:
        self.results = list(results)
        self.batches: list[UploadBatch] = []
        self.client = FakeClient()
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self.vanish: Path | None = None

    def send(self, batch: UploadBatch) -> TransferResult:
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.vanish is not None and any(f.local_path == self.vanish for f in batch.files):
            # Simulate the file disappearing while the request body is built
            path, self.vanish = self.vanish, None
            path.unlink()
            return TransferResult(TransferOutcome.RETRYABLE, message="vanished", missing_path=path)
        self.batches.append(batch)
        if self.results:
            return self.results.pop(0)
        return OK

    @property
    def sent_names(self) -> list[list[str]]:
        return [[f.relative_name for f in b.files] for b in self.batches]


@pytest.fixture
def watch_dir(tmp_path: Path) -> Path:
    root = tmp_path / "docs"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state() -> Generator[LocalBackupState, None, None]:
    local = LocalBackupState(":memory:")
    yield local
    local.close()


def make_config(watch_dir: Path, server_timeout: float = 30.0, **advanced: Any) -> AgentConfig:
    return parse_config(
        {
            "backup": {
                "watch_directories": [{"path": str(watch_dir), "label": "docs"}],
                "exclude": ["*.log"],
            },
            "server": {"address": "http://test", "auth_token": "tok", "timeout": server_timeout},
            "advanced": advanced,
        }
    )


def make_coordinator(
    watch_dir: Path,
    transfer: FakeTransfer,
    state: LocalBackupState,
    clock: FakeClock,
    server_timeout: float = 30.0,
    **advanced: Any,
) -> BackupCoordinator:
    return BackupCoordinator(
        make_config(watch_dir, server_timeout, **advanced),
        transfer,  # type: ignore[arg-type]
        state,
        clock=clock,
    )


def flush_after_quiet(coordinator: BackupCoordinator, clock: FakeClock) -> None:
    """Advance past the quiet window and run the resulting transfer."""
    clock.advance(0.6)
    coordinator.poll_once()
    assert coordinator.wait_for_transfer(timeout=5)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.01)


class TestFullBackup:
    """Tests for run_full_backup."""

    def test_uploads_all_files(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        (watch_dir / "a.txt").write_text("a")
        (watch_dir / "sub").mkdir()
        (watch_dir / "sub" / "b.txt").write_text("b")
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        report = coordinator.run_full_backup()

        assert report.ok
        assert sorted(report.uploaded) == ["docs/a.txt", "docs/sub/b.txt"]
        record = state.get_record(watch_dir / "a.txt")
        assert record is not None
        assert record.content_hash == compute_file_hash(watch_dir / "a.txt")
        assert coordinator.state is CoordinatorState.IDLE

    def test_second_run_skips_unchanged(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        (watch_dir / "a.txt").write_text("a")
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)
        coordinator.run_full_backup()

        report = coordinator.run_full_backup()

        assert report.uploaded == []
        assert report.unchanged == 1
        assert transfer.batches[-1].is_empty

    def test_excluded_files_not_uploaded(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        (watch_dir / "a.txt").write_text("a")
        (watch_dir / "debug.log").write_text("noise")
        (watch_dir / "a.txt.swp").write_text("swap")
        transfer = FakeTransfer()

        report = make_coordinator(watch_dir, transfer, state, clock).run_full_backup()

        assert report.uploaded == ["docs/a.txt"]

    def test_sends_deletions_for_vanished_files(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        (watch_dir / "a.txt").write_text("a")
        state.save_record(watch_dir / "gone.txt", "old-hash", 3)
        transfer = FakeTransfer()

        report = make_coordinator(watch_dir, transfer, state, clock).run_full_backup()

        assert report.deleted == ["docs/gone.txt"]
        assert state.get_record(watch_dir / "gone.txt") is None

    def test_max_file_size(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        (watch_dir / "small.txt").write_text("s")
        (watch_dir / "big.bin").write_bytes(b"x" * (2 * 1024 * 1024))
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock, max_file_size_mb=1)

        report = coordinator.run_full_backup()

        assert report.uploaded == ["docs/small.txt"]
        assert report.skipped == 1

    def test_failure_keeps_records_and_persists_pending(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        (watch_dir / "a.txt").write_text("a")
        transfer = FakeTransfer(RETRY)

        report = make_coordinator(watch_dir, transfer, state, clock).run_full_backup()

        assert not report.ok
        assert report.result.outcome is TransferOutcome.RETRYABLE
        assert state.get_record(watch_dir / "a.txt") is None
        assert [a.path for a in state.load_pending(clock.now)] == [watch_dir / "a.txt"]

    def test_missing_root(self, tmp_path: Path, state: LocalBackupState, clock: FakeClock) -> None:
        coordinator = make_coordinator(tmp_path / "missing", FakeTransfer(), state, clock)

        with pytest.raises(InvalidWatchRootError):
            coordinator.run_full_backup()
        assert coordinator.state is CoordinatorState.IDLE


class TestIncrementalFlush:
    """Tests for debounced flushing of watched changes."""

    def test_flush_after_quiet_window(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        f.write_text("hello")
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        coordinator.submit(ChangeEvent(f, ChangeAction.CREATED))
        coordinator.poll_once()
        clock.advance(0.3)
        coordinator.poll_once()
        assert transfer.batches == []

        flush_after_quiet(coordinator, clock)

        assert transfer.sent_names == [["docs/a.txt"]]
        assert state.get_record(f) is not None
        assert len(coordinator.debouncer) == 0
        assert coordinator.stats.files_uploaded == 1

    def test_burst_is_one_upload(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        f.write_text("v1")
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        for action in (ChangeAction.CREATED, ChangeAction.MODIFIED, ChangeAction.MODIFIED):
            coordinator.submit(ChangeEvent(f, action))
        coordinator.poll_once()
        flush_after_quiet(coordinator, clock)

        assert transfer.sent_names == [["docs/a.txt"]]
        assert coordinator.stats.events_received == 3

    def test_unchanged_content_not_uploaded(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        f.write_text("same")
        state.save_record(f, compute_file_hash(f), 4)
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        coordinator.submit(ChangeEvent(f, ChangeAction.MODIFIED))
        coordinator.poll_once()
        flush_after_quiet(coordinator, clock)

        assert all(batch.is_empty for batch in transfer.batches)
        assert coordinator.last_report is not None
        assert coordinator.last_report.unchanged == 1

    def test_delete_of_backed_up_file(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        state.save_record(f, "hash", 1)
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        coordinator.submit(ChangeEvent(f, ChangeAction.DELETED))
        coordinator.poll_once()
        flush_after_quiet(coordinator, clock)

        assert transfer.batches[0].deletions == ["docs/a.txt"]
        assert state.get_record(f) is None

    def test_delete_of_unknown_file_dropped(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        coordinator.submit(ChangeEvent(watch_dir / "never.txt", ChangeAction.DELETED))
        coordinator.poll_once()
        flush_after_quiet(coordinator, clock)

        assert all(batch.is_empty for batch in transfer.batches)

    def test_file_recreated_before_flush_is_uploaded(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        """Disk state at flush time decides: a pending delete of an existing file uploads it."""
        f = watch_dir / "a.txt"
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        coordinator.submit(ChangeEvent(f, ChangeAction.DELETED))
        coordinator.poll_once()
        f.write_text("back again")
        flush_after_quiet(coordinator, clock)

        assert transfer.sent_names == [["docs/a.txt"]]

    def test_path_outside_roots_dropped(
        self, watch_dir: Path, tmp_path: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        outside = tmp_path / "outside.txt"
        outside.write_text("x")
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        coordinator.submit(ChangeEvent(outside, ChangeAction.CREATED))
        coordinator.poll_once()
        flush_after_quiet(coordinator, clock)

        assert all(batch.is_empty for batch in transfer.batches)

    def test_transfer_in_flight_defers_next_flush(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        a = watch_dir / "a.txt"
        b = watch_dir / "b.txt"
        a.write_text("a")
        b.write_text("b")
        transfer = FakeTransfer()
        transfer.gate = threading.Event()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        coordinator.submit(ChangeEvent(a, ChangeAction.CREATED))
        coordinator.poll_once()
        clock.advance(0.6)
        coordinator.poll_once()
        assert coordinator.transfer_in_progress
        assert coordinator.state is CoordinatorState.FLUSHING

        coordinator.submit(ChangeEvent(b, ChangeAction.CREATED))
        coordinator.poll_once()
        clock.advance(0.6)
        coordinator.poll_once()
        assert b in coordinator.debouncer

        transfer.gate.set()
        assert coordinator.wait_for_transfer(timeout=5)
        coordinator.poll_once()
        assert coordinator.wait_for_transfer(timeout=5)

        assert transfer.sent_names == [["docs/a.txt"], ["docs/b.txt"]]


    def test_removed_directory_deletes_backed_up_files(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        (watch_dir / "a.txt").write_text("a")
        (watch_dir / "sub").mkdir()
        (watch_dir / "sub" / "b.txt").write_text("b")
        (watch_dir / "sub" / "c.txt").write_text("c")
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)
        coordinator.run_full_backup()

        shutil.rmtree(watch_dir / "sub")
        coordinator.submit(
            ChangeEvent(watch_dir / "sub", ChangeAction.DELETED, is_directory=True)
        )
        flush_after_quiet(coordinator, clock)

        assert sorted(transfer.batches[-1].deletions) == ["docs/sub/b.txt", "docs/sub/c.txt"]
        assert [r.path for r in state.list_records()] == [str(watch_dir / "a.txt")]

    def test_file_vanishing_mid_send_becomes_delete(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        f.write_text("v1")
        transfer = FakeTransfer()
        coordinator = make_coordinator(watch_dir, transfer, state, clock)
        coordinator.run_full_backup()

        f.write_text("v2")
        coordinator.submit(ChangeEvent(f, ChangeAction.MODIFIED))
        transfer.vanish = f
        flush_after_quiet(coordinator, clock)

        report = coordinator.last_report
        assert report is not None
        assert report.ok
        assert report.deleted == ["docs/a.txt"]
        assert report.uploaded == []
        assert state.get_record(f) is None
        assert len(coordinator.debouncer) == 0


class TestFailureHandling:
    """Tests for retryable and fatal transfer failures."""

    def test_retryable_keeps_actions_and_backs_off(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        f.write_text("a")
        transfer = FakeTransfer(RETRY, RETRY)
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        coordinator.submit(ChangeEvent(f, ChangeAction.CREATED))
        coordinator.poll_once()
        flush_after_quiet(coordinator, clock)

        assert f in coordinator.debouncer
        assert coordinator.retry_at == pytest.approx(clock.now + 1.0)
        assert state.get_record(f) is None

        # Not before the backoff delay
        clock.advance(0.4)
        coordinator.poll_once()
        assert len(transfer.batches) == 1

        clock.advance(0.7)
        coordinator.poll_once()
        assert coordinator.wait_for_transfer(timeout=5)
        assert len(transfer.batches) == 2
        assert coordinator.retry_at == pytest.approx(clock.now + 2.0)

        clock.advance(2.1)
        coordinator.poll_once()
        assert coordinator.wait_for_transfer(timeout=5)
        assert len(transfer.batches) == 3
        assert state.get_record(f) is not None
        assert len(coordinator.debouncer) == 0
        assert coordinator.retry_at is None

    def test_retryable_persists_pending(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        f.write_text("a")
        coordinator = make_coordinator(watch_dir, FakeTransfer(RETRY), state, clock)

        coordinator.submit(ChangeEvent(f, ChangeAction.CREATED))
        coordinator.poll_once()
        flush_after_quiet(coordinator, clock)

        assert [a.path for a in state.load_pending(0.0)] == [f]

    def test_unauthorized_halts_without_retry(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        f.write_text("a")
        transfer = FakeTransfer(UNAUTHORIZED)
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        coordinator.submit(ChangeEvent(f, ChangeAction.CREATED))
        coordinator.poll_once()
        flush_after_quiet(coordinator, clock)

        assert coordinator.is_halted
        assert f in coordinator.debouncer

        clock.advance(3600)
        coordinator.poll_once()
        assert len(transfer.batches) == 1

        coordinator.replace_credential("new-token")
        assert transfer.client.token == "new-token"
        assert not coordinator.is_halted

        coordinator.poll_once()
        assert coordinator.wait_for_transfer(timeout=5)
        assert len(transfer.batches) == 2
        assert state.get_record(f) is not None

    def test_not_found_halts_until_resume(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        f.write_text("a")
        transfer = FakeTransfer(NOT_FOUND)
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        coordinator.submit(ChangeEvent(f, ChangeAction.CREATED))
        coordinator.poll_once()
        flush_after_quiet(coordinator, clock)

        assert coordinator.is_halted
        assert coordinator.halt_reason == "Backup endpoint not found"

        coordinator.resume()
        coordinator.poll_once()
        assert coordinator.wait_for_transfer(timeout=5)
        assert len(transfer.batches) == 2

    def test_fatal_retry_limit(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        f.write_text("a")
        transfer = FakeTransfer(NOT_FOUND, NOT_FOUND)
        coordinator = make_coordinator(watch_dir, transfer, state, clock, fatal_retry_limit=1)

        coordinator.submit(ChangeEvent(f, ChangeAction.CREATED))
        coordinator.poll_once()
        flush_after_quiet(coordinator, clock)

        assert not coordinator.is_halted
        assert coordinator.retry_at is not None

        clock.advance(1.1)
        coordinator.poll_once()
        assert coordinator.wait_for_transfer(timeout=5)

        assert coordinator.is_halted
        assert f in coordinator.debouncer

    def test_new_events_merge_into_retry(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        a = watch_dir / "a.txt"
        b = watch_dir / "b.txt"
        a.write_text("a")
        b.write_text("b")
        transfer = FakeTransfer(RETRY)
        coordinator = make_coordinator(watch_dir, transfer, state, clock)

        coordinator.submit(ChangeEvent(a, ChangeAction.CREATED))
        coordinator.poll_once()
        flush_after_quiet(coordinator, clock)

        coordinator.submit(ChangeEvent(b, ChangeAction.CREATED))
        coordinator.poll_once()
        clock.advance(1.1)
        coordinator.poll_once()
        assert coordinator.wait_for_transfer(timeout=5)

        assert sorted(transfer.sent_names[-1]) == ["docs/a.txt", "docs/b.txt"]


class TestLifecycle:
    """Tests for start/stop and persistence across runs."""

    def test_stop_persists_unflushed_events(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        f.write_text("a")
        coordinator = make_coordinator(watch_dir, FakeTransfer(), state, clock)

        coordinator.start(watch=False)
        assert coordinator.state is CoordinatorState.WATCHING
        coordinator.submit(ChangeEvent(f, ChangeAction.CREATED))
        coordinator.stop()

        assert coordinator.state is CoordinatorState.IDLE
        assert [a.path for a in state.load_pending(0.0)] == [f]

    def test_start_restores_pending(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        f = watch_dir / "a.txt"
        f.write_text("a")
        first = make_coordinator(watch_dir, FakeTransfer(RETRY), state, clock)
        first.run_full_backup()

        transfer = FakeTransfer()
        second = make_coordinator(watch_dir, transfer, state, clock)
        second.start(watch=False)
        try:
            assert f in second.debouncer
        finally:
            second.stop()

    def test_full_backup_rejected_while_watching(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        coordinator = make_coordinator(watch_dir, FakeTransfer(), state, clock)
        coordinator.start(watch=False)
        try:
            with pytest.raises(RuntimeError, match="busy"):
                coordinator.run_full_backup()
        finally:
            coordinator.stop()

    def test_stop_without_start(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        coordinator = make_coordinator(watch_dir, FakeTransfer(), state, clock)
        coordinator.stop()
        assert coordinator.state is CoordinatorState.IDLE

    def test_stop_during_transfer_persists_in_flight(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        """Actions of a transfer still running at stop() are saved."""
        f = watch_dir / "a.txt"
        f.write_text("a")
        transfer = FakeTransfer()
        transfer.gate = threading.Event()
        coordinator = make_coordinator(watch_dir, transfer, state, clock, server_timeout=0.5)

        coordinator.start(watch=False)
        coordinator.submit(ChangeEvent(f, ChangeAction.MODIFIED))
        wait_until(lambda: f in coordinator.debouncer)
        clock.advance(0.6)
        assert transfer.started.wait(timeout=5)

        coordinator.stop()

        try:
            assert coordinator.state is CoordinatorState.IDLE
            assert [a.path for a in state.load_pending(0.0)] == [f]
        finally:
            transfer.gate.set()
            coordinator.wait_for_transfer(timeout=5)

    def test_stop_during_transfer_with_newer_event_for_same_path(
        self, watch_dir: Path, state: LocalBackupState, clock: FakeClock
    ) -> None:
        """A path both in flight and pending again is saved once."""
        f = watch_dir / "a.txt"
        f.write_text("a")
        transfer = FakeTransfer()
        transfer.gate = threading.Event()
        coordinator = make_coordinator(watch_dir, transfer, state, clock, server_timeout=0.5)

        coordinator.start(watch=False)
        coordinator.submit(ChangeEvent(f, ChangeAction.CREATED))
        wait_until(lambda: f in coordinator.debouncer)
        clock.advance(0.6)
        assert transfer.started.wait(timeout=5)

        f.write_text("a2")
        coordinator.submit(ChangeEvent(f, ChangeAction.MODIFIED))
        wait_until(lambda: f in coordinator.debouncer)
        coordinator.stop(timeout=5)

        try:
            assert coordinator.state is CoordinatorState.IDLE
            pending = state.load_pending(0.0)
            assert [(a.path, a.action) for a in pending] == [(f, ChangeAction.MODIFIED)]
        finally:
            transfer.gate.set()
            coordinator.wait_for_transfer(timeout=5)
