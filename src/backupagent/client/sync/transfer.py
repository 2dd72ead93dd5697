"""Upload of batches to the backup server.

The caller must tell apart failures that justify a local retry from those
that need the operator, so responses are mapped through a fixed decision
table rather than passed through:

    | Server response         | Outcome                              |
    |-------------------------|--------------------------------------|
    | 2xx                     | SUCCESS                              |
    | 404                     | FATAL (address misconfigured)        |
    | 401                     | FATAL, auth_failed (re-register)     |
    | transport error/timeout | RETRYABLE                            |
    | any other status        | FATAL (unrecognized server behavior) |
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from backupagent.core.errors import TransportError

if TYPE_CHECKING:
    from backupagent.client.api import BackupClient
    from backupagent.core.types import UploadBatch

logger = logging.getLogger(__name__)


class TransferOutcome(str, Enum):
    """Classification of a transfer attempt."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass
class TransferResult:
    """Result of sending one batch."""

    outcome: TransferOutcome
    status_code: int | None = None
    message: str = ""
    auth_failed: bool = False
    missing_path: Path | None = None  # file that vanished while sending

    @property
    def ok(self) -> bool:
        return self.outcome is TransferOutcome.SUCCESS


def classify_status(status_code: int) -> TransferResult:
    """Map an HTTP status code onto a TransferResult."""
    if 200 <= status_code < 300:
        return TransferResult(TransferOutcome.SUCCESS, status_code)
    if status_code == 404:
        return TransferResult(
            TransferOutcome.FATAL,
            status_code,
            "Backup endpoint not found; check the server address",
        )
    if status_code == 401:
        return TransferResult(
            TransferOutcome.FATAL,
            status_code,
            "Credential rejected; register this device again",
            auth_failed=True,
        )
    return TransferResult(
        TransferOutcome.FATAL,
        status_code,
        f"Unexpected server response: HTTP {status_code}",
    )


class TransferClient:
    """Sends UploadBatches and classifies the outcome."""

    def __init__(self, client: BackupClient) -> None:
        """Initialize the transfer client.

        Args:
            client: HTTP client carrying the device credential.
        """
        self._client = client

    @property
    def client(self) -> BackupClient:
        return self._client

    def send(self, batch: UploadBatch) -> TransferResult:
        """Upload a batch.

        Never raises for network or server failures; they are reported in
        the returned TransferResult.

        Args:
            batch: Files and deletions to send.

        Returns:
            TransferResult describing what the caller should do next.
        """
        if batch.is_empty:
            return TransferResult(TransferOutcome.SUCCESS, message="Nothing to send")

        try:
            response = self._client.post_backup(batch)
        except TransportError as e:
            logger.warning("Upload failed, will retry: %s", e)
            return TransferResult(TransferOutcome.RETRYABLE, message=str(e))
        except FileNotFoundError as e:
            logger.warning("Upload aborted, %s vanished after the batch was built", e.filename)
            return TransferResult(
                TransferOutcome.RETRYABLE,
                message=str(e),
                missing_path=Path(e.filename) if e.filename else None,
            )
        except OSError as e:
            # A file became unreadable after the batch was built
            logger.warning("Upload aborted, local file unavailable: %s", e)
            return TransferResult(TransferOutcome.RETRYABLE, message=str(e))

        result = classify_status(response.status_code)
        if result.ok:
            logger.info(
                "Uploaded %d files, %d deletions",
                len(batch.files),
                len(batch.deletions),
            )
        else:
            logger.error("Upload failed: %s", result.message)
        return result
