"""Recursive enumeration of files under a watch root.

Used for full backups. Exclusions are applied to every entry before
descending into it or yielding it, and unreadable directories are reported
without aborting the scan of their siblings.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from backupagent.client.sync.filter import ExcludePattern, is_excluded
from backupagent.core.errors import FilesystemError, InvalidWatchRootError

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Result of a directory scan.

    Attributes:
        root: The scanned root.
        files: Files found, in depth-first order.
        errors: Entries that could not be read.
    """

    root: Path
    files: list[Path] = field(default_factory=list)
    errors: list[FilesystemError] = field(default_factory=list)

    def __iter__(self) -> Iterator[Path]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)


def ensure_directory(root: Path) -> None:
    """Verify that a path exists and is a directory.

    Raises:
        InvalidWatchRootError: If the path is missing or not a directory.
    """
    if not root.exists():
        raise InvalidWatchRootError(f"Watch directory does not exist: {root}")
    if not root.is_dir():
        raise InvalidWatchRootError(f"The path has to point to a folder: {root}")


def scan_directory(root: Path, patterns: Iterable[ExcludePattern] = ()) -> ScanResult:
    """Recursively list files under root, depth-first.

    Args:
        root: Directory to scan.
        patterns: Compiled exclusion patterns.

    Returns:
        ScanResult with every reachable file and the per-entry errors.

    Raises:
        InvalidWatchRootError: If root does not exist or is not a directory.
    """
    root = Path(root)
    ensure_directory(root)

    patterns = tuple(patterns)
    result = ScanResult(root=root)
    _walk(root, root, patterns, result)

    if result.errors:
        logger.warning(
            "Scan of %s skipped %d unreadable entries", root, len(result.errors)
        )
    return result


def _walk(
    directory: Path,
    root: Path,
    patterns: tuple[ExcludePattern, ...],
    result: ScanResult,
) -> None:
    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        logger.warning("Cannot read directory %s: %s", directory, e)
        result.errors.append(FilesystemError(str(e), directory))
        return

    for entry in entries:
        path = Path(entry.path)
        if is_excluded(path, patterns, root):
            continue
        try:
            # Symlinks are never followed nor backed up
            if entry.is_symlink():
                continue
            if entry.is_dir(follow_symlinks=False):
                _walk(path, root, patterns, result)
            elif entry.is_file(follow_symlinks=False):
                result.files.append(path)
        except OSError as e:
            logger.warning("Cannot stat %s: %s", path, e)
            result.errors.append(FilesystemError(str(e), path))
