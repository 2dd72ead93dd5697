"""Exclusion filtering for watched paths.

This module provides:
- is_temp_name: Built-in heuristic for editor/OS temporary files
- compile_pattern / compile_patterns: Validate user exclusion globs
- ExcludePattern: A compiled, case-sensitive glob
- is_excluded: Decide whether a path should be skipped
"""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path, PurePath

from backupagent.core.errors import ConfigError

TEMP_SUFFIXES = (".tmp", ".temp", ".swp", ".bak")
TEMP_PREFIXES = (".", "~", ".#")

# Exact names editors create and remove around a save
EDITOR_SENTINEL_NAMES = frozenset({"4913"})  # vim write test


def is_temp_name(name: str) -> bool:
    """Check a single path component against the temp-file heuristic.

    Args:
        name: File or directory name (no separators).

    Returns:
        True for hidden files, editor swap/backup files and sentinels.
    """
    if not name:
        return False
    return (
        name.startswith(TEMP_PREFIXES)
        or name.endswith(TEMP_SUFFIXES)
        or name in EDITOR_SENTINEL_NAMES
    )


@dataclass(frozen=True)
class ExcludePattern:
    """A validated exclusion glob.

    Matching is case-sensitive and `*` also matches `/`, so `*/build/*`
    excludes every build directory below any root.
    """

    pattern: str
    regex: re.Pattern[str]

    def matches(self, path: str) -> bool:
        return self.regex.match(path) is not None


def _validate(pattern: str) -> None:
    if not pattern:
        raise ConfigError("Invalid exclusion pattern '': pattern is empty")

    # Unterminated character class
    i = 0
    while i < len(pattern):
        if pattern[i] == "[":
            close = pattern.find("]", i + 2)
            if close == -1:
                raise ConfigError(
                    f"Invalid exclusion pattern '{pattern}': unterminated '['"
                )
            i = close
        i += 1

    # '**' is only meaningful as a whole path component
    for component in pattern.split("/"):
        if "**" in component and component != "**":
            raise ConfigError(
                f"Invalid exclusion pattern '{pattern}': "
                "'**' must be a complete path component"
            )


def compile_pattern(pattern: str) -> ExcludePattern:
    """Validate and compile one exclusion glob.

    Args:
        pattern: Glob pattern from the configuration.

    Returns:
        Compiled pattern.

    Raises:
        ConfigError: If the pattern is malformed.
    """
    _validate(pattern)
    try:
        regex = re.compile(fnmatch.translate(pattern))
    except re.error as e:
        raise ConfigError(f"Invalid exclusion pattern '{pattern}': {e}") from e
    return ExcludePattern(pattern=pattern, regex=regex)


def compile_patterns(patterns: Iterable[str]) -> tuple[ExcludePattern, ...]:
    """Compile a list of exclusion globs, failing on the first invalid one."""
    return tuple(compile_pattern(p) for p in patterns)


def is_excluded(
    path: Path,
    patterns: Iterable[ExcludePattern],
    root: Path | None = None,
) -> bool:
    """Check if a path should be ignored.

    Args:
        path: Absolute path to check.
        patterns: Compiled user exclusion patterns.
        root: Watch root the path belongs to, if known. Enables matching
            patterns against the root-relative path and applying the temp
            heuristic to intermediate directories.

    Returns:
        True if the path should be ignored.
    """
    if is_temp_name(path.name):
        return True

    full = PurePath(path).as_posix()
    candidates = [full]

    if root is not None:
        try:
            rel = path.relative_to(root)
        except ValueError:
            rel = None
        if rel is not None and rel.parts:
            # A hidden or temp directory hides everything below it
            if any(is_temp_name(part) for part in rel.parts[:-1]):
                return True
            candidates.append(rel.as_posix())

    return any(p.matches(c) for p in patterns for c in candidates)
