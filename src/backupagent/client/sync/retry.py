"""Exponential backoff for failed transfers.

This module provides:
- Backoff: Tracks consecutive failures and computes the next retry delay
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


class Backoff:
    """Exponential backoff state for one retry loop.

    Usage:
        backoff = Backoff()
        delay = backoff.next_delay()   # 1.0, 2.0, 4.0, ... capped at 60.0
        backoff.reset()                # after a success
    """

    def __init__(
        self,
        initial: float = DEFAULT_INITIAL_BACKOFF,
        maximum: float = DEFAULT_MAX_BACKOFF,
        multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    ) -> None:
        self._initial = initial
        self._maximum = maximum
        self._multiplier = multiplier
        self._attempts = 0

    @property
    def attempts(self) -> int:
        """Number of failures since the last reset."""
        return self._attempts

    def next_delay(self) -> float:
        """Register a failure and return how long to wait before retrying."""
        delay = min(self._initial * (self._multiplier ** self._attempts), self._maximum)
        self._attempts += 1
        return delay

    def reset(self) -> None:
        """Forget previous failures."""
        if self._attempts:
            logger.debug("Backoff reset after %d failures", self._attempts)
        self._attempts = 0
