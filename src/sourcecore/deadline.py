"""
Per-pass deadlines.

A reconcile pass carries one ``Deadline``; every store call made on its
behalf gets the remaining time as its request timeout, and a pass that runs
out of time fails with ``ReconcileTimeoutError`` so the controller can
retry it with backoff.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from sourcecore.errors import ReconcileTimeoutError


class Deadline:
    """Absolute deadline on a monotonic clock. ``None`` seconds means unbounded."""

    def __init__(self, seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def check(self, operation: str = "reconcile") -> None:
        """Raise ``ReconcileTimeoutError`` if the deadline has passed."""
        if self.expired():
            raise ReconcileTimeoutError(f"deadline exceeded during {operation}")
