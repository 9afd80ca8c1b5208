"""Run-wide deadline shared by every network-bound stage."""

import time
from typing import Callable, Optional

from .errors import DeadlineExceeded

# httpx rejects a zero timeout as "no timeout", so never hand it less than this.
MIN_REQUEST_TIMEOUT = 0.001


class Deadline:
    """End-to-end time budget for one run.

    A deadline is created once per run and passed to every stage. Stages call
    ``check()`` before doing work and ``timeout()`` to cap per-request httpx
    timeouts by the remaining budget. ``cancel()`` aborts the run at the next
    check.
    """

    def __init__(self, seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def remaining(self) -> Optional[float]:
        """Seconds left, or None for an unbounded deadline."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        if self._cancelled:
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str = "") -> None:
        """Raise DeadlineExceeded if the run must stop."""
        where = f" before {operation}" if operation else ""
        if self._cancelled:
            raise DeadlineExceeded(f"run cancelled{where}")
        if self.expired():
            raise DeadlineExceeded(f"deadline exceeded{where}")

    def timeout(self, default: float) -> float:
        """Per-request timeout: the default capped by the remaining budget."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(MIN_REQUEST_TIMEOUT, min(default, remaining))


def request_timeout(deadline: Optional[Deadline], default: float) -> float:
    if deadline is None:
        return default
    return deadline.timeout(default)
