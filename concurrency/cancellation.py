"""
Recall - Cancellation
Cooperative cancellation shared by every suspension point of an extraction.

A token fires either when cancel() is called or when its deadline passes.
Waits, rate-limit acquisition and backoff sleeps all check it.
"""

import threading
from typing import Optional

from core.clock import Clock, get_clock


class CancellationToken:
    """
    Explicit cancel flag plus an optional deadline.

    The deadline is expressed on the clock's monotonic scale.
    """

    def __init__(self, deadline: Optional[float] = None, clock: Optional[Clock] = None):
        self._clock = clock or get_clock()
        self._event = threading.Event()
        self.deadline = deadline

    @classmethod
    def with_timeout(cls, seconds: float, clock: Optional[Clock] = None) -> "CancellationToken":
        """Create a token that expires `seconds` from now."""
        clock = clock or get_clock()
        return cls(deadline=clock.monotonic() + seconds, clock=clock)

    def cancel(self) -> None:
        self._event.set()

    @property
    def explicitly_cancelled(self) -> bool:
        return self._event.is_set()

    def deadline_exceeded(self) -> bool:
        return self.deadline is not None and self._clock.monotonic() >= self.deadline

    def is_cancelled(self) -> bool:
        return self._event.is_set() or self.deadline_exceeded()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock.monotonic())

    def wait(self, seconds: float) -> bool:
        """
        Block for up to `seconds` or until cancelled.

        Returns:
            True if the token fired, False if the full wait elapsed
        """
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._event.wait(seconds)
        return self.is_cancelled()
