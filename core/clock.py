"""
Recall - Clock & Jitter
Injectable time and randomness sources.

Everything that waits or timestamps goes through a Clock, so tests can drive
time with ManualClock instead of sleeping.
"""

import random
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from concurrency.cancellation import CancellationToken


class Clock:
    """Wall-clock time, monotonic time, and cancellable sleep."""

    def monotonic(self) -> float:
        """Seconds from an arbitrary fixed origin, never going backwards."""
        return time.monotonic()

    def now_utc(self) -> datetime:
        """Current time as an aware UTC datetime."""
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float, cancel: Optional["CancellationToken"] = None) -> bool:
        """
        Sleep for up to `seconds`.

        Args:
            seconds: Duration to sleep
            cancel: Optional token; the sleep ends early when it fires

        Returns:
            True if the full duration elapsed, False if cancelled
        """
        if seconds <= 0:
            return not (cancel and cancel.is_cancelled())
        if cancel is None:
            time.sleep(seconds)
            return True
        return not cancel.wait(seconds)


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    sleep() advances time instantly and records each requested duration,
    which makes backoff sequences observable in tests.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._mono = 0.0
        self._lock = threading.Lock()
        self.sleeps = []

    def monotonic(self) -> float:
        with self._lock:
            return self._mono

    def now_utc(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        """Move both clocks forward."""
        with self._lock:
            self._mono += seconds
            self._now = self._now + timedelta(seconds=seconds)

    def set_utc(self, when: datetime) -> None:
        """Jump wall-clock time (monotonic time follows the difference)."""
        with self._lock:
            delta = (when - self._now).total_seconds()
            self._now = when
            if delta > 0:
                self._mono += delta

    def sleep(self, seconds: float, cancel: Optional["CancellationToken"] = None) -> bool:
        if cancel is not None and cancel.is_cancelled():
            return False
        if seconds > 0:
            self.sleeps.append(seconds)
            self.advance(seconds)
        return not (cancel is not None and cancel.is_cancelled())


class JitterSource:
    """Uniform random jitter, seedable for reproducible backoff."""

    def __init__(self, seed: Optional[int] = None):
        self._random = random.Random(seed)
        self._lock = threading.Lock()

    def uniform(self, low: float, high: float) -> float:
        with self._lock:
            return self._random.uniform(low, high)


class ZeroJitter(JitterSource):
    """Jitter source that always returns the midpoint."""

    def __init__(self):
        super().__init__(seed=0)

    def uniform(self, low: float, high: float) -> float:
        return (low + high) / 2.0


# Global clock instance
_clock: Optional[Clock] = None


def get_clock() -> Clock:
    """Get the global clock instance."""
    global _clock
    if _clock is None:
        _clock = Clock()
    return _clock
