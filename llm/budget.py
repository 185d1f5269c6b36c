"""
Recall - Budget Guard
Daily USD spend limit for LLM extraction.

The window is the UTC calendar day. Each call reserves its estimated cost
before it is sent and settles the actual cost afterwards; the check and the
reservation happen in one critical section so concurrent callers can never
jointly overshoot the limit on estimates.
"""

import itertools
from dataclasses import dataclass
from datetime import datetime, date
from threading import Lock
from typing import Optional, Callable, Dict, Tuple

from core.clock import Clock, get_clock
from core.logger import log_info, log_warning, log_error


class BudgetBlockedError(Exception):
    """Raised when a call's estimate does not fit in the remaining budget."""

    def __init__(self, estimate: float, spent: float, reserved: float, limit: float):
        super().__init__(
            f"Daily budget exhausted: spent ${spent:.4f} + reserved ${reserved:.4f} "
            f"+ estimate ${estimate:.4f} > limit ${limit:.2f}"
        )
        self.estimate = estimate
        self.spent = spent
        self.reserved = reserved
        self.limit = limit


@dataclass(frozen=True)
class BudgetState:
    """Snapshot of the current window."""
    window_start_utc: date
    spent_usd: float
    reserved_usd: float
    daily_limit_usd: float

    @property
    def enabled(self) -> bool:
        return self.daily_limit_usd > 0

    @property
    def utilization_percent(self) -> float:
        if not self.enabled:
            return 0.0
        return 100.0 * self.spent_usd / self.daily_limit_usd


@dataclass(frozen=True)
class BudgetReservation:
    """Handle for an estimate held against the budget."""
    id: int
    amount_usd: float


class BudgetGuard:
    """
    Process-wide daily budget shared by all providers.

    A limit of 0 disables blocking; spend is still tracked.
    """

    def __init__(
        self,
        daily_limit_usd: float = 0.0,
        clock: Optional[Clock] = None,
        warning_thresholds: Tuple[int, ...] = (70, 90, 100),
        on_utilization: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize the budget guard.

        Args:
            daily_limit_usd: Spend ceiling per UTC day (0 disables)
            clock: Time source for the UTC window
            warning_thresholds: Utilization percentages logged once per window
            on_utilization: Called with the utilization percent after each change
        """
        self.daily_limit_usd = max(0.0, daily_limit_usd)
        self._clock = clock or get_clock()
        self._thresholds = tuple(sorted(warning_thresholds))
        self._on_utilization = on_utilization

        self._window_start = self._clock.now_utc().date()
        self._spent = 0.0
        self._reservations: Dict[int, float] = {}
        self._warned = set()
        self._ids = itertools.count(1)
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self.daily_limit_usd > 0

    def _roll_window(self, now: datetime) -> bool:
        """Start a new window at the UTC day boundary; True if it rolled."""
        today = now.date()
        if today > self._window_start:
            log_info(
                f"Budget window rolled over ({self._window_start} -> {today}); "
                f"previous spend ${self._spent:.4f}"
            )
            self._window_start = today
            self._spent = 0.0
            self._warned = set()
            return True
        return False

    def _reserved(self) -> float:
        return sum(self._reservations.values())

    def check_and_reserve(self, estimate_usd: float) -> BudgetReservation:
        """
        Reserve an estimated cost or refuse the call.

        Args:
            estimate_usd: Estimated cost of the upcoming call

        Returns:
            BudgetReservation to settle or release afterwards

        Raises:
            BudgetBlockedError: if spent + reserved + estimate exceeds the limit
        """
        estimate_usd = max(0.0, estimate_usd)
        blocked = None
        reservation = None
        with self._lock:
            rolled = self._roll_window(self._clock.now_utc())
            reserved = self._reserved()
            if self.enabled and self._spent + reserved + estimate_usd > self.daily_limit_usd:
                blocked = BudgetBlockedError(estimate_usd, self._spent, reserved, self.daily_limit_usd)
            else:
                reservation = BudgetReservation(next(self._ids), estimate_usd)
                self._reservations[reservation.id] = estimate_usd
        if rolled:
            self._report([], 0.0)
        if blocked is not None:
            raise blocked
        return reservation

    def settle(self, reservation: BudgetReservation, actual_usd: float) -> None:
        """Replace a reservation with the actual cost of the call."""
        with self._lock:
            self._roll_window(self._clock.now_utc())
            self._reservations.pop(reservation.id, None)
            self._spent += max(0.0, actual_usd)
            crossed = self._crossed_thresholds()
            percent = self._utilization()
        self._report(crossed, percent)

    def release(self, reservation: BudgetReservation) -> None:
        """Drop a reservation without charging anything."""
        with self._lock:
            self._reservations.pop(reservation.id, None)

    def _utilization(self) -> float:
        if not self.enabled:
            return 0.0
        return 100.0 * self._spent / self.daily_limit_usd

    def _crossed_thresholds(self) -> list:
        if not self.enabled:
            return []
        percent = self._utilization()
        crossed = [t for t in self._thresholds if percent >= t and t not in self._warned]
        self._warned.update(crossed)
        return crossed

    def _report(self, crossed: list, percent: float) -> None:
        for threshold in crossed:
            message = (
                f"Daily LLM budget at {percent:.1f}% "
                f"(threshold {threshold}%, limit ${self.daily_limit_usd:.2f})"
            )
            if threshold >= 100:
                log_error(message)
            else:
                log_warning(message)
        if self._on_utilization:
            self._on_utilization(percent)

    def snapshot(self) -> BudgetState:
        with self._lock:
            rolled = self._roll_window(self._clock.now_utc())
            state = BudgetState(
                window_start_utc=self._window_start,
                spent_usd=self._spent,
                reserved_usd=self._reserved(),
                daily_limit_usd=self.daily_limit_usd,
            )
        if rolled:
            self._report([], 0.0)
        return state
