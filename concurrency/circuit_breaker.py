"""
Recall - Circuit Breaker
Per-provider failure-rate guard over a rolling window of recent outcomes.

closed     normal; every verdict lands in the window
open       calls are rejected with CircuitOpenError until the cooldown ends
half_open  exactly one trial call is admitted; its verdict decides the state
"""

from collections import deque
from enum import Enum
from threading import Lock
from typing import Optional, Callable, Dict, Deque, List

from core.clock import Clock, get_clock
from core.logger import log_info, log_warning


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised instead of calling a provider whose circuit is open."""

    def __init__(self, provider: str, retry_in: float = 0.0):
        super().__init__(f"Circuit open for {provider} (retry in {retry_in:.1f}s)")
        self.provider = provider
        self.retry_in = retry_in


TransitionListener = Callable[[str, CircuitState, CircuitState], None]


class CircuitPermit:
    """
    Admission ticket for one call.

    Exactly one of record_success(), record_failure() or release() takes
    effect; later calls are ignored.
    """

    def __init__(self, breaker: "CircuitBreaker", trial: bool):
        self._breaker = breaker
        self.trial = trial
        self._done = False

    def record_success(self) -> None:
        if not self._done:
            self._done = True
            self._breaker._record(self, failed=False)

    def record_failure(self) -> None:
        if not self._done:
            self._done = True
            self._breaker._record(self, failed=True)

    def release(self) -> None:
        """Give the permit back without a verdict (e.g. the call was cancelled)."""
        if not self._done:
            self._done = True
            self._breaker._release(self)


class CircuitBreaker:
    """
    Rolling-window circuit breaker for one provider.

    The check that admits a call and the state change it implies happen in
    one critical section.
    """

    def __init__(
        self,
        provider: str,
        threshold: float = 0.5,
        cooldown_seconds: float = 30.0,
        window_size: int = 20,
        minimum_calls: int = 10,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the breaker.

        Args:
            provider: Provider name
            threshold: Failure ratio (0..1) that must be exceeded to open
            cooldown_seconds: Time spent open before a trial is allowed
            window_size: Number of recent outcomes considered
            minimum_calls: Outcomes required in the window before it can open
            clock: Time source
        """
        self.provider = provider
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self.minimum_calls = max(1, min(minimum_calls, window_size))
        self._clock = clock or get_clock()

        self._window: Deque[bool] = deque(maxlen=window_size)  # True = failure
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._listeners: List[TransitionListener] = []
        self._lock = Lock()

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def failure_ratio(self) -> float:
        with self._lock:
            return self._ratio()

    def _ratio(self) -> float:
        if not self._window:
            return 0.0
        return sum(1 for failed in self._window if failed) / len(self._window)

    def _transition(self, new_state: CircuitState) -> Optional[tuple]:
        old_state = self._state
        if old_state == new_state:
            return None
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock.monotonic()
        elif new_state == CircuitState.CLOSED:
            self._window.clear()
        return (old_state, new_state)

    def _notify(self, change: Optional[tuple]) -> None:
        if change is None:
            return
        old_state, new_state = change
        if new_state == CircuitState.OPEN:
            log_warning(f"Circuit for {self.provider}: {old_state.value} -> open")
        else:
            log_info(f"Circuit for {self.provider}: {old_state.value} -> {new_state.value}")
        for listener in list(self._listeners):
            listener(self.provider, old_state, new_state)

    def try_acquire(self) -> CircuitPermit:
        """
        Admit one call or reject it.

        Returns:
            CircuitPermit that must receive a verdict or be released

        Raises:
            CircuitOpenError: while open, or while a half-open trial is in flight
        """
        change = None
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock.monotonic() - self._opened_at
                if elapsed < self.cooldown_seconds:
                    raise CircuitOpenError(self.provider, self.cooldown_seconds - elapsed)
                change = self._transition(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.provider, 0.0)
                self._trial_in_flight = True
                permit = CircuitPermit(self, trial=True)
            else:
                permit = CircuitPermit(self, trial=False)

        self._notify(change)
        return permit

    def _record(self, permit: CircuitPermit, failed: bool) -> None:
        change = None
        with self._lock:
            if permit.trial:
                self._trial_in_flight = False
                if self._state == CircuitState.HALF_OPEN:
                    change = self._transition(CircuitState.OPEN if failed else CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._window.append(failed)
                if (
                    failed
                    and len(self._window) >= self.minimum_calls
                    and self._ratio() > self.threshold
                ):
                    change = self._transition(CircuitState.OPEN)
        self._notify(change)

    def _release(self, permit: CircuitPermit) -> None:
        if permit.trial:
            with self._lock:
                self._trial_in_flight = False

    def reset(self) -> None:
        """Force the breaker closed with an empty window."""
        with self._lock:
            change = self._transition(CircuitState.CLOSED)
            self._window.clear()
            self._trial_in_flight = False
        self._notify(change)


class CircuitBreakerRegistry:
    """Provider-keyed breakers sharing one configuration."""

    def __init__(
        self,
        threshold: float = 0.5,
        cooldown_seconds: float = 30.0,
        window_size: int = 20,
        minimum_calls: int = 10,
        clock: Optional[Clock] = None,
        listener: Optional[TransitionListener] = None,
    ):
        self._kwargs = dict(
            threshold=threshold,
            cooldown_seconds=cooldown_seconds,
            window_size=window_size,
            minimum_calls=minimum_calls,
            clock=clock,
        )
        self._listener = listener
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get(self, provider: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(provider)
            if breaker is None:
                breaker = CircuitBreaker(provider, **self._kwargs)
                if self._listener:
                    breaker.add_listener(self._listener)
                self._breakers[provider] = breaker
            return breaker

    def states(self) -> Dict[str, CircuitState]:
        with self._lock:
            breakers = dict(self._breakers)
        return {name: breaker.state for name, breaker in breakers.items()}
