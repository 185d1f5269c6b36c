"""
Recall - Provider Rate Limiter
Client-side throttling in front of every provider call.

Two constraints must both admit a call:
- token bucket: burst capacity C, refilled at R tokens/second
- sliding window: at most N calls in any W-second window
Waits honor a CancellationToken and time out as a local rate_limit error.
"""

from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Optional, Dict, Deque

from core.clock import Clock, get_clock
from core.logger import log_warning
from concurrency.cancellation import CancellationToken
from llm.types import ErrorKind, ProviderError

POLL_INTERVAL = 0.05  # Wait slice when no refill is scheduled (seconds)


@dataclass(frozen=True)
class RateLimiterConfig:
    """Limits for one provider."""
    burst_capacity: int = 5
    sustained_rate: float = 1.0       # Tokens per second
    window_seconds: float = 60.0
    max_per_window: int = 50


@dataclass(frozen=True)
class RateLimiterStats:
    """Snapshot for diagnostics."""
    tokens_available: float
    calls_in_window: int
    total_acquired: int
    total_rejected: int
    total_timeouts: int


class RateLimiter:
    """
    Token bucket plus sliding window for one provider.

    All state changes happen under a single lock, so the check and the debit
    are atomic with respect to concurrent callers.
    """

    def __init__(
        self,
        provider: str,
        limits: Optional[RateLimiterConfig] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the rate limiter.

        Args:
            provider: Provider name (used in errors and logs)
            limits: Bucket and window limits
            clock: Time source (defaults to the system clock)
        """
        self.provider = provider
        self.limits = limits or RateLimiterConfig()
        self._clock = clock or get_clock()

        self._tokens = float(self.limits.burst_capacity)
        self._last_refill = self._clock.monotonic()
        self._window: Deque[float] = deque()
        self._paused_until = 0.0
        self._lock = Lock()

        self._acquired = 0
        self._rejected = 0
        self._timeouts = 0

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(
            float(self.limits.burst_capacity),
            self._tokens + elapsed * self.limits.sustained_rate
        )
        self._last_refill = now

    def _prune(self, now: float) -> None:
        cutoff = now - self.limits.window_seconds
        while self._window and self._window[0] <= cutoff:
            self._window.popleft()

    def _wait_needed(self, now: float) -> float:
        """Seconds until both constraints admit a call (0 if admitted now)."""
        self._refill(now)
        self._prune(now)

        waits = [0.0]
        if now < self._paused_until:
            waits.append(self._paused_until - now)
        if self._tokens < 1.0:
            if self.limits.sustained_rate <= 0:
                waits.append(float("inf"))
            else:
                waits.append((1.0 - self._tokens) / self.limits.sustained_rate)
        if len(self._window) >= self.limits.max_per_window:
            waits.append(self._window[0] + self.limits.window_seconds - now)
        return max(waits)

    def _take(self, now: float) -> None:
        self._tokens -= 1.0
        self._window.append(now)
        self._acquired += 1

    def try_acquire(self) -> bool:
        """
        Take a slot without waiting.

        Returns:
            True if admitted, False if either constraint is exhausted
        """
        with self._lock:
            now = self._clock.monotonic()
            if self._wait_needed(now) > 0:
                self._rejected += 1
                return False
            self._take(now)
            return True

    def acquire(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> None:
        """
        Block until a slot is available, then take it.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely)
            cancel: Token that aborts the wait

        Raises:
            ProviderError(rate_limit, local=True) on timeout or cancellation
        """
        start = self._clock.monotonic()
        while True:
            with self._lock:
                now = self._clock.monotonic()
                wait = self._wait_needed(now)
                if wait <= 0:
                    self._take(now)
                    return

                if timeout is not None and (now - start) + wait > timeout:
                    self._timeouts += 1
                    break

            if cancel is not None and cancel.is_cancelled():
                break
            pause = POLL_INTERVAL if wait == float("inf") else wait
            if not self._clock.sleep(pause, cancel):
                break

        log_warning(f"Rate limiter for {self.provider}: no slot within {timeout}s")
        raise ProviderError(
            ErrorKind.RATE_LIMIT,
            f"Local rate limit wait exceeded for {self.provider}",
            provider=self.provider,
            local=True,
        )

    def predict_wait(self) -> float:
        """Seconds a caller would currently wait for a slot."""
        with self._lock:
            return self._wait_needed(self._clock.monotonic())

    def pause(self, seconds: float) -> None:
        """Hold all calls for `seconds` (e.g. after a server retry-after)."""
        if seconds <= 0:
            return
        with self._lock:
            until = self._clock.monotonic() + seconds
            self._paused_until = max(self._paused_until, until)

    def update_from_headers(self, remaining: Optional[int], reset_seconds: Optional[float]) -> None:
        """
        Align local state with provider-reported limits.

        Args:
            remaining: Requests the provider says are left
            reset_seconds: Seconds until the provider's limit resets
        """
        with self._lock:
            if remaining is not None:
                self._tokens = min(self._tokens, float(max(0, remaining)))
            if remaining == 0 and reset_seconds:
                until = self._clock.monotonic() + reset_seconds
                self._paused_until = max(self._paused_until, until)

    def stats(self) -> RateLimiterStats:
        with self._lock:
            now = self._clock.monotonic()
            self._refill(now)
            self._prune(now)
            return RateLimiterStats(
                tokens_available=self._tokens,
                calls_in_window=len(self._window),
                total_acquired=self._acquired,
                total_rejected=self._rejected,
                total_timeouts=self._timeouts,
            )


class RateLimiterRegistry:
    """Lazily creates one limiter per provider."""

    def __init__(
        self,
        limits: Optional[RateLimiterConfig] = None,
        clock: Optional[Clock] = None,
        overrides: Optional[Dict[str, RateLimiterConfig]] = None,
    ):
        self._default = limits or RateLimiterConfig()
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._limiters: Dict[str, RateLimiter] = {}
        self._lock = Lock()

    def get(self, provider: str) -> RateLimiter:
        with self._lock:
            limiter = self._limiters.get(provider)
            if limiter is None:
                limiter = RateLimiter(
                    provider,
                    self._overrides.get(provider, self._default),
                    clock=self._clock,
                )
                self._limiters[provider] = limiter
            return limiter

