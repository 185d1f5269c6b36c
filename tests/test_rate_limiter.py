"""
Tests for the token-bucket + sliding-window rate limiter.
"""

import threading
import unittest

from core.clock import ManualClock
from concurrency.cancellation import CancellationToken
from concurrency.rate_limiter import RateLimiter, RateLimiterConfig, RateLimiterRegistry
from llm.types import ErrorKind, ProviderError


class TestTokenBucket(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock()
        self.limiter = RateLimiter(
            "alpha",
            RateLimiterConfig(burst_capacity=3, sustained_rate=1.0, window_seconds=60.0, max_per_window=100),
            clock=self.clock,
        )

    def test_burst_then_reject(self):
        self.assertTrue(self.limiter.try_acquire())
        self.assertTrue(self.limiter.try_acquire())
        self.assertTrue(self.limiter.try_acquire())
        self.assertFalse(self.limiter.try_acquire())
        self.assertEqual(self.limiter.stats().total_rejected, 1)

    def test_refill_over_time(self):
        for _ in range(3):
            self.limiter.try_acquire()
        self.clock.advance(1.0)
        self.assertTrue(self.limiter.try_acquire())
        self.assertFalse(self.limiter.try_acquire())

    def test_acquire_waits_for_refill(self):
        for _ in range(3):
            self.limiter.try_acquire()

        self.limiter.acquire(timeout=5.0)

        self.assertEqual(self.clock.sleeps, [1.0])
        self.assertEqual(self.limiter.stats().total_acquired, 4)

    def test_predict_wait(self):
        self.assertEqual(self.limiter.predict_wait(), 0.0)
        for _ in range(3):
            self.limiter.try_acquire()
        self.assertAlmostEqual(self.limiter.predict_wait(), 1.0)

    def test_acquire_timeout_is_local_rate_limit(self):
        for _ in range(3):
            self.limiter.try_acquire()

        with self.assertRaises(ProviderError) as ctx:
            self.limiter.acquire(timeout=0.5)

        self.assertEqual(ctx.exception.kind, ErrorKind.RATE_LIMIT)
        self.assertTrue(ctx.exception.local)
        self.assertEqual(self.clock.sleeps, [])
        self.assertEqual(self.limiter.stats().total_timeouts, 1)

    def test_cancelled_wait_raises(self):
        for _ in range(3):
            self.limiter.try_acquire()
        token = CancellationToken(clock=self.clock)
        token.cancel()

        with self.assertRaises(ProviderError) as ctx:
            self.limiter.acquire(timeout=10.0, cancel=token)
        self.assertTrue(ctx.exception.local)


class TestSlidingWindow(unittest.TestCase):

    def test_window_cap_applies_even_with_tokens(self):
        clock = ManualClock()
        limiter = RateLimiter(
            "alpha",
            RateLimiterConfig(burst_capacity=10, sustained_rate=10.0, window_seconds=60.0, max_per_window=2),
            clock=clock,
        )
        self.assertTrue(limiter.try_acquire())
        clock.advance(10.0)
        self.assertTrue(limiter.try_acquire())
        self.assertFalse(limiter.try_acquire())

        # First call leaves the window at t=60
        self.assertAlmostEqual(limiter.predict_wait(), 50.0)
        clock.advance(50.0)
        self.assertTrue(limiter.try_acquire())


class TestProviderHints(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock()
        self.limiter = RateLimiter("alpha", RateLimiterConfig(burst_capacity=5), clock=self.clock)

    def test_pause_blocks_until_elapsed(self):
        self.limiter.pause(5.0)
        self.assertFalse(self.limiter.try_acquire())
        self.clock.advance(5.0)
        self.assertTrue(self.limiter.try_acquire())

    def test_headers_reporting_exhaustion_pause(self):
        self.limiter.update_from_headers(remaining=0, reset_seconds=12.0)
        self.assertAlmostEqual(self.limiter.predict_wait(), 12.0)

    def test_headers_lower_available_tokens(self):
        self.limiter.update_from_headers(remaining=1, reset_seconds=None)
        self.assertTrue(self.limiter.try_acquire())
        self.assertFalse(self.limiter.try_acquire())


class TestConcurrency(unittest.TestCase):

    def test_concurrent_callers_never_exceed_burst(self):
        clock = ManualClock()
        limiter = RateLimiter(
            "alpha",
            RateLimiterConfig(burst_capacity=5, sustained_rate=0.0001, window_seconds=60.0, max_per_window=100),
            clock=clock,
        )
        admitted = []
        lock = threading.Lock()

        def worker():
            ok = limiter.try_acquire()
            with lock:
                admitted.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(admitted.count(True), 5)


class TestRegistry(unittest.TestCase):

    def test_overrides_per_provider(self):
        registry = RateLimiterRegistry(
            RateLimiterConfig(burst_capacity=5),
            clock=ManualClock(),
            overrides={"kobold": RateLimiterConfig(burst_capacity=1)},
        )
        self.assertIs(registry.get("alpha"), registry.get("alpha"))
        self.assertEqual(registry.get("alpha").limits.burst_capacity, 5)
        self.assertEqual(registry.get("kobold").limits.burst_capacity, 1)


if __name__ == "__main__":
    unittest.main()
