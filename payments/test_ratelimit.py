from django.core.cache import cache
from django.test import SimpleTestCase, override_settings

from .ratelimit import (
    CacheRateLimiter, SlidingWindowRateLimiter, build_rate_limiter, get_webhook_rate_limiter,
    reset_webhook_rate_limiter,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class SlidingWindowRateLimiterTests(SimpleTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.limiter = SlidingWindowRateLimiter(limit=3, window=60, sweep_interval=300, clock=self.clock)

    def test_allows_up_to_limit_within_window(self):
        self.assertEqual([self.limiter.allow("1.2.3.4") for _ in range(4)], [True, True, True, False])

    def test_keys_are_independent(self):
        for _ in range(3):
            self.limiter.allow("1.2.3.4")
        self.assertFalse(self.limiter.allow("1.2.3.4"))
        self.assertTrue(self.limiter.allow("5.6.7.8"))

    def test_window_slides(self):
        self.limiter.allow("ip")
        self.clock.now += 30
        self.limiter.allow("ip")
        self.limiter.allow("ip")
        self.assertFalse(self.limiter.allow("ip"))
        # the first hit leaves the window, the other two are still inside it
        self.clock.now += 31
        self.assertTrue(self.limiter.allow("ip"))
        self.assertFalse(self.limiter.allow("ip"))

    def test_idle_keys_are_swept(self):
        for n in range(10):
            self.limiter.allow(f"10.0.0.{n}")
        self.assertEqual(len(self.limiter), 10)
        self.clock.now += 301
        self.limiter.allow("10.0.1.1")
        self.assertEqual(len(self.limiter), 1)


class CacheRateLimiterTests(SimpleTestCase):
    def setUp(self):
        cache.clear()
        self.addCleanup(cache.clear)

    def test_counts_in_shared_cache(self):
        first = CacheRateLimiter(limit=2, window=60)
        second = CacheRateLimiter(limit=2, window=60)
        self.assertTrue(first.allow("ip"))
        self.assertTrue(second.allow("ip"))
        self.assertFalse(first.allow("ip"))
        self.assertTrue(first.allow("other-ip"))


class RateLimiterSelectionTests(SimpleTestCase):
    def setUp(self):
        reset_webhook_rate_limiter()
        self.addCleanup(reset_webhook_rate_limiter)

    @override_settings(PAYMENTS_WEBHOOK_RATE_LIMITER="cache")
    def test_cache_backend(self):
        self.assertIsInstance(build_rate_limiter(), CacheRateLimiter)

    @override_settings(PAYMENTS_WEBHOOK_RATE_LIMITER="redis")
    def test_unknown_backend_falls_back_to_memory(self):
        with self.assertLogs("payments.ratelimit", level="WARNING"):
            self.assertIsInstance(build_rate_limiter(), SlidingWindowRateLimiter)

    def test_shared_instance(self):
        self.assertIs(get_webhook_rate_limiter(), get_webhook_rate_limiter())
