"""
Unit tests for per-embedder limiters.
"""

import threading
import time

import pytest

from memory_pipeline.providers.rate_limiter import EmbedderLimiter, LimiterRegistry


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestEmbedderLimiter:

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            EmbedderLimiter("e1", max_concurrency=0)

    def test_in_flight_is_released_on_error(self):
        limiter = EmbedderLimiter("e1", max_concurrency=1)

        with pytest.raises(RuntimeError):
            with limiter.acquire():
                assert limiter.in_flight == 1
                raise RuntimeError("request failed")

        assert limiter.in_flight == 0
        with limiter.acquire():
            pass

    def test_rate_limit_spaces_requests(self):
        clock = FakeClock()
        limiter = EmbedderLimiter(
            "e1", requests_per_second=4, clock=clock.time, sleep=clock.sleep
        )

        for _ in range(3):
            with limiter.acquire():
                pass

        assert clock.sleeps == [0.25, 0.25]

    def test_no_rate_limit_by_default(self):
        clock = FakeClock()
        limiter = EmbedderLimiter("e1", clock=clock.time, sleep=clock.sleep)

        for _ in range(3):
            with limiter.acquire():
                pass

        assert clock.sleeps == []

    def test_concurrency_is_bounded(self):
        limiter = EmbedderLimiter("e1", max_concurrency=2)
        peak = []
        lock = threading.Lock()

        def call():
            with limiter.acquire():
                with lock:
                    peak.append(limiter.in_flight)
                time.sleep(0.02)

        threads = [threading.Thread(target=call) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert len(peak) == 6
        assert max(peak) <= 2


class TestLimiterRegistry:

    def test_same_embedder_shares_limiter(self):
        registry = LimiterRegistry(default_max_concurrency=3)

        first = registry.get("e1")
        second = registry.get("e1", max_concurrency=10)

        assert first is second
        assert first.max_concurrency == 3

    def test_distinct_embedders(self):
        registry = LimiterRegistry()

        assert registry.get("e1") is not registry.get("e2")

    def test_explicit_limits_on_first_use(self):
        limiter = LimiterRegistry().get("e1", max_concurrency=1, requests_per_second=2.5)

        assert limiter.max_concurrency == 1
        assert limiter.requests_per_second == 2.5
