"""
Client-side limiters keyed by embedder identity.

Every worker and every memory that calls the same embedder shares one
EmbedderLimiter, which bounds concurrent requests and spaces them by a
minimum interval. Acquisition blocks; release happens on every exit path.
"""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional


class EmbedderLimiter:
    """
    Concurrency and rate limit for one embedder.

    Example:
        >>> limiter = EmbedderLimiter("emb-1", max_concurrency=4, requests_per_second=10)
        >>> with limiter.acquire():
        ...     session.post(url, json=payload)
    """

    def __init__(
        self,
        embedder_id: str,
        max_concurrency: int = 4,
        requests_per_second: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.embedder_id = embedder_id
        self.max_concurrency = max_concurrency
        self.requests_per_second = requests_per_second
        self._semaphore = threading.BoundedSemaphore(max_concurrency)
        self._rate_limit_lock = threading.Lock()
        self._last_request_time: Optional[float] = None
        self._clock = clock
        self._sleep = sleep
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _apply_rate_limit(self) -> None:
        if self.requests_per_second <= 0:
            return

        min_interval = 1.0 / self.requests_per_second

        with self._rate_limit_lock:
            now = self._clock()
            if self._last_request_time is not None:
                elapsed = now - self._last_request_time
                if elapsed < min_interval:
                    self._sleep(min_interval - elapsed)
            self._last_request_time = self._clock()

    @contextmanager
    def acquire(self) -> Iterator[None]:
        """Block until a request slot is free and the rate allows a call."""
        self._semaphore.acquire()
        try:
            self._apply_rate_limit()
            with self._in_flight_lock:
                self._in_flight += 1
            try:
                yield
            finally:
                with self._in_flight_lock:
                    self._in_flight -= 1
        finally:
            self._semaphore.release()


class LimiterRegistry:
    """Hands out one shared EmbedderLimiter per embedder id."""

    def __init__(self, default_max_concurrency: int = 4, default_requests_per_second: float = 0.0):
        self.default_max_concurrency = default_max_concurrency
        self.default_requests_per_second = default_requests_per_second
        self._limiters: Dict[str, EmbedderLimiter] = {}
        self._lock = threading.Lock()

    def get(
        self,
        embedder_id: str,
        max_concurrency: Optional[int] = None,
        requests_per_second: Optional[float] = None,
    ) -> EmbedderLimiter:
        """
        Return the limiter for an embedder, creating it on first use.

        Limits passed after the limiter exists are ignored.
        """
        with self._lock:
            limiter = self._limiters.get(embedder_id)
            if limiter is None:
                limiter = EmbedderLimiter(
                    embedder_id,
                    max_concurrency=max_concurrency or self.default_max_concurrency,
                    requests_per_second=(
                        requests_per_second if requests_per_second is not None
                        else self.default_requests_per_second
                    ),
                )
                self._limiters[embedder_id] = limiter
            return limiter
