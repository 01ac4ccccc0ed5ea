"""
guildmmr.ingest.limiter — Token bucket & 429 ratio tracker
===========================================================

Two pieces shared by every call the ingestion client makes:

* :class:`TokenBucket` — refills ``rate`` tokens per second up to
  ``capacity``; callers suspend in FIFO order until a token is free.
* :class:`RateLimitTracker` — sliding window over recent requests that
  reports whether the share of 429 responses is high enough that the
  crawl loop should back off.  Advisory only; the client never blocks on it.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_TRACKER_WINDOW_SECONDS = 300
DEFAULT_TRACKER_MAX_ENTRIES = 300
DEFAULT_SLOW_DOWN_THRESHOLD = 0.03
DEFAULT_MIN_REQUESTS = 10


class TokenBucket:
    """Async token bucket.

    The internal lock is held while waiting for a refill, so waiters are
    served strictly in arrival order.
    """

    def __init__(
        self,
        rate: float,
        capacity: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = capacity if capacity is not None else max(1.0, rate)
        self._tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._updated = now

    async def acquire(self) -> None:
        """Take one token, suspending until one is available."""
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await self._sleep((1 - self._tokens) / self.rate)

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens


class RateLimitTracker:
    """Sliding window of (timestamp, was_rate_limited) samples.

    Thread-safe.  Samples older than ``window_seconds`` or beyond the most
    recent ``max_entries`` are discarded.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_TRACKER_WINDOW_SECONDS,
        max_entries: int = DEFAULT_TRACKER_MAX_ENTRIES,
        threshold: float = DEFAULT_SLOW_DOWN_THRESHOLD,
        min_requests: int = DEFAULT_MIN_REQUESTS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.threshold = threshold
        self.min_requests = min_requests
        self._samples: deque[tuple[float, bool]] = deque(maxlen=max_entries)
        self._clock = clock
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def record(self, rate_limited: bool) -> None:
        now = self._clock()
        with self._lock:
            self._prune(now)
            self._samples.append((now, rate_limited))

    def ratio(self) -> float:
        """Share of 429s among the samples currently in the window."""
        with self._lock:
            self._prune(self._clock())
            if not self._samples:
                return 0.0
            limited = sum(1 for _, hit in self._samples if hit)
            return limited / len(self._samples)

    def should_slow_down(self) -> bool:
        with self._lock:
            self._prune(self._clock())
            total = len(self._samples)
            if total < self.min_requests:
                return False
            limited = sum(1 for _, hit in self._samples if hit)
        ratio = limited / total
        if ratio > self.threshold:
            logger.warning(
                "429 ratio %.1f%% over last %d requests exceeds %.1f%%",
                ratio * 100, total, self.threshold * 100,
            )
            return True
        return False
