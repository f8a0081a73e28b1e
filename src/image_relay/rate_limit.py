"""Per-caller sliding-window rate limiting."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
    """Outcome of a rate-limit check."""

    allowed: bool
    retry_after_seconds: int = 0
    count: int = 0
    limit: int = 0


@dataclass
class RateWindow:
    window_start: float
    count: int


class RateLimitExceeded(Exception):
    """Raised when a caller has exhausted the current window."""

    def __init__(self, decision: RateDecision):
        super().__init__("Too Many Requests")
        self.decision = decision

    @property
    def retry_after(self) -> int:
        return self.decision.retry_after_seconds


class RateLimiter(Protocol):
    async def allow(self, caller_id: str) -> RateDecision: ...


class InMemoryRateLimiter:
    """Fixed-ceiling window counter keyed by caller identity.

    The check-then-increment never suspends and runs under a
    ``threading.Lock``, so concurrent requests (coroutines or worker threads)
    cannot both observe a stale count. State is per process; multi-instance
    deployments need a shared counter store implementing :class:`RateLimiter`.
    """

    def __init__(
        self,
        *,
        window_seconds: float = 60.0,
        max_requests: int = 5,
        clock: Callable[[], float] = time.monotonic,
        purge_interval: int = 256,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self._window = float(window_seconds)
        self._limit = int(max_requests)
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._thread_lock = threading.Lock()
        self._purge_interval = max(1, purge_interval)
        self._checks = 0

    @property
    def window_seconds(self) -> float:
        return self._window

    @property
    def max_requests(self) -> int:
        return self._limit

    def __len__(self) -> int:
        return len(self._windows)

    async def allow(self, caller_id: str) -> RateDecision:
        return self.check(caller_id)

    def check(self, caller_id: str) -> RateDecision:
        """Synchronous check for callers outside the event loop."""

        with self._thread_lock:
            now = self._clock()
            self._checks += 1
            if self._checks % self._purge_interval == 0:
                self._purge(now)

            record = self._windows.get(caller_id)
            if record is None or now - record.window_start >= self._window:
                self._windows[caller_id] = RateWindow(window_start=now, count=1)
                return RateDecision(True, 0, 1, self._limit)

            if record.count >= self._limit:
                remaining = record.window_start + self._window - now
                retry_after = max(1, math.ceil(remaining))
                logger.warning(
                    "Rate limit exceeded for caller %s (%d/%d), retry in %ss",
                    caller_id,
                    record.count,
                    self._limit,
                    retry_after,
                )
                return RateDecision(False, retry_after, record.count, self._limit)

            record.count += 1
            return RateDecision(True, 0, record.count, self._limit)

    def purge(self) -> int:
        with self._thread_lock:
            return self._purge(self._clock())

    def _purge(self, now: float) -> int:
        expired = [
            key
            for key, record in self._windows.items()
            if now - record.window_start >= self._window
        ]
        for key in expired:
            del self._windows[key]
        return len(expired)


async def enforce_rate_limit(limiter: RateLimiter, caller_id: str) -> RateDecision:
    """Consult ``limiter`` and raise :class:`RateLimitExceeded` on rejection."""

    decision = await limiter.allow(caller_id)
    if not decision.allowed:
        raise RateLimitExceeded(decision)
    return decision


__all__ = [
    "InMemoryRateLimiter",
    "RateDecision",
    "RateLimitExceeded",
    "RateLimiter",
    "RateWindow",
    "enforce_rate_limit",
]
