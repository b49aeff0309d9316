"""
Admission controller using a per-client sliding window.

Limits how many submissions each client key (caller IP) may make within a
trailing time window.
"""

import asyncio
import time
from collections import deque
from typing import Any, Callable, Deque, Dict

from relay.observability.metrics import admission_rejections_total


class AdmissionController:
    """
    Sliding window rate limiter keyed by client.

    Each key keeps the timestamps of its admitted requests within the last
    window. A request is admitted while fewer than max_requests remain in the
    window; a denied request leaves the window untouched.
    """

    def __init__(
        self,
        max_requests: int = 30,
        window_ms: int = 60_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_ms / 1000
        self._clock = clock

        # Track admitted request times per client key
        self._requests: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()
        self._last_purge = clock()

    async def allow(self, key: str) -> bool:
        """
        Check if a request is allowed for the given key and record it.

        Args:
            key: Client identifier (e.g. caller IP)

        Returns:
            True if the request is admitted, False if rate limited
        """
        async with self._lock:
            now = self._clock()
            request_times = self._prune(key, now)

            if now - self._last_purge >= self.window_seconds:
                self._purge_idle(now)

            if len(request_times) < self.max_requests:
                request_times.append(now)
                self._requests[key] = request_times
                return True

            admission_rejections_total.inc()
            return False

    async def retry_after(self, key: str) -> float:
        """Seconds until the oldest admitted request leaves the window."""
        async with self._lock:
            now = self._clock()
            request_times = self._prune(key, now)
            if len(request_times) < self.max_requests:
                return 0.0
            return max(0.0, request_times[0] + self.window_seconds - now)

    async def get_remaining_requests(self, key: str) -> int:
        """Get number of remaining requests for the key."""
        async with self._lock:
            return max(0, self.max_requests - len(self._prune(key, self._clock())))

    async def purge_idle(self) -> int:
        """Drop keys whose windows have emptied. Returns the number dropped."""
        async with self._lock:
            return self._purge_idle(self._clock())

    async def get_stats(self) -> Dict[str, Any]:
        """Get rate limiter statistics."""
        async with self._lock:
            now = self._clock()
            self._purge_idle(now)
            return {
                "max_requests": self.max_requests,
                "window_seconds": self.window_seconds,
                "active_keys": len(self._requests),
                "total_active_requests": sum(len(times) for times in self._requests.values()),
            }

    def _prune(self, key: str, now: float) -> Deque[float]:
        request_times = self._requests.get(key)
        if request_times is None:
            return deque()

        # Retained timestamps satisfy now - ts < window
        while request_times and now - request_times[0] >= self.window_seconds:
            request_times.popleft()

        if not request_times:
            del self._requests[key]
        return request_times

    def _purge_idle(self, now: float) -> int:
        dropped = 0
        for key in list(self._requests):
            self._prune(key, now)
            if key not in self._requests:
                dropped += 1
        self._last_purge = now
        return dropped
