"""Rate limiting for outbound indexer requests."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    max_requests: int  # Maximum number of requests
    time_window: float  # Time window in seconds
    burst_size: int | None = None  # Optional burst size (defaults to max_requests)

    def __post_init__(self) -> None:
        if self.burst_size is None:
            self.burst_size = self.max_requests

    @classmethod
    def per_second(cls, requests_per_second: float) -> "RateLimitConfig":
        """Express a fractional rate as whole requests over a wider window."""
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if requests_per_second >= 1:
            return cls(max_requests=int(requests_per_second), time_window=1.0)
        return cls(max_requests=1, time_window=1.0 / requests_per_second)


class AsyncRateLimiter:
    """
    Sliding-window limiter for async REST clients.

    Example:
        limiter = AsyncRateLimiter(RateLimitConfig(max_requests=3, time_window=1.0))

        # Before making API request
        await limiter.acquire()
    """

    def __init__(
        self,
        config: RateLimitConfig,
        time_provider: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.config = config
        self._time_provider = time_provider or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is free, then claim it."""
        while True:
            async with self._lock:
                current_time = self._time_provider()
                self._cleanup_old_timestamps(current_time)
                if len(self._timestamps) < (
                    self.config.burst_size or self.config.max_requests
                ):
                    self._timestamps.append(current_time)
                    return
                wait_time = self._calculate_retry_after(current_time)
            await self._sleep(wait_time)

    def _cleanup_old_timestamps(self, current_time: float) -> None:
        """Remove timestamps outside the time window."""
        cutoff = current_time - self.config.time_window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _calculate_retry_after(self, current_time: float) -> float:
        """Calculate how long to wait before next request."""
        if not self._timestamps:
            return 0.0
        oldest_timestamp = self._timestamps[0]
        return max(0.0, oldest_timestamp + self.config.time_window - current_time)
