"""
Request quota tracking for the bot platform.

The platform allows 60 requests per minute and 1800 per hour per bot. The
limiter keeps one request of headroom under the minute quota (59 by default)
and sleeps until the minute window rolls over when the threshold is reached.
The hourly ceiling is tracked and logged but not enforced.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """Rolling minute/hour request counter shared by concurrent callers."""

    MINUTE_SECONDS = 60.0
    HOUR_SECONDS = 3600.0
    ROLLOVER_BUFFER_SECONDS = 1.0

    def __init__(
        self,
        per_minute: int = 59,
        per_hour: int = 1800,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if per_minute < 1:
            raise ValueError(f"per_minute must be >= 1, got {per_minute}")
        self.per_minute = per_minute
        self.per_hour = per_hour
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        now = self._clock()
        self._minute_start = now
        self._hour_start = now
        self._minute_count = 0
        self._hour_count = 0
        self._hour_warned = False

        # asyncio.Lock wakes waiters in FIFO order
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until one more request fits in the current minute window, then count it."""
        async with self._lock:
            now = self._clock()

            if now - self._minute_start >= self.MINUTE_SECONDS:
                self._minute_start = now
                self._minute_count = 0

            if now - self._hour_start >= self.HOUR_SECONDS:
                self._hour_start = now
                self._hour_count = 0
                self._hour_warned = False

            if self._minute_count >= self.per_minute:
                wait = self.MINUTE_SECONDS - (now - self._minute_start) + self.ROLLOVER_BUFFER_SECONDS
                logger.info(f"Approaching rate limit. Waiting {wait:.1f} seconds...")
                await self._sleep(wait)
                self._minute_start = self._clock()
                self._minute_count = 0

            self._minute_count += 1
            self._hour_count += 1

            if self._hour_count > self.per_hour and not self._hour_warned:
                logger.warning(
                    f"Hourly request ceiling exceeded: {self._hour_count} requests "
                    f"in the current hour (limit {self.per_hour})"
                )
                self._hour_warned = True

    def snapshot(self) -> Dict[str, int]:
        """Current window counts, for logging."""
        return {
            "minute_count": self._minute_count,
            "hour_count": self._hour_count,
            "per_minute": self.per_minute,
            "per_hour": self.per_hour,
        }
