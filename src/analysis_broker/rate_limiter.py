"""Dual-window token-bucket quota limiter for the external analysis tool.

Two buckets (per-minute and per-day) refill continuously in proportion to
elapsed wall-clock time. Refill is computed lazily whenever the limiter is
consulted, so no background task is needed. A request is admitted only
when both buckets hold at least one token.
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import structlog

from analysis_broker.models import QuotaStatus, QuotaWindowStatus

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

MINUTE_SECONDS = 60.0
DAY_SECONDS = 86_400.0

_DEFAULT_POLL_INTERVAL = 1.0
_MIN_SLEEP_SECONDS = 0.01

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class QuotaWindow:
    """One token bucket.

    ``tokens`` is a real number kept within ``[0, capacity]``.

    Attributes:
        capacity: Maximum tokens held by the bucket.
        window_seconds: Time for an empty bucket to refill completely.
        tokens: Current token count.
        last_refill_at: Epoch seconds of the most recent refill.
    """

    __slots__ = ("capacity", "last_refill_at", "tokens", "window_seconds")

    def __init__(self, capacity: int, window_seconds: float, now: float) -> None:
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.tokens = float(capacity)
        self.last_refill_at = now

    def refill(self, now: float) -> None:
        """Add tokens for the time elapsed since the last refill."""
        elapsed = max(0.0, now - self.last_refill_at)
        self.tokens = min(
            float(self.capacity),
            self.tokens + elapsed * self.capacity / self.window_seconds,
        )
        self.last_refill_at = now

    def consume(self) -> None:
        self.tokens = max(0.0, self.tokens - 1.0)

    def seconds_until_token(self) -> float:
        """Seconds until the bucket holds one whole token (0 if it does)."""
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) * self.window_seconds / self.capacity

    @property
    def used(self) -> int:
        return max(0, math.floor(self.capacity - self.tokens))

    def reset(self, now: float) -> None:
        self.tokens = float(self.capacity)
        self.last_refill_at = now


def next_utc_midnight(now: float) -> datetime:
    """Return the first UTC midnight strictly after ``now``."""
    current = datetime.fromtimestamp(now, tz=UTC)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


class QuotaLimiter:
    """Admission control over a per-minute and a per-day request ceiling.

    When ``enabled`` is False every operation is a no-op that permits.

    Attributes:
        enabled: Whether quota is enforced.
        poll_interval: Longest single sleep while waiting for quota.
        minute: The per-minute window.
        day: The per-day window.
    """

    def __init__(
        self,
        requests_per_minute: int = 60,
        requests_per_day: int = 1000,
        *,
        enabled: bool = True,
        poll_interval: float = _DEFAULT_POLL_INTERVAL,
        clock: Clock = time.time,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        """Initialize both windows full.

        Args:
            requests_per_minute: Capacity of the minute window.
            requests_per_day: Capacity of the day window.
            enabled: Set False to disable enforcement entirely.
            poll_interval: Recheck cadence for ``wait_for_quota`` in seconds.
            clock: Wall-clock source returning epoch seconds.
            sleep: Coroutine function used to suspend while waiting.
        """
        self.enabled = enabled
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

        now = clock()
        self.minute = QuotaWindow(requests_per_minute, MINUTE_SECONDS, now)
        self.day = QuotaWindow(requests_per_day, DAY_SECONDS, now)

    def _refill(self) -> float:
        now = self._clock()
        self.minute.refill(now)
        self.day.refill(now)
        return now

    def can_proceed(self) -> bool:
        """Refill both windows and report whether each holds a token."""
        if not self.enabled:
            return True
        with self._lock:
            self._refill()
            return self.minute.tokens >= 1.0 and self.day.tokens >= 1.0

    def consume_token(self) -> None:
        """Take one token from both windows.

        Call once per launched tool invocation, never for cache hits.
        """
        if not self.enabled:
            return
        with self._lock:
            self._refill()
            self.minute.consume()
            self.day.consume()
        logger.debug(
            "quota_token_consumed",
            minute_tokens=round(self.minute.tokens, 3),
            day_tokens=round(self.day.tokens, 3),
        )

    def retry_after(self) -> float:
        """Seconds until both windows will hold a token."""
        if not self.enabled:
            return 0.0
        with self._lock:
            self._refill()
            return max(self.minute.seconds_until_token(), self.day.seconds_until_token())

    async def wait_for_quota(self) -> None:
        """Suspend until ``can_proceed`` is true.

        Each sleep is bounded by the poll interval and by the minute
        window's period. Imposes no timeout of its own; cancel the calling
        task (or wrap it in ``asyncio.timeout``) to give up. Never
        consumes a token.
        """
        if not self.enabled:
            return
        waited = False
        while not self.can_proceed():
            delay = min(self.retry_after(), self.poll_interval, MINUTE_SECONDS)
            if not waited:
                logger.info("quota_wait", retry_after=round(self.retry_after(), 3))
                waited = True
            await self._sleep(max(delay, _MIN_SLEEP_SECONDS))
        if waited:
            logger.info("quota_available")

    def get_quota_status(self) -> QuotaStatus:
        """Report usage and reset times for both windows."""
        with self._lock:
            now = self._refill()
            minute_reset = datetime.fromtimestamp(
                self.minute.last_refill_at + self.minute.window_seconds, tz=UTC
            )
            return QuotaStatus(
                requests_per_minute=QuotaWindowStatus(
                    used=self.minute.used if self.enabled else 0,
                    limit=self.minute.capacity,
                    reset_at=minute_reset,
                ),
                requests_per_day=QuotaWindowStatus(
                    used=self.day.used if self.enabled else 0,
                    limit=self.day.capacity,
                    reset_at=next_utc_midnight(now),
                ),
            )

    def reset(self) -> None:
        """Restore both windows to full capacity."""
        with self._lock:
            now = self._clock()
            self.minute.reset(now)
            self.day.reset(now)
        logger.debug("quota_reset")
