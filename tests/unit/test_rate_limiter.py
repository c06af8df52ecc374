"""Unit tests for analysis_broker.rate_limiter."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from analysis_broker.rate_limiter import (
    DAY_SECONDS,
    MINUTE_SECONDS,
    QuotaLimiter,
    QuotaWindow,
    next_utc_midnight,
)

# ---------------------------------------------------------------------------
# TestQuotaWindow
# ---------------------------------------------------------------------------


class TestQuotaWindow:
    """Single bucket refill and consumption arithmetic."""

    def test_starts_full(self) -> None:
        window = QuotaWindow(10, MINUTE_SECONDS, now=0.0)
        assert window.tokens == 10.0
        assert window.used == 0

    def test_refill_is_proportional_to_elapsed_time(self) -> None:
        window = QuotaWindow(60, MINUTE_SECONDS, now=0.0)
        for _ in range(10):
            window.consume()
        window.refill(5.0)
        assert window.tokens == pytest.approx(55.0)

    def test_refill_never_exceeds_capacity(self) -> None:
        window = QuotaWindow(5, MINUTE_SECONDS, now=0.0)
        window.consume()
        window.refill(10_000.0)
        assert window.tokens == 5.0

    def test_consume_never_goes_negative(self) -> None:
        window = QuotaWindow(1, MINUTE_SECONDS, now=0.0)
        window.consume()
        window.consume()
        assert window.tokens == 0.0
        assert window.used == 1

    def test_clock_going_backwards_adds_nothing(self) -> None:
        window = QuotaWindow(10, MINUTE_SECONDS, now=100.0)
        window.consume()
        window.refill(50.0)
        assert window.tokens == 9.0

    def test_used_is_floor_based(self) -> None:
        window = QuotaWindow(10, MINUTE_SECONDS, now=0.0)
        window.tokens = 7.4
        # capacity - tokens = 2.6, floored
        assert window.used == 2

    def test_seconds_until_token(self) -> None:
        window = QuotaWindow(60, MINUTE_SECONDS, now=0.0)
        window.tokens = 0.5
        assert window.seconds_until_token() == pytest.approx(0.5)
        window.tokens = 1.0
        assert window.seconds_until_token() == 0.0

    def test_reset_restores_capacity(self) -> None:
        window = QuotaWindow(3, MINUTE_SECONDS, now=0.0)
        window.consume()
        window.reset(now=1.0)
        assert window.tokens == 3.0
        assert window.last_refill_at == 1.0


# ---------------------------------------------------------------------------
# TestQuotaLimiter
# ---------------------------------------------------------------------------


class TestQuotaLimiter:
    """Admission across both windows."""

    def test_default_capacities(self, clock) -> None:
        limiter = QuotaLimiter(clock=clock)
        assert limiter.minute.capacity == 60
        assert limiter.day.capacity == 1000
        assert limiter.day.window_seconds == DAY_SECONDS

    def test_can_proceed_until_minute_window_empty(self, clock) -> None:
        limiter = QuotaLimiter(2, 1000, clock=clock)
        assert limiter.can_proceed()
        limiter.consume_token()
        assert limiter.can_proceed()
        limiter.consume_token()
        assert not limiter.can_proceed()

    def test_day_window_blocks_even_with_minute_tokens(self, clock) -> None:
        limiter = QuotaLimiter(60, 1, clock=clock)
        limiter.consume_token()
        clock.advance(MINUTE_SECONDS)
        assert not limiter.can_proceed()
        assert limiter.minute.tokens >= 1.0

    def test_can_proceed_does_not_consume(self, clock) -> None:
        limiter = QuotaLimiter(1, 10, clock=clock)
        for _ in range(5):
            assert limiter.can_proceed()
        assert limiter.get_quota_status().requests_per_minute.used == 0

    def test_refill_after_window_elapses(self, clock) -> None:
        limiter = QuotaLimiter(1, 1000, clock=clock)
        limiter.consume_token()
        assert not limiter.can_proceed()
        clock.advance(59.0)
        assert not limiter.can_proceed()
        clock.advance(1.5)
        assert limiter.can_proceed()

    def test_retry_after_reports_the_slower_window(self, clock) -> None:
        limiter = QuotaLimiter(1, 1000, clock=clock)
        limiter.consume_token()
        assert limiter.retry_after() == pytest.approx(60.0)

    def test_tokens_stay_within_bounds_over_a_sequence(self, clock) -> None:
        limiter = QuotaLimiter(5, 20, clock=clock)
        for step in range(50):
            limiter.consume_token()
            clock.advance(step % 7)
            limiter.can_proceed()
            for window in (limiter.minute, limiter.day):
                assert 0.0 <= window.tokens <= window.capacity

    def test_reset(self, clock) -> None:
        limiter = QuotaLimiter(1, 1, clock=clock)
        limiter.consume_token()
        limiter.reset()
        assert limiter.can_proceed()


class TestDisabledLimiter:
    """With enforcement disabled every operation permits."""

    def test_always_proceeds(self, clock) -> None:
        limiter = QuotaLimiter(1, 1, enabled=False, clock=clock)
        for _ in range(10):
            limiter.consume_token()
            assert limiter.can_proceed()
        assert limiter.retry_after() == 0.0

    def test_status_reports_zero_used(self, clock) -> None:
        limiter = QuotaLimiter(1, 1, enabled=False, clock=clock)
        limiter.consume_token()
        status = limiter.get_quota_status()
        assert status.requests_per_minute.used == 0
        assert status.requests_per_day.used == 0

    @pytest.mark.asyncio
    async def test_wait_returns_immediately(self, clock) -> None:
        limiter = QuotaLimiter(1, 1, enabled=False, clock=clock, sleep=clock.sleep)
        await limiter.wait_for_quota()
        assert clock.sleeps == []


# ---------------------------------------------------------------------------
# TestWaitForQuota
# ---------------------------------------------------------------------------


class TestWaitForQuota:
    """Suspension until both windows hold a token."""

    @pytest.mark.asyncio
    async def test_no_wait_when_available(self, clock) -> None:
        limiter = QuotaLimiter(clock=clock, sleep=clock.sleep)
        await limiter.wait_for_quota()
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_waits_until_refill(self, clock) -> None:
        limiter = QuotaLimiter(1, 1000, clock=clock, sleep=clock.sleep)
        start = clock.now
        limiter.consume_token()
        await limiter.wait_for_quota()
        assert clock.now - start >= 60.0 - 1e-6
        assert limiter.can_proceed()

    @pytest.mark.asyncio
    async def test_sleeps_are_bounded_by_poll_interval(self, clock) -> None:
        limiter = QuotaLimiter(1, 1000, poll_interval=5.0, clock=clock, sleep=clock.sleep)
        limiter.consume_token()
        await limiter.wait_for_quota()
        assert clock.sleeps
        assert max(clock.sleeps) <= 5.0

    @pytest.mark.asyncio
    async def test_wait_never_consumes(self, clock) -> None:
        limiter = QuotaLimiter(2, 1000, clock=clock, sleep=clock.sleep)
        await limiter.wait_for_quota()
        await limiter.wait_for_quota()
        assert limiter.get_quota_status().requests_per_minute.used == 0

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self) -> None:
        limiter = QuotaLimiter(1, 1000, poll_interval=0.01)
        limiter.consume_token()
        with pytest.raises(TimeoutError):
            async with asyncio.timeout(0.05):
                await limiter.wait_for_quota()


# ---------------------------------------------------------------------------
# TestQuotaStatus
# ---------------------------------------------------------------------------


class TestQuotaStatus:
    """Reported usage and reset times."""

    def test_used_counts_consumed_tokens(self, clock) -> None:
        limiter = QuotaLimiter(10, 100, clock=clock)
        for _ in range(3):
            limiter.consume_token()
        status = limiter.get_quota_status()
        assert status.requests_per_minute.used == 3
        assert status.requests_per_minute.limit == 10
        assert status.requests_per_day.used == 3
        assert status.requests_per_day.limit == 100

    def test_partial_refill_is_floored(self, clock) -> None:
        limiter = QuotaLimiter(60, 1000, clock=clock)
        for _ in range(3):
            limiter.consume_token()
        clock.advance(1.5)
        # 1.5 tokens back: capacity - tokens = 1.5, floored to 1
        assert limiter.get_quota_status().requests_per_minute.used == 1

    def test_day_reset_is_next_utc_midnight(self, clock) -> None:
        limiter = QuotaLimiter(clock=clock)
        reset_at = limiter.get_quota_status().requests_per_day.reset_at
        assert reset_at == next_utc_midnight(clock.now)
        assert (reset_at.hour, reset_at.minute, reset_at.second) == (0, 0, 0)

    def test_next_utc_midnight_is_strictly_after(self) -> None:
        midnight = datetime(2026, 3, 1, tzinfo=UTC).timestamp()
        assert next_utc_midnight(midnight) == datetime(2026, 3, 2, tzinfo=UTC)
        assert next_utc_midnight(midnight - 1) == datetime(2026, 3, 1, tzinfo=UTC)
