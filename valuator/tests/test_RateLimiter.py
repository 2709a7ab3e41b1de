"""Unit tests for RateLimiter."""

import time
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from valuator.src.errors import ProviderUnavailable, RateLimitExceeded
from valuator.src.RateLimiter import RateLimiter, is_throttling_error


class FakeClock:
    """Deterministic replacement for time.time() and asyncio.sleep()."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


def patch_clock(clock: FakeClock):
    """Patch the rate limiter's clock and sleep with a FakeClock."""
    time_patch = patch("valuator.src.RateLimiter.time.time", side_effect=clock.time)
    sleep_patch = patch("valuator.src.RateLimiter.asyncio.sleep", new=clock.sleep)
    return time_patch, sleep_patch


class Counter:
    """Async operation counting its calls."""

    def __init__(self, result: str = "ok") -> None:
        self.calls = 0
        self.result = result

    async def __call__(self) -> str:
        self.calls += 1
        return self.result


class TestRateLimiterInit:
    """Test RateLimiter initialization."""

    def test_default_values(self) -> None:
        """Defaults should be one second backoff and three retries."""
        limiter = RateLimiter(max_requests=5, window_seconds=60.0)
        assert limiter.retry_after_seconds == 1.0
        assert limiter.max_retries == 3

    def test_invalid_max_requests(self) -> None:
        """max_requests < 1 should raise ValueError."""
        with pytest.raises(ValueError, match="max_requests must be at least 1"):
            RateLimiter(max_requests=0, window_seconds=1.0)

    def test_invalid_window(self) -> None:
        """window_seconds <= 0 should raise ValueError."""
        with pytest.raises(ValueError, match="window_seconds must be positive"):
            RateLimiter(max_requests=1, window_seconds=0)

    def test_invalid_max_retries(self) -> None:
        """Negative max_retries should raise ValueError."""
        with pytest.raises(ValueError, match="max_retries must not be negative"):
            RateLimiter(max_requests=1, window_seconds=1.0, max_retries=-1)


class TestRateLimiterWindow:
    """Test sliding window behavior."""

    @pytest.mark.asyncio
    async def test_calls_within_budget_run_immediately(self) -> None:
        """Calls below the ceiling should not wait."""
        clock = FakeClock()
        time_patch, sleep_patch = patch_clock(clock)
        limiter = RateLimiter(max_requests=3, window_seconds=1.0)
        op = Counter()

        with time_patch, sleep_patch:
            for _ in range(3):
                assert await limiter.execute("a", op) == "ok"

        assert op.calls == 3
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_saturation_delays_second_call(self) -> None:
        """A saturated window should back off exponentially before executing."""
        clock = FakeClock()
        time_patch, sleep_patch = patch_clock(clock)
        limiter = RateLimiter(
            max_requests=1, window_seconds=1.0, retry_after_seconds=0.1, max_retries=4
        )
        first, second = Counter("first"), Counter("second")

        with time_patch, sleep_patch:
            assert await limiter.execute("a", first) == "first"
            assert await limiter.execute("a", second) == "second"

        assert clock.sleeps == pytest.approx([0.1, 0.2, 0.4, 0.8])
        assert clock.sleeps[0] >= 0.1
        assert second.calls == 1
        assert limiter.get_retry_count("a") == 0

    @pytest.mark.asyncio
    async def test_saturation_delay_real_time(self) -> None:
        """The second call should observably wait at least retry_after_seconds."""
        limiter = RateLimiter(
            max_requests=1, window_seconds=0.15, retry_after_seconds=0.1, max_retries=3
        )
        await limiter.execute("a", Counter())

        started = time.monotonic()
        await limiter.execute("a", Counter())
        assert time.monotonic() - started >= 0.1

    @pytest.mark.asyncio
    async def test_exhaustion_after_max_retries(self) -> None:
        """A key that keeps hitting the ceiling fails after exactly max_retries."""
        clock = FakeClock()
        time_patch, sleep_patch = patch_clock(clock)
        limiter = RateLimiter(
            max_requests=1, window_seconds=1.0, retry_after_seconds=0.1, max_retries=1
        )
        blocked = Counter()

        with time_patch, sleep_patch:
            await limiter.execute("a", Counter())
            with pytest.raises(RateLimitExceeded) as exc_info:
                await limiter.execute("a", blocked)

        assert clock.sleeps == [0.1]
        assert blocked.calls == 0
        assert exc_info.value.retries == 1
        # Counter is removed, not decremented
        assert limiter.get_retry_count("a") == 0

    @pytest.mark.asyncio
    async def test_window_expiry_frees_slot(self) -> None:
        """Timestamps older than the window should be pruned."""
        clock = FakeClock()
        time_patch, sleep_patch = patch_clock(clock)
        limiter = RateLimiter(max_requests=1, window_seconds=1.0)

        with time_patch, sleep_patch:
            await limiter.execute("a", Counter())
            clock.now += 1.0
            await limiter.execute("a", Counter())
            assert limiter.get_recent_request_count() == 1

        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_keys_share_window_but_not_retries(self) -> None:
        """Distinct keys compete for one window with separate retry counters."""
        clock = FakeClock()
        time_patch, sleep_patch = patch_clock(clock)
        limiter = RateLimiter(
            max_requests=1, window_seconds=1.0, retry_after_seconds=0.1, max_retries=0
        )

        with time_patch, sleep_patch:
            await limiter.execute("a", Counter())
            with pytest.raises(RateLimitExceeded):
                await limiter.execute("b", Counter())

        assert limiter.get_retry_count("a") == 0
        assert limiter.get_retry_count("b") == 0


class TestRateLimiterThrottling:
    """Test upstream throttling handling."""

    @pytest.mark.asyncio
    async def test_throttled_operation_retried(self) -> None:
        """A 429 rejection should back off and retry the operation."""
        clock = FakeClock()
        time_patch, sleep_patch = patch_clock(clock)
        limiter = RateLimiter(max_requests=10, window_seconds=1.0, retry_after_seconds=0.5)
        attempts = 0

        async def flaky() -> str:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise ProviderUnavailable("slow down", status_code=429)
            return "ok"

        with time_patch, sleep_patch:
            assert await limiter.execute("a", flaky) == "ok"

        assert attempts == 3
        assert clock.sleeps == [0.5, 1.0]
        assert limiter.get_retry_count("a") == 0

    @pytest.mark.asyncio
    async def test_throttling_bounded_by_max_retries(self) -> None:
        """Persistent throttling should end in RateLimitExceeded."""
        clock = FakeClock()
        time_patch, sleep_patch = patch_clock(clock)
        limiter = RateLimiter(
            max_requests=10, window_seconds=1.0, retry_after_seconds=0.1, max_retries=2
        )
        upstream = ProviderUnavailable("Too Many Requests", status_code=429)

        async def always_throttled() -> str:
            raise upstream

        with time_patch, sleep_patch:
            with pytest.raises(RateLimitExceeded) as exc_info:
                await limiter.execute("a", always_throttled)

        assert exc_info.value.__cause__ is upstream
        assert clock.sleeps == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_other_errors_propagate_unchanged(self) -> None:
        """Non-throttling failures should not be retried."""
        clock = FakeClock()
        time_patch, sleep_patch = patch_clock(clock)
        limiter = RateLimiter(max_requests=10, window_seconds=1.0)

        async def broken() -> str:
            raise ProviderUnavailable("boom", status_code=500)

        with time_patch, sleep_patch:
            with pytest.raises(ProviderUnavailable, match="boom"):
                await limiter.execute("a", broken)

        assert clock.sleeps == []


class TestRateLimiterReset:
    """Test reset()."""

    @pytest.mark.asyncio
    async def test_reset_clears_window(self) -> None:
        """reset() should make the full budget available again."""
        clock = FakeClock()
        time_patch, sleep_patch = patch_clock(clock)
        limiter = RateLimiter(max_requests=1, window_seconds=60.0)

        with time_patch, sleep_patch:
            await limiter.execute("a", Counter())
            limiter.reset()
            assert limiter.get_recent_request_count() == 0
            await limiter.execute("a", Counter())

        assert clock.sleeps == []


class TestIsThrottlingError:
    """Test throttling signal recognition."""

    def test_status_code_attribute(self) -> None:
        assert is_throttling_error(ProviderUnavailable("x", status_code=429))
        assert not is_throttling_error(ProviderUnavailable("x", status_code=503))

    def test_response_status_code(self) -> None:
        error = Exception("failed")
        error.response = SimpleNamespace(status_code=429)  # type: ignore[attr-defined]
        assert is_throttling_error(error)

    def test_error_code(self) -> None:
        error = Exception("failed")
        error.code = "ERR_RATE_LIMITED"  # type: ignore[attr-defined]
        assert is_throttling_error(error)

    def test_message(self) -> None:
        assert is_throttling_error(Exception("Request failed with status code 429"))
        assert is_throttling_error(Exception("Too many requests"))
        assert not is_throttling_error(Exception("Connection reset"))
