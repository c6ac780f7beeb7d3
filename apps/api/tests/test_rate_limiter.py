import pytest

from services.platforms.errors import SocialApiError, TransientApiError
from services.platforms.rate_limiter import RateLimiter, RateLimitRule, is_retryable_error
from services.platforms.store import MemoryStore


class _FakeClock:
    """Clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(clock: _FakeClock, max_requests: int = 2, window_ms: int = 1000) -> RateLimiter:
    store = MemoryStore(clock=clock)
    return RateLimiter(
        store=store,
        limits={"tiktok": RateLimitRule(max_requests=max_requests, window_ms=window_ms)},
        clock=clock,
        sleep=clock.sleep,
    )


def _api_error(message: str, status_code: int = 400) -> SocialApiError:
    return SocialApiError(platform="tiktok", endpoint="video_list", status_code=status_code, message=message)


@pytest.mark.asyncio
async def test_window_allows_up_to_limit_then_denies():
    clock = _FakeClock()
    limiter = _limiter(clock, max_requests=2)

    assert await limiter.check("tiktok", "video_list") is True
    assert await limiter.check("tiktok", "video_list") is True
    assert await limiter.check("tiktok", "video_list") is False
    assert await limiter.remaining("tiktok", "video_list") == 0

    # Separate endpoints have separate buckets.
    assert await limiter.check("tiktok", "user_info") is True


@pytest.mark.asyncio
async def test_window_resets_after_expiry():
    clock = _FakeClock()
    limiter = _limiter(clock, max_requests=1, window_ms=1000)

    assert await limiter.check("tiktok", "video_list") is True
    assert await limiter.check("tiktok", "video_list") is False
    assert await limiter.reset_in("tiktok", "video_list") == pytest.approx(1.0)

    clock.now += 1.5
    assert await limiter.remaining("tiktok", "video_list") == 1
    assert await limiter.check("tiktok", "video_list") is True


@pytest.mark.asyncio
async def test_unknown_platform_is_not_limited():
    clock = _FakeClock()
    limiter = _limiter(clock)

    for _ in range(10):
        assert await limiter.check("myspace", "default") is True
    assert await limiter.remaining("myspace", "default") is None


@pytest.mark.asyncio
async def test_with_rate_limit_waits_for_window_before_calling():
    clock = _FakeClock()
    limiter = _limiter(clock, max_requests=1, window_ms=2000)
    calls = []

    async def _call():
        calls.append(clock.now)
        return "ok"

    assert await limiter.with_rate_limit("tiktok", "video_list", _call) == "ok"
    assert await limiter.with_rate_limit("tiktok", "video_list", _call) == "ok"

    assert len(calls) == 2
    assert calls[1] - calls[0] >= 2.0
    assert clock.sleeps[0] == pytest.approx(2.1)


@pytest.mark.asyncio
async def test_with_rate_limit_retries_throttled_errors_with_exponential_backoff():
    clock = _FakeClock()
    limiter = _limiter(clock, max_requests=100)
    attempts = []

    async def _call():
        attempts.append(1)
        raise _api_error("Rate limit exceeded")

    with pytest.raises(SocialApiError, match="Rate limit exceeded"):
        await limiter.with_rate_limit("tiktok", "video_list", _call, max_retries=3)

    assert len(attempts) == 3
    assert clock.sleeps == [1, 2, 4]


@pytest.mark.asyncio
async def test_with_rate_limit_recovers_after_transient_failure():
    clock = _FakeClock()
    limiter = _limiter(clock, max_requests=100)
    outcomes = [TransientApiError(platform="tiktok", endpoint="x", status_code=429, message="slow down"), "done"]

    async def _call():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert await limiter.with_rate_limit("tiktok", "video_list", _call) == "done"
    assert clock.sleeps == [1]


@pytest.mark.asyncio
async def test_with_rate_limit_does_not_retry_other_errors():
    clock = _FakeClock()
    limiter = _limiter(clock, max_requests=100)
    attempts = []

    async def _call():
        attempts.append(1)
        raise _api_error("Invalid field: foo", status_code=404)

    with pytest.raises(SocialApiError):
        await limiter.with_rate_limit("tiktok", "video_list", _call)

    assert len(attempts) == 1
    assert clock.sleeps == []


def test_retryable_error_classification():
    assert is_retryable_error(_api_error("Too Many Requests")) is True
    assert is_retryable_error(_api_error("a transient error occurred")) is True
    assert is_retryable_error(TransientApiError(platform="x", endpoint="y", status_code=0, message="boom")) is True
    assert is_retryable_error(_api_error("Permissions error")) is False
