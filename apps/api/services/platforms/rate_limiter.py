"""Per-provider fixed-window rate limiting with retry/backoff for throttled calls."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from config import settings
from services.platforms.errors import TransientApiError
from services.platforms.store import KeyValueStore, get_shared_store


logger = logging.getLogger(__name__)

T = TypeVar("T")

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
RESET_BUFFER_SECONDS = 0.1
RETRYABLE_MESSAGE_PATTERNS = ("rate limit", "too many requests", "transient")


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_ms: int


DEFAULT_RATE_LIMITS: Dict[str, RateLimitRule] = {
    "facebook": RateLimitRule(max_requests=200, window_ms=HOUR_MS),
    "instagram": RateLimitRule(max_requests=200, window_ms=HOUR_MS),
    "tiktok": RateLimitRule(max_requests=100, window_ms=60 * 1000),
    "youtube": RateLimitRule(max_requests=10000, window_ms=DAY_MS),
    "twitter": RateLimitRule(max_requests=300, window_ms=15 * 60 * 1000),
    "linkedin": RateLimitRule(max_requests=100, window_ms=DAY_MS),
}


def configured_rate_limits() -> Dict[str, RateLimitRule]:
    """Default table merged with ``RATE_LIMIT_OVERRIDES`` from settings."""
    limits = dict(DEFAULT_RATE_LIMITS)
    for platform, override in (settings.RATE_LIMIT_OVERRIDES or {}).items():
        base = limits.get(platform, RateLimitRule(max_requests=100, window_ms=60 * 1000))
        limits[platform] = RateLimitRule(
            max_requests=int(override.get("max_requests", base.max_requests)),
            window_ms=int(override.get("window_ms", base.window_ms)),
        )
    return limits


def is_retryable_error(exc: BaseException) -> bool:
    """Throttling and transient failures are retried, everything else is not."""
    if isinstance(exc, TransientApiError):
        return True
    message = str(exc).lower()
    return any(pattern in message for pattern in RETRYABLE_MESSAGE_PATTERNS)


class RateLimiter:
    """Fixed-window request counter keyed by ``platform:endpoint``."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        limits: Optional[Mapping[str, RateLimitRule]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._limits = dict(limits) if limits is not None else configured_rate_limits()
        self._clock = clock
        self._sleep = sleep

    @property
    def store(self) -> KeyValueStore:
        if self._store is None:
            self._store = get_shared_store()
        return self._store

    def rule_for(self, platform: str) -> Optional[RateLimitRule]:
        return self._limits.get(platform)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _bucket_key(platform: str, endpoint: str) -> str:
        return f"ratelimit:{platform}:{endpoint}"

    async def check(self, platform: str, endpoint: str) -> bool:
        """Consume one request from the window. False when the window is exhausted."""
        rule = self.rule_for(platform)
        if rule is None:
            return True
        state = await self.store.acquire_window(
            self._bucket_key(platform, endpoint),
            rule.max_requests,
            rule.window_ms,
            self._now_ms(),
        )
        if not state.allowed:
            logger.info(
                "Rate limit reached for %s:%s (%s/%s)",
                platform,
                endpoint,
                state.count,
                rule.max_requests,
            )
        return state.allowed

    async def remaining(self, platform: str, endpoint: str) -> Optional[int]:
        """Requests left in the current window; ``None`` when the platform is not limited."""
        rule = self.rule_for(platform)
        if rule is None:
            return None
        bucket = await self.store.peek_window(self._bucket_key(platform, endpoint))
        if bucket is None or self._now_ms() > bucket[1]:
            return rule.max_requests
        return max(0, rule.max_requests - bucket[0])

    async def reset_in(self, platform: str, endpoint: str) -> float:
        """Seconds until the current window resets (0 when no window is open)."""
        bucket = await self.store.peek_window(self._bucket_key(platform, endpoint))
        if bucket is None:
            return 0.0
        return max(0.0, (bucket[1] - self._now_ms()) / 1000.0)

    async def wait_for_reset(self, platform: str, endpoint: str) -> None:
        delay = await self.reset_in(platform, endpoint)
        if delay > 0:
            logger.info("Waiting %.1fs for %s:%s rate-limit window", delay, platform, endpoint)
            await self._sleep(delay + RESET_BUFFER_SECONDS)

    async def with_rate_limit(
        self,
        platform: str,
        endpoint: str,
        fn: Callable[[], Awaitable[T]],
        max_retries: int = 3,
    ) -> T:
        """Run ``fn`` inside the window, retrying throttled failures with 1s/2s/4s backoff."""
        attempts = max(int(max_retries), 1)
        last_error: Optional[BaseException] = None
        for attempt in range(attempts):
            while not await self.check(platform, endpoint):
                await self.wait_for_reset(platform, endpoint)
            try:
                return await fn()
            except Exception as exc:
                if not is_retryable_error(exc):
                    raise
                last_error = exc
                delay = 2 ** attempt
                logger.warning(
                    "%s:%s throttled or transient failure (attempt %s/%s), backing off %ss: %s",
                    platform,
                    endpoint,
                    attempt + 1,
                    attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
        if last_error is None:
            raise RuntimeError(f"No attempt was made for {platform}:{endpoint}")
        raise last_error


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    global _rate_limiter
    _rate_limiter = limiter
