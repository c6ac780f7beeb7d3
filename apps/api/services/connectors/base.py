"""Connector contract and the sync helpers shared by every platform."""

from __future__ import annotations

import logging
import math
import re
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, ClassVar, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

import httpx

from config import settings
from services.connectors.types import (
    DAILY_METRIC_FIELDS,
    ConnectedAccount,
    ConnectorUnavailableError,
    DailyMetric,
    FollowerSeries,
    PostMetric,
    RefreshMode,
    SyncParams,
    SyncResult,
    TokenGrant,
)
from services.platforms.api_client import ApiExecutor, ErrorExpectation
from services.platforms.concurrency import gather_bounded
from services.platforms.errors import SocialApiError, TokenExpiredError
from services.platforms.negotiation import VariantNegotiator


logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")
_NON_NUMERIC = re.compile(r"[^\d.-]")


def _parse_metric_text(text: str) -> Optional[float]:
    cleaned = _NON_NUMERIC.sub("", text)
    if not cleaned or cleaned in ("-", ".", "-."):
        return None
    try:
        parsed = float(cleaned)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def coerce_metric(value: Any) -> float:
    """Numbers pass through, breakdown dicts are summed, numeric strings are parsed.

    Strings drop thousands separators and other noise (``"1,234"`` is 1234);
    ``"a/b"`` strings take the largest part. Non-finite values count as 0.
    """
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else 0.0
    if isinstance(value, dict):
        return sum(coerce_metric(item) for item in value.values())
    if isinstance(value, str):
        text = value.strip()
        if "/" in text:
            parts = [_parse_metric_text(part) for part in text.split("/")]
            valid = [part for part in parts if part is not None]
            if valid:
                return max(valid)
        parsed = _parse_metric_text(text)
        return parsed if parsed is not None else 0.0
    return 0.0


def to_int(value: Any) -> int:
    return int(round(coerce_metric(value)))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings (including ``+0000`` offsets) and epoch seconds/millis."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 10_000_000_000 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _COMPACT_OFFSET.sub(r"\1:\2", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def date_windows(start: date, end: date, days: int) -> List[Tuple[date, date]]:
    """Split ``start..end`` (inclusive) into consecutive windows of at most ``days`` days."""
    step = max(int(days), 1)
    windows: List[Tuple[date, date]] = []
    cursor = start
    while cursor <= end:
        window_end = min(cursor + timedelta(days=step - 1), end)
        windows.append((cursor, window_end))
        cursor = window_end + timedelta(days=1)
    return windows


def expires_at_from(expires_in: Any) -> Optional[datetime]:
    seconds = to_int(expires_in)
    if seconds <= 0:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


def merge_daily_metrics(entries: Iterable[DailyMetric]) -> List[DailyMetric]:
    """Collapse entries sharing a date (later non-null values win), sorted by date."""
    merged: Dict[date, DailyMetric] = {}
    for entry in entries:
        existing = merged.get(entry.date)
        if existing is None:
            merged[entry.date] = entry
            continue
        for name in DAILY_METRIC_FIELDS:
            value = getattr(entry, name)
            if value is not None:
                setattr(existing, name, value)
        if entry.raw:
            existing.raw = {**(existing.raw or {}), **entry.raw}
    return [merged[key] for key in sorted(merged)]


def dedupe_posts(posts: Iterable[PostMetric]) -> List[PostMetric]:
    by_id: Dict[str, PostMetric] = {}
    for post in posts:
        by_id[post.external_post_id] = post
    return list(by_id.values())


class BaseConnector(ABC):
    """One social platform: OAuth handshake, token refresh and metrics sync."""

    platform: ClassVar[str]
    oauth_provider: ClassVar[str]
    setup_url: ClassVar[str] = ""
    uses_pkce: ClassVar[bool] = False
    refresh_mode: ClassVar[RefreshMode] = RefreshMode.REFRESH_TOKEN
    follower_series: ClassVar[FollowerSeries] = FollowerSeries.ABSOLUTE
    supports_backfill: ClassVar[bool] = False

    def __init__(
        self,
        executor: ApiExecutor,
        negotiator: Optional[VariantNegotiator] = None,
        *,
        max_pages: Optional[int] = None,
        item_concurrency: Optional[int] = None,
        today: Callable[[], date] = utc_today,
    ) -> None:
        self.executor = executor
        self.negotiator = negotiator or VariantNegotiator()
        self.max_pages = max(int(max_pages or settings.SYNC_MAX_PAGES), 1)
        self.item_concurrency = max(int(item_concurrency or settings.POST_INSIGHTS_CONCURRENCY), 1)
        self.today = today

    # Configuration and OAuth

    @abstractmethod
    def is_configured(self) -> bool:
        raise NotImplementedError

    def ensure_configured(self) -> None:
        if not self.is_configured():
            raise ConnectorUnavailableError(
                f"{self.oauth_provider.capitalize()} OAuth connector is not configured. "
                f"Set the client credentials, then retry. Setup guide: {self.setup_url}"
            )

    @abstractmethod
    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        raise NotImplementedError

    @abstractmethod
    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> List[ConnectedAccount]:
        raise NotImplementedError

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        raise NotImplementedError(f"{self.platform} tokens are not refreshed with a refresh_token grant")

    async def validate_access_token(self, access_token: str) -> bool:
        raise NotImplementedError(f"{self.platform} tokens are not validated by introspection")

    # Sync

    @abstractmethod
    async def sync(self, params: SyncParams) -> SyncResult:
        raise NotImplementedError

    async def backfill(self, params: SyncParams, days: int, include_views: bool = True) -> SyncResult:
        """Historical daily rows and posts for the last ``days`` days."""
        raise NotImplementedError(f"{self.platform} has no historical backfill")

    def backfill_start(self, days: int) -> date:
        return self.today() - timedelta(days=max(int(days), 1) - 1)

    def _require_token(self, params: SyncParams) -> None:
        if not params.access_token:
            raise ValueError(f"Missing {self.platform} access token")

    async def _get(
        self,
        url: str,
        *,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        expectation: ErrorExpectation = ErrorExpectation.UNEXPECTED,
    ) -> Any:
        return await self.executor.request(
            self.platform,
            url,
            params=params,
            headers=headers,
            endpoint=endpoint,
            expectation=expectation,
        )

    async def _token_request(
        self,
        url: str,
        data: Dict[str, Any],
        *,
        endpoint: str,
        auth: Optional[httpx.Auth] = None,
    ) -> Dict[str, Any]:
        """POST an OAuth token form and surface ``error`` bodies as API errors."""
        body = await self.executor.request(
            self.platform,
            url,
            method="POST",
            data=data,
            auth=auth,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            endpoint=endpoint,
        )
        if not isinstance(body, dict) or not body.get("access_token"):
            description = ""
            if isinstance(body, dict):
                description = str(body.get("error_description") or body.get("error") or "")
            raise SocialApiError(
                platform=self.platform,
                endpoint=endpoint,
                status_code=400,
                message=f"{self.platform} OAuth error: {description or 'no access token returned'}",
                raw_body=body,
            )
        return body

    async def _optional(self, label: str, call: Callable[[], Awaitable[T]]) -> Optional[T]:
        """Run a call whose failure (usually a missing scope) only costs partial data."""
        try:
            return await call()
        except TokenExpiredError:
            raise
        except SocialApiError as exc:
            logger.warning(
                "[%s] %s unavailable, continuing with partial data: %s",
                self.platform,
                label,
                exc.message[:200],
            )
            return None

    async def _paginate(
        self,
        fetch_page: Callable[[Optional[str]], Awaitable[Any]],
        extract: Callable[[Any], Tuple[Sequence[T], Optional[str]]],
        *,
        label: str,
        max_pages: Optional[int] = None,
        stop_when: Optional[Callable[[Sequence[T]], bool]] = None,
    ) -> List[T]:
        """Follow cursors until exhausted, ``stop_when(page)`` holds, or the page cap is reached."""
        cap = max(int(max_pages or self.max_pages), 1)
        items: List[T] = []
        cursor: Optional[str] = None
        for _ in range(cap):
            page = await fetch_page(cursor)
            page_items, cursor = extract(page)
            items.extend(page_items)
            if not cursor or (stop_when is not None and stop_when(page_items)):
                break
        else:
            if cursor:
                logger.info("[%s] %s stopped at page cap (%s pages)", self.platform, label, cap)
        return items

    async def _map_bounded(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
        *,
        fallback: Callable[[T], R],
        label: str,
    ) -> List[R]:
        """Per-item calls with bounded concurrency, a failed item gets ``fallback``."""

        def _on_error(item: T, exc: Exception) -> R:
            if isinstance(exc, TokenExpiredError):
                raise exc
            logger.warning("[%s] %s failed for one item, using zero metrics: %s", self.platform, label, exc)
            return fallback(item)

        return await gather_bounded(items, worker, limit=self.item_concurrency, on_error=_on_error)

    @staticmethod
    def _finalize(daily_metrics: Iterable[DailyMetric], posts: Iterable[PostMetric]) -> SyncResult:
        return SyncResult(daily_metrics=merge_daily_metrics(daily_metrics), posts=dedupe_posts(posts))
