"""Meta Graph API connectors: Facebook Pages and Instagram Business accounts.

Both share one OAuth app. The handshake exchanges the code for a long-lived
user token, lists the user's pages and emits one Facebook account per page and
one Instagram account per linked business profile, each carrying the page
token. Page tokens do not expire, so they are validated with ``debug_token``
instead of refreshed.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode

from config import oauth_redirect_uri, settings
from services.connectors.base import BaseConnector, coerce_metric, date_windows, parse_timestamp, to_int
from services.connectors.types import (
    ConnectedAccount,
    DailyMetric,
    PostMetric,
    RefreshMode,
    SyncParams,
    SyncResult,
    TokenGrant,
)
from services.platforms.api_client import ErrorExpectation
from services.platforms.errors import SocialApiError, TokenExpiredError
from services.platforms.negotiation import is_variant_rejection


logger = logging.getLogger(__name__)

META_SCOPES = (
    "pages_show_list",
    "pages_read_engagement",
    "pages_read_user_content",
    "pages_manage_metadata",
    "read_insights",
    "instagram_basic",
    "instagram_manage_insights",
    "business_management",
)
REQUIRED_SCOPE = "pages_show_list"
PAGE_FIELDS = (
    "id,name,access_token,category,fan_count,followers_count,"
    "instagram_business_account{id,username,profile_picture_url,followers_count}"
)

INSTAGRAM_WINDOW_DAYS = 30
INSTAGRAM_MEDIA_PAGE_SIZE = 50
INSTAGRAM_MEDIA_MAX_PAGES = 2
INSTAGRAM_POST_INSIGHTS_LIMIT = 100
INSTAGRAM_TIME_SERIES_METRICS = ("reach",)
INSTAGRAM_TOTAL_VALUE_METRICS = (
    "views",
    "accounts_engaged",
    "total_interactions",
    "likes",
    "comments",
    "shares",
    "saves",
    "replies",
    "profile_views",
)
INSTAGRAM_FIELD_FOR_METRIC = {
    "reach": "reach",
    "views": "views",
    "total_interactions": "engagements",
    "likes": "likes",
    "comments": "comments",
    "shares": "shares",
    "saves": "saves",
}

# Descending preference per media kind; Meta keeps retiring impressions/plays.
INSTAGRAM_MEDIA_METRIC_SETS: Dict[str, Tuple[Tuple[str, ...], ...]] = {
    "REELS": (
        ("views", "reach", "total_interactions", "saved"),
        ("plays", "reach", "total_interactions", "saved"),
        ("reach", "total_interactions"),
        ("reach",),
    ),
    "STORY": (
        ("views", "reach", "total_interactions"),
        ("impressions", "reach"),
        ("reach",),
    ),
    "FEED": (
        ("views", "reach", "total_interactions", "saved"),
        ("impressions", "reach", "total_interactions", "saved"),
        ("reach", "total_interactions", "saved"),
        ("reach",),
    ),
}

FACEBOOK_WINDOW_DAYS = 90
FACEBOOK_POSTS_PAGE_SIZE = 50
FACEBOOK_POSTS_MAX_PAGES = 2
FACEBOOK_POST_INSIGHTS_LIMIT = 40
FACEBOOK_POST_FIELDS = (
    "id,message,created_time,permalink_url,full_picture,status_type,shares,"
    "reactions.summary(total_count),comments.summary(total_count)"
)
# Canonical field -> candidate page metrics, deprecated names last.
FACEBOOK_PAGE_METRICS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("impressions", ("page_impressions", "page_posts_impressions", "page_media_view")),
    ("reach", ("page_impressions_unique", "page_posts_impressions_unique", "page_total_media_view_unique")),
    ("engagements", ("page_post_engagements", "page_engaged_users", "page_consumptions")),
    ("likes", ("page_actions_post_reactions_total",)),
    ("views", ("page_video_views", "page_views_total")),
)
FACEBOOK_POST_METRICS: Tuple[Tuple[str, str], ...] = (
    ("post_impressions", "impressions"),
    ("post_impressions_unique", "reach"),
    ("post_media_view", "views"),
    ("post_total_media_view_unique", "reach"),
)
FACEBOOK_FALLBACK_VERSIONS = ("v25.0", "v24.0", "v23.0", "v21.0")


def graph_url(version: Optional[str] = None) -> str:
    return f"https://graph.facebook.com/{version or settings.META_GRAPH_VERSION}"


def _next_link(page: Any) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    if not isinstance(page, dict):
        return [], None
    paging = page.get("paging") or {}
    return list(page.get("data") or []), paging.get("next")


def _unique(values: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def is_permission_error(exc: BaseException) -> bool:
    return isinstance(exc, SocialApiError) and "permission" in (exc.message or "").lower()


def map_insights_to_daily(
    insights: Sequence[Mapping[str, Any]],
    field_for_metric: Mapping[str, str],
    *,
    start: date,
    end: date,
) -> Dict[date, DailyMetric]:
    """Fold Graph insight series into daily rows.

    ``total_value`` metrics have no per-day breakdown: they are spread across
    days in proportion to daily reach, or booked on ``end`` when there is no
    reach series.
    """
    per_day: Dict[date, Dict[str, float]] = {}
    totals: Dict[str, float] = {}
    for metric in insights:
        name = str(metric.get("name") or "")
        values = metric.get("values") or []
        total_value = metric.get("total_value")
        if not values and isinstance(total_value, dict):
            totals[name] = coerce_metric(total_value.get("value"))
            continue
        for point in values:
            ended = parse_timestamp(point.get("end_time"))
            day = ended.date() if ended else end
            if start <= day <= end:
                per_day.setdefault(day, {})[name] = coerce_metric(point.get("value"))

    reach_metrics = [name for name, field in field_for_metric.items() if field == "reach"]

    def _day_reach(values: Mapping[str, float]) -> float:
        return sum(values.get(name, 0.0) for name in reach_metrics)

    total_reach = sum(_day_reach(values) for values in per_day.values())
    if totals:
        if total_reach > 0:
            for values in per_day.values():
                share = _day_reach(values) / total_reach
                for name, total in totals.items():
                    values[name] = round(total * share)
        else:
            per_day.setdefault(end, {}).update(totals)

    rows: Dict[date, DailyMetric] = {}
    for day, values in per_day.items():
        row = DailyMetric(date=day, raw=dict(values))
        for name, value in values.items():
            field = field_for_metric.get(name)
            if field and getattr(row, field) is None:
                setattr(row, field, to_int(value))
        if row.engagements is None:
            parts = [row.likes, row.comments, row.shares, row.saves]
            if any(part is not None for part in parts):
                row.engagements = sum(part or 0 for part in parts)
        rows[day] = row
    return rows


class MetaConnector(BaseConnector):
    oauth_provider = "meta"
    refresh_mode = RefreshMode.VALIDATE
    setup_url = "https://developers.facebook.com/docs/graph-api/get-started"

    def is_configured(self) -> bool:
        return bool(settings.META_APP_ID and settings.META_APP_SECRET)

    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        self.ensure_configured()
        query = urlencode(
            {
                "client_id": settings.META_APP_ID,
                "redirect_uri": oauth_redirect_uri(self.oauth_provider),
                "state": state,
                "scope": ",".join(META_SCOPES),
                "response_type": "code",
            }
        )
        return f"https://www.facebook.com/{settings.META_GRAPH_VERSION}/dialog/oauth?{query}"

    async def _debug_token(self, token: str) -> Dict[str, Any]:
        body = await self._get(
            f"{graph_url()}/debug_token",
            params={
                "input_token": token,
                "access_token": f"{settings.META_APP_ID}|{settings.META_APP_SECRET}",
            },
            endpoint="debug_token",
        )
        return (body or {}).get("data") or {}

    async def validate_access_token(self, access_token: str) -> bool:
        data = await self._debug_token(access_token)
        return bool(data.get("is_valid"))

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> List[ConnectedAccount]:
        self.ensure_configured()
        short_lived = await self._get(
            f"{graph_url()}/oauth/access_token",
            params={
                "client_id": settings.META_APP_ID,
                "client_secret": settings.META_APP_SECRET,
                "redirect_uri": oauth_redirect_uri(self.oauth_provider),
                "code": code,
            },
            endpoint="oauth_token",
        )
        long_lived = await self._get(
            f"{graph_url()}/oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": settings.META_APP_ID,
                "client_secret": settings.META_APP_SECRET,
                "fb_exchange_token": short_lived.get("access_token"),
            },
            endpoint="oauth_long_lived",
        )
        user_token = long_lived.get("access_token") or short_lived.get("access_token")
        debug = await self._debug_token(user_token)
        scopes = [str(scope) for scope in debug.get("scopes") or []]
        if REQUIRED_SCOPE not in scopes:
            raise SocialApiError(
                platform=self.platform,
                endpoint="debug_token",
                status_code=403,
                message=f"Meta login did not grant {REQUIRED_SCOPE}; no pages can be listed.",
                raw_body=debug,
            )

        async def _fetch(cursor: Optional[str]) -> Any:
            if cursor:
                return await self._get(cursor, endpoint="me_accounts")
            return await self._get(
                f"{graph_url()}/me/accounts",
                params={"fields": PAGE_FIELDS, "limit": 100, "access_token": user_token},
                endpoint="me_accounts",
            )

        pages = await self._paginate(_fetch, _next_link, label="pages")
        accounts: List[ConnectedAccount] = []
        for page in pages:
            page_id = str(page.get("id") or "")
            page_token = page.get("access_token")
            if not page_id or not page_token:
                continue
            grant = TokenGrant(access_token=page_token, expires_at=None, scopes=",".join(scopes))
            accounts.append(
                ConnectedAccount(
                    platform="facebook",
                    external_account_id=page_id,
                    account_name=page.get("name"),
                    grant=grant,
                    metadata={
                        "category": page.get("category"),
                        "followers_count": page.get("followers_count") or page.get("fan_count"),
                    },
                )
            )
            instagram = page.get("instagram_business_account") or {}
            if instagram.get("id"):
                accounts.append(
                    ConnectedAccount(
                        platform="instagram",
                        external_account_id=str(instagram["id"]),
                        account_name=instagram.get("username") or page.get("name"),
                        grant=grant,
                        metadata={
                            "linked_page_id": page_id,
                            "followers_count": instagram.get("followers_count"),
                            "profile_picture_url": instagram.get("profile_picture_url"),
                        },
                    )
                )
        logger.info("Meta OAuth discovered %s pages, %s accounts", len(pages), len(accounts))
        return accounts

    @staticmethod
    def _bounds(start: date, end: date) -> Tuple[int, int]:
        since = int(datetime.combine(start, time.min, tzinfo=timezone.utc).timestamp())
        until = int(datetime.combine(end, time.max, tzinfo=timezone.utc).timestamp())
        return since, until

    @classmethod
    def _window(cls, today: date, days: int) -> Tuple[date, int, int]:
        start = today - timedelta(days=days - 1)
        since, until = cls._bounds(start, today)
        return start, since, until


class InstagramConnector(MetaConnector):
    platform = "instagram"
    supports_backfill = True

    async def sync(self, params: SyncParams) -> SyncResult:
        self._require_token(params)
        token = params.access_token
        account_id = params.external_account_id
        today = self.today()
        start = today - timedelta(days=INSTAGRAM_WINDOW_DAYS - 1)

        info = await self._account_info(account_id, token)
        daily = await self._account_insights(account_id, token, start, today)
        media = await self._media(account_id, token, max_pages=INSTAGRAM_MEDIA_MAX_PAGES)
        posts = await self._media_posts(account_id, token, media, media[:INSTAGRAM_POST_INSIGHTS_LIMIT])
        self._book_posts_and_followers(daily, posts, info, today)

        logger.info("[instagram] %s: %s daily rows, %s posts", account_id, len(daily), len(posts))
        return self._finalize(daily.values(), posts)

    async def backfill(self, params: SyncParams, days: int, include_views: bool = True) -> SyncResult:
        """Walk account insights in 30-day windows and media back to the start day.

        Per-media insights are only fetched for videos and reels, and only when
        ``include_views`` is set.
        """
        self._require_token(params)
        token = params.access_token
        account_id = params.external_account_id
        today = self.today()
        start = self.backfill_start(days)

        info = await self._account_info(account_id, token)
        daily: Dict[date, DailyMetric] = {}
        for window_start, window_end in date_windows(start, today, INSTAGRAM_WINDOW_DAYS):
            daily.update(await self._account_insights(account_id, token, window_start, window_end))

        def _before_start(item: Mapping[str, Any]) -> bool:
            stamp = parse_timestamp(item.get("timestamp"))
            return stamp is not None and stamp.date() < start

        # Media pages come newest first.
        fetched = await self._media(
            account_id,
            token,
            max_pages=settings.BACKFILL_MAX_PAGES,
            stop_when=lambda page: any(_before_start(item) for item in page),
        )
        media = [item for item in fetched if not _before_start(item)]
        with_insights = [item for item in media if self.is_video(item)] if include_views else []
        posts = await self._media_posts(account_id, token, media, with_insights)
        self._book_posts_and_followers(daily, posts, info, today)

        logger.info(
            "[instagram] %s backfill from %s: %s daily rows, %s posts", account_id, start, len(daily), len(posts)
        )
        return self._finalize(daily.values(), posts)

    async def _account_info(self, account_id: str, token: str) -> Dict[str, Any]:
        return await self._get(
            f"{graph_url()}/{account_id}",
            params={"fields": "followers_count,media_count,username", "access_token": token},
            endpoint="account_info",
        )

    async def _account_insights(
        self, account_id: str, token: str, start: date, end: date
    ) -> Dict[date, DailyMetric]:
        since, until = self._bounds(start, end)

        async def _insights(metrics: Sequence[str], metric_type: Optional[str], label: str) -> List[Dict[str, Any]]:
            query: Dict[str, Any] = {
                "metric": ",".join(metrics),
                "period": "day",
                "since": since,
                "until": until,
                "access_token": token,
            }
            if metric_type:
                query["metric_type"] = metric_type

            async def _fetch(cursor: Optional[str]) -> Any:
                if cursor:
                    return await self._get(cursor, endpoint=label)
                return await self._get(f"{graph_url()}/{account_id}/insights", params=query, endpoint=label)

            return await self._paginate(_fetch, _next_link, label=label, max_pages=2)

        series = await self._optional(
            "account insights",
            lambda: _insights(INSTAGRAM_TIME_SERIES_METRICS, None, "insights_time_series"),
        )
        totals = await self._optional(
            "account insight totals",
            lambda: _insights(INSTAGRAM_TOTAL_VALUE_METRICS, "total_value", "insights_total"),
        )
        return map_insights_to_daily(
            list(series or []) + list(totals or []),
            INSTAGRAM_FIELD_FOR_METRIC,
            start=start,
            end=end,
        )

    async def _media(
        self,
        account_id: str,
        token: str,
        *,
        max_pages: int,
        stop_when: Optional[Callable[[Sequence[Dict[str, Any]]], bool]] = None,
    ) -> List[Dict[str, Any]]:
        async def _fetch_media(cursor: Optional[str]) -> Any:
            if cursor:
                return await self._get(cursor, endpoint="media")
            return await self._get(
                f"{graph_url()}/{account_id}/media",
                params={
                    "fields": (
                        "id,caption,media_type,media_product_type,media_url,thumbnail_url,"
                        "permalink,timestamp,like_count,comments_count"
                    ),
                    "limit": INSTAGRAM_MEDIA_PAGE_SIZE,
                    "access_token": token,
                },
                endpoint="media",
            )

        pages = await self._paginate(
            _fetch_media, _next_link, label="media", max_pages=max_pages, stop_when=stop_when
        )
        return [item for item in pages if item.get("id")]

    async def _media_posts(
        self,
        account_id: str,
        token: str,
        media: Sequence[Dict[str, Any]],
        media_for_insights: Sequence[Dict[str, Any]],
    ) -> List[PostMetric]:
        insight_values = await self._map_bounded(
            list(media_for_insights),
            lambda item: self._media_insights(account_id, item, token),
            fallback=lambda item: {},
            label="media insights",
        )
        insights_by_id = {item["id"]: values for item, values in zip(media_for_insights, insight_values)}
        return [self._to_post(item, insights_by_id.get(item["id"])) for item in media]

    @staticmethod
    def _book_posts_and_followers(
        daily: Dict[date, DailyMetric], posts: Sequence[PostMetric], info: Mapping[str, Any], today: date
    ) -> None:
        for post in posts:
            if post.posted_at is not None:
                day = post.posted_at.date()
                daily.setdefault(day, DailyMetric(date=day)).add("posts_count", 1)
        today_row = daily.setdefault(today, DailyMetric(date=today))
        if info.get("followers_count") is not None:
            today_row.followers = to_int(info.get("followers_count"))

    @classmethod
    def is_video(cls, item: Mapping[str, Any]) -> bool:
        return cls.media_kind(item) == "REELS" or str(item.get("media_type") or "").upper() == "VIDEO"

    @staticmethod
    def media_kind(item: Mapping[str, Any]) -> str:
        product = str(item.get("media_product_type") or "").upper()
        media_type = str(item.get("media_type") or "").upper()
        if product in ("REELS", "STORY"):
            return product
        if media_type in ("REEL", "REELS"):
            return "REELS"
        return "FEED"

    async def _media_insights(self, account_id: str, item: Mapping[str, Any], token: str) -> Dict[str, float]:
        kind = self.media_kind(item)

        async def _attempt(metrics: Tuple[str, ...]) -> Any:
            return await self._get(
                f"{graph_url()}/{item['id']}/insights",
                params={"metric": ",".join(metrics), "access_token": token},
                endpoint="media_insights",
                expectation=ErrorExpectation.EXPECTED_FAILURE,
            )

        negotiated = await self.negotiator.negotiate(
            f"instagram:{account_id}:media_insights:{kind}",
            INSTAGRAM_MEDIA_METRIC_SETS[kind],
            _attempt,
        )
        if negotiated is None:
            return {}
        values: Dict[str, float] = {}
        for metric in (negotiated.value or {}).get("data") or []:
            points = metric.get("values") or []
            raw = points[0].get("value") if points else (metric.get("total_value") or {}).get("value")
            values[str(metric.get("name"))] = coerce_metric(raw)
        return values

    def _to_post(self, item: Mapping[str, Any], insights: Optional[Mapping[str, float]]) -> PostMetric:
        likes = to_int(item.get("like_count"))
        comments = to_int(item.get("comments_count"))
        metrics: Dict[str, float] = {"likes": likes, "comments": comments}
        insights = insights or {}
        if "impressions" in insights:
            metrics["impressions"] = insights["impressions"]
        if "reach" in insights:
            metrics["reach"] = insights["reach"]
        views = insights.get("views", insights.get("plays"))
        if views is not None:
            metrics["views"] = views
        if "saved" in insights:
            metrics["saves"] = insights["saved"]
        base_engagements = likes + comments + to_int(insights.get("saved"))
        metrics["engagements"] = max(base_engagements, to_int(insights.get("total_interactions")))

        kind = self.media_kind(item)
        media_type = "reel" if kind == "REELS" else str(item.get("media_type") or "").lower() or None
        return PostMetric(
            external_post_id=str(item["id"]),
            platform=self.platform,
            posted_at=parse_timestamp(item.get("timestamp")),
            caption=(item.get("caption") or "")[:500] or None,
            media_type="story" if kind == "STORY" else media_type,
            url=item.get("permalink"),
            thumbnail_url=item.get("thumbnail_url") or item.get("media_url"),
            metrics=metrics,
            raw=dict(item),
        )


class FacebookConnector(MetaConnector):
    platform = "facebook"

    async def sync(self, params: SyncParams) -> SyncResult:
        self._require_token(params)
        token = params.access_token
        page_id = params.external_account_id
        today = self.today()
        start, since, until = self._window(today, FACEBOOK_WINDOW_DAYS)

        info = await self._get(
            f"{graph_url()}/{page_id}",
            params={"fields": "followers_count,fan_count,name", "access_token": token},
            endpoint="page_info",
        )
        followers = info.get("followers_count", info.get("fan_count"))

        insights, field_for_metric = await self._page_insights(page_id, token, since, until)
        daily = map_insights_to_daily(insights, field_for_metric, start=start, end=today)

        fb_posts = await self._fetch_posts(page_id, token)
        post_insights = await self._post_insights(
            page_id, [str(post["id"]) for post in fb_posts[:FACEBOOK_POST_INSIGHTS_LIMIT]], token
        )
        posts = [self._to_post(post, post_insights.get(str(post["id"]))) for post in fb_posts]

        aggregate_from_posts = not insights
        if aggregate_from_posts and posts:
            logger.info("[facebook] %s has no page insights, aggregating %s posts", page_id, len(posts))
        for post in posts:
            if post.posted_at is None:
                continue
            day = post.posted_at.date()
            row = daily.setdefault(day, DailyMetric(date=day))
            row.add("posts_count", 1)
            if aggregate_from_posts:
                for name in ("likes", "comments", "shares", "engagements"):
                    row.add(name, post.metrics.get(name))

        today_row = daily.setdefault(today, DailyMetric(date=today))
        if followers is not None:
            today_row.followers = to_int(followers)
        if not insights:
            today_row.raw = {**(today_row.raw or {}), "_error": "No insights metrics available for this page"}

        logger.info("[facebook] %s: %s daily rows, %s posts", page_id, len(daily), len(posts))
        return self._finalize(daily.values(), posts)

    async def _page_insights(
        self, page_id: str, token: str, since: int, until: int
    ) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
        collected: List[Dict[str, Any]] = []
        field_for_metric: Dict[str, str] = {}
        for field, candidates in FACEBOOK_PAGE_METRICS:

            async def _attempt(metric: str) -> List[Dict[str, Any]]:
                body = await self._get(
                    f"{graph_url()}/{page_id}/insights",
                    params={"metric": metric, "period": "day", "since": since, "until": until, "access_token": token},
                    endpoint=f"insights_{metric}",
                    expectation=ErrorExpectation.EXPECTED_FAILURE,
                )
                data = (body or {}).get("data") or []
                if not data:
                    # Retired metrics often answer with an empty list instead of an error.
                    raise SocialApiError(
                        platform=self.platform,
                        endpoint=f"insights_{metric}",
                        status_code=404,
                        message=f"No data for page metric {metric}",
                    )
                return data

            try:
                negotiated = await self.negotiator.negotiate(
                    f"facebook:{page_id}:page_insights:{field}", candidates, _attempt
                )
            except TokenExpiredError:
                raise
            except SocialApiError as exc:
                logger.warning("[facebook] page metric %s unavailable: %s", field, exc.message[:120])
                continue
            if negotiated is None:
                continue
            field_for_metric[negotiated.variant] = field
            collected.extend(negotiated.value)
        logger.info("[facebook] %s page metrics available: %s", page_id, ", ".join(field_for_metric) or "none")
        return collected, field_for_metric

    async def _fetch_posts(self, page_id: str, token: str) -> List[Dict[str, Any]]:
        query = {"fields": FACEBOOK_POST_FIELDS, "limit": FACEBOOK_POSTS_PAGE_SIZE, "access_token": token}

        async def _first_page(edge: str) -> Any:
            return await self._get(
                f"{graph_url()}/{page_id}/{edge}",
                params=query,
                endpoint="posts",
                expectation=ErrorExpectation.EXPECTED_FAILURE,
            )

        first = await self.negotiator.negotiate(
            f"facebook:{page_id}:posts_edge", ("published_posts", "posts"), _first_page
        )
        if first is None:
            logger.warning("[facebook] %s posts are not readable with this token", page_id)
            return []

        async def _fetch(cursor: Optional[str]) -> Any:
            if cursor is None:
                return first.value
            return await self._get(cursor, endpoint="posts")

        posts = await self._paginate(_fetch, _next_link, label="posts", max_pages=FACEBOOK_POSTS_MAX_PAGES)
        return [post for post in posts if post.get("id")]

    async def _post_insights(self, page_id: str, post_ids: List[str], token: str) -> Dict[str, Dict[str, float]]:
        if not post_ids:
            return {}
        versions = _unique([settings.META_GRAPH_VERSION, *FACEBOOK_FALLBACK_VERSIONS])
        sample_post = post_ids[0]

        def _rejected(exc: BaseException) -> bool:
            return is_variant_rejection(exc) and not is_permission_error(exc)

        supported: List[Tuple[str, str, str]] = []
        for metric, target in FACEBOOK_POST_METRICS:

            async def _attempt_version(version: str) -> Any:
                return await self._get(
                    f"{graph_url(version)}/{sample_post}/insights/{metric}",
                    params={"period": "lifetime", "access_token": token},
                    endpoint="post_insights_check",
                    expectation=ErrorExpectation.EXPECTED_FAILURE,
                )

            try:
                negotiated = await self.negotiator.negotiate(
                    f"facebook:{page_id}:post_insights:{metric}", versions, _attempt_version, is_rejection=_rejected
                )
            except TokenExpiredError:
                raise
            except SocialApiError as exc:
                if is_permission_error(exc):
                    logger.warning("[facebook] post insights disabled (permissions): %s", exc.message[:120])
                    return {}
                logger.warning("[facebook] post insights check failed for %s: %s", metric, exc.message[:120])
                continue
            if negotiated is None:
                logger.info("[facebook] post metric %s unavailable", metric)
                continue
            supported.append((metric, target, negotiated.variant))

        if not supported:
            return {}

        async def _fetch_one(post_id: str) -> Dict[str, float]:
            values: Dict[str, float] = {"impressions": 0.0, "reach": 0.0, "views": 0.0}
            for metric, target, version in supported:
                try:
                    body = await self._get(
                        f"{graph_url(version)}/{post_id}/insights/{metric}",
                        params={"period": "lifetime", "access_token": token},
                        endpoint=f"post_insights_{metric}",
                        expectation=ErrorExpectation.EXPECTED_FAILURE,
                    )
                except TokenExpiredError:
                    raise
                except SocialApiError:
                    continue
                data = (body or {}).get("data") or []
                points = (data[0].get("values") or []) if data else []
                value = coerce_metric(points[0].get("value")) if points else 0.0
                if values[target] == 0 and value > 0:
                    values[target] = value
            return values

        results = await self._map_bounded(
            post_ids,
            _fetch_one,
            fallback=lambda post_id: {"impressions": 0.0, "reach": 0.0, "views": 0.0},
            label="post insights",
        )
        return dict(zip(post_ids, results))

    def _to_post(self, post: Mapping[str, Any], insights: Optional[Mapping[str, float]]) -> PostMetric:
        reactions = to_int(((post.get("reactions") or {}).get("summary") or {}).get("total_count"))
        comments = to_int(((post.get("comments") or {}).get("summary") or {}).get("total_count"))
        shares = to_int((post.get("shares") or {}).get("count"))
        insights = insights or {}
        views = insights.get("views", 0.0)
        impressions = insights.get("impressions") or views
        reach = insights.get("reach") or views
        if post.get("status_type") == "added_video":
            media_type = "video"
        elif post.get("full_picture"):
            media_type = "image"
        else:
            media_type = "text"
        return PostMetric(
            external_post_id=str(post["id"]),
            platform=self.platform,
            posted_at=parse_timestamp(post.get("created_time")),
            caption=(post.get("message") or "")[:500] or None,
            media_type=media_type,
            url=post.get("permalink_url"),
            thumbnail_url=post.get("full_picture"),
            metrics={
                "likes": reactions,
                "comments": comments,
                "shares": shares,
                "impressions": impressions,
                "reach": reach,
                "views": views,
                "engagements": reactions + comments + shares,
            },
            raw=dict(post),
        )
