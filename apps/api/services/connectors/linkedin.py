"""LinkedIn Pages connector on the DMA (Digital Markets Act) REST API.

Rest.li query syntax (``List(...)``, tuples) is built by hand, so URLs are
passed to the executor fully formed. The follower trend reports daily gains;
the latest day carries the organization's total follower count.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote, urlencode

from config import oauth_redirect_uri, settings
from services.connectors.base import BaseConnector, expires_at_from, parse_timestamp, to_int
from services.connectors.types import (
    ConnectedAccount,
    DailyMetric,
    FollowerSeries,
    PostMetric,
    SyncParams,
    SyncResult,
    TokenGrant,
)
from services.platforms.api_client import ErrorExpectation
from services.platforms.errors import SocialApiError, TokenExpiredError


logger = logging.getLogger(__name__)

LINKEDIN_AUTHORIZE_URL = "https://www.linkedin.com/oauth/v2/authorization"
LINKEDIN_TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
LINKEDIN_API_URL = "https://api.linkedin.com/rest"
LINKEDIN_SCOPES = ("r_dma_admin_pages_content",)
WINDOW_DAYS = 30
MAX_POSTS = 50
BACKFILL_MAX_POSTS = 200
# The content trend endpoint rejects ranges older than twelve months.
CONTENT_TREND_MAX_DAYS = 365
POST_BATCH_SIZE = 20

CONTENT_TREND_METRICS = "List(IMPRESSIONS,UNIQUE_IMPRESSIONS,CLICKS,COMMENTS,REACTIONS,REPOSTS)"
POST_ANALYTICS_METRICS = "List(IMPRESSIONS,UNIQUE_IMPRESSIONS,CLICKS)"

# Rest.li accepts the time interval in several spellings depending on API version.
TIME_INTERVAL_ENCODINGS = (
    "dot_day",
    "encoded_day",
    "raw_day",
    "dot",
    "encoded",
    "raw",
)

_ORGANIZATION_PREFIXES = ("urn:li:organization:", "urn:li:organizationalPage:")


def normalize_organization_id(value: str) -> str:
    for prefix in _ORGANIZATION_PREFIXES:
        value = value.replace(prefix, "")
    return value


def detect_linkedin_media_type(content: Optional[Mapping[str, Any]]) -> str:
    """Map a DMA post ``content`` object to a normalized media type."""
    if not content:
        return "text"
    if content.get("carousel") or content.get("multiImage"):
        return "carousel"
    if content.get("poll"):
        return "text"
    if content.get("article"):
        return "link"
    if content.get("celebration"):
        return "image"
    media = content.get("media")
    if media:
        if media.get("video"):
            return "video"
        if media.get("document"):
            return "link"
        return "image"
    return "text"


def render_time_interval(encoding: str, start_ms: int, end_ms: int) -> str:
    with_day = encoding.endswith("_day")
    style = encoding[: -len("_day")] if with_day else encoding
    if style == "dot":
        fragment = f"timeIntervals.timeRange.start={start_ms}&timeIntervals.timeRange.end={end_ms}"
        if with_day:
            fragment = "timeIntervals.timeGranularityType=DAY&" + fragment
        return fragment
    granularity = ",timeGranularityType:DAY" if with_day else ""
    value = f"(timeRange:(start:{start_ms},end:{end_ms}){granularity})"
    if style == "encoded":
        value = quote(value, safe="")
    return f"timeIntervals={value}"


def _metric_count(value: Mapping[str, Any]) -> float:
    total = value.get("totalCount") or {}
    if total.get("long") is not None:
        return float(total["long"])
    if total.get("bigDecimal") is not None:
        return float(total["bigDecimal"])
    content_value = (value.get("typeSpecificValue") or {}).get("contentAnalyticsValue") or {}
    organic = (content_value.get("organicValue") or {}).get("long") or 0
    sponsored = (content_value.get("sponsoredValue") or {}).get("long") or 0
    return float(organic + sponsored)


def _day_start_ms(day: date) -> int:
    return int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp() * 1000)


def _range_start_date(intervals: Mapping[str, Any]) -> Optional[date]:
    start = ((intervals or {}).get("timeRange") or {}).get("start")
    parsed = parse_timestamp(start) if start else None
    return parsed.date() if parsed else None


class LinkedInConnector(BaseConnector):
    platform = "linkedin"
    oauth_provider = "linkedin"
    follower_series = FollowerSeries.GAINS_WITH_ANCHOR
    supports_backfill = True
    setup_url = "https://learn.microsoft.com/en-us/linkedin/marketing/dma/"

    def is_configured(self) -> bool:
        return bool(settings.LINKEDIN_CLIENT_ID and settings.LINKEDIN_CLIENT_SECRET)

    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        self.ensure_configured()
        query = urlencode(
            {
                "response_type": "code",
                "client_id": settings.LINKEDIN_CLIENT_ID,
                "redirect_uri": oauth_redirect_uri(self.oauth_provider),
                "state": state,
                "scope": " ".join(LINKEDIN_SCOPES),
            }
        )
        return f"{LINKEDIN_AUTHORIZE_URL}?{query}"

    @staticmethod
    def headers(token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "X-Restli-Protocol-Version": "2.0.0",
            "LinkedIn-Version": settings.LINKEDIN_API_VERSION,
        }

    @staticmethod
    def _grant(body: Mapping[str, Any], previous_refresh_token: Optional[str] = None) -> TokenGrant:
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or previous_refresh_token,
            expires_at=expires_at_from(body.get("expires_in")),
            scopes=body.get("scope"),
        )

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> List[ConnectedAccount]:
        self.ensure_configured()
        body = await self._token_request(
            LINKEDIN_TOKEN_URL,
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": settings.LINKEDIN_CLIENT_ID,
                "client_secret": settings.LINKEDIN_CLIENT_SECRET,
                "redirect_uri": oauth_redirect_uri(self.oauth_provider),
            },
            endpoint="oauth_token",
        )
        grant = self._grant(body)
        organizations = await self._managed_organizations(grant.access_token)
        if not organizations:
            logger.warning(
                "[linkedin] No approved organization pages; check the r_dma_admin_pages_content scope "
                "and that the app is approved for DMA access"
            )
        return [
            ConnectedAccount(
                platform="linkedin",
                external_account_id=org_id,
                account_name=org.get("localizedName") or "Unknown Organization",
                grant=grant,
                metadata={
                    "account_type": "organization",
                    "organizational_page_id": normalize_organization_id(str(org.get("organizationalPage") or org_id)),
                },
            )
            for org_id, org in organizations.items()
        ]

    async def _managed_organizations(self, token: str) -> Dict[str, Dict[str, Any]]:
        actions = "List((authorizationAction:(organizationAnalyticsAuthorizationAction:(actionType:UPDATE_ANALYTICS_READ))))"
        body = await self._get(
            f"{LINKEDIN_API_URL}/dmaOrganizationAuthorizations?bq=authorizationActionsAndImpersonator"
            f"&authorizationActions={actions}&start=0&count=100",
            headers=self.headers(token),
            endpoint="organization_authorizations",
        )
        elements: List[Dict[str, Any]] = []
        for entry in (body or {}).get("elements") or []:
            inner = entry.get("elements")
            elements.extend(inner if isinstance(inner, list) else [entry])
        org_ids = sorted(
            {
                normalize_organization_id(str(element.get("organization")))
                for element in elements
                if (element.get("status") or {}).get("approved") and element.get("organization")
            }
        )
        if not org_ids:
            return {}
        details = await self._get(
            f"{LINKEDIN_API_URL}/dmaOrganizations?ids=List({','.join(org_ids)})",
            headers=self.headers(token),
            endpoint="organizations",
        )
        results = (details or {}).get("results") or {}
        return {str(org_id): dict(org or {}) for org_id, org in results.items()}

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.ensure_configured()
        body = await self._token_request(
            LINKEDIN_TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": settings.LINKEDIN_CLIENT_ID,
                "client_secret": settings.LINKEDIN_CLIENT_SECRET,
            },
            endpoint="oauth_refresh",
        )
        return self._grant(body, previous_refresh_token=refresh_token)

    async def sync(self, params: SyncParams) -> SyncResult:
        today = self.today()
        return await self._collect(params, today - timedelta(days=WINDOW_DAYS - 1), today, MAX_POSTS)

    async def backfill(self, params: SyncParams, days: int, include_views: bool = True) -> SyncResult:
        """Follower gains, content trend and posts back to the start day.

        The content trend only reaches back twelve months, so older days keep
        follower values only.
        """
        today = self.today()
        return await self._collect(
            params, self.backfill_start(days), today, BACKFILL_MAX_POSTS, drop_older_posts=True
        )

    async def _collect(
        self, params: SyncParams, start_day: date, today: date, post_limit: int, drop_older_posts: bool = False
    ) -> SyncResult:
        self._require_token(params)
        headers = self.headers(params.access_token)
        organization_id = normalize_organization_id(params.external_account_id)
        start_ms = _day_start_ms(start_day)
        end_ms = int(datetime.combine(today, time.max, tzinfo=timezone.utc).timestamp() * 1000)

        daily: Dict[date, DailyMetric] = {}
        for offset in range((today - start_day).days + 1):
            day = start_day + timedelta(days=offset)
            daily[day] = DailyMetric(date=day, followers=0)

        gains, total_followers = await self._follower_trend(organization_id, headers, start_ms, end_ms) or ({}, 0)
        for day, gain in gains.items():
            if day in daily:
                daily[day].followers = gain
        if total_followers <= 0:
            total_followers = await self._optional(
                "follower count", lambda: self._follower_count(organization_id, headers)
            ) or 0
        if total_followers > 0:
            daily[max(daily)].followers = total_followers

        trend_start = max(start_day, today - timedelta(days=CONTENT_TREND_MAX_DAYS - 1))
        trend = await self._content_trend(organization_id, headers, _day_start_ms(trend_start), end_ms) or {}
        for day, counts in trend.items():
            row = daily.get(day)
            if row is None:
                continue
            row.add("impressions", counts.get("IMPRESSIONS"))
            row.add("reach", counts.get("UNIQUE_IMPRESSIONS"))
            row.add("likes", counts.get("REACTIONS"))
            row.add("comments", counts.get("COMMENTS"))
            row.add("shares", counts.get("REPOSTS"))
            row.add("views", counts.get("IMPRESSIONS"))
            row.add(
                "engagements",
                sum(counts.get(name, 0) for name in ("REACTIONS", "COMMENTS", "REPOSTS", "CLICKS")),
            )

        posts = await self._posts(organization_id, headers, post_limit)
        if drop_older_posts:
            posts = [post for post in posts if post.posted_at is None or post.posted_at.date() >= start_day]
        for post in posts:
            if post.posted_at is not None and post.posted_at.date() in daily:
                daily[post.posted_at.date()].add("posts_count", 1)

        logger.info(
            "[linkedin] %s: %s total followers, %s posts since %s",
            organization_id,
            total_followers,
            len(posts),
            start_day,
        )
        return self._finalize(daily.values(), posts)

    async def _with_time_interval(
        self, key: str, base_url: str, headers: Dict[str, str], start_ms: int, end_ms: int, endpoint: str
    ) -> Optional[Dict[str, Any]]:
        async def _attempt(encoding: str) -> Any:
            return await self._get(
                f"{base_url}&{render_time_interval(encoding, start_ms, end_ms)}",
                headers=headers,
                endpoint=endpoint,
                expectation=ErrorExpectation.EXPECTED_FAILURE,
            )

        try:
            negotiated = await self.negotiator.negotiate(key, TIME_INTERVAL_ENCODINGS, _attempt)
        except TokenExpiredError:
            raise
        except SocialApiError as exc:
            logger.warning("[linkedin] %s unavailable: %s", endpoint, exc.message[:200])
            return None
        if negotiated is None:
            logger.warning("[linkedin] %s rejected every time interval encoding", endpoint)
            return None
        return negotiated.value or {}

    async def _follower_trend(
        self, organization_id: str, headers: Dict[str, str], start_ms: int, end_ms: int
    ) -> Optional[Tuple[Dict[date, int], int]]:
        page_urn = quote(f"urn:li:organizationalPage:{organization_id}", safe="")
        body = await self._with_time_interval(
            f"linkedin:{organization_id}:follower_trend_interval",
            f"{LINKEDIN_API_URL}/dmaOrganizationalPageEdgeAnalytics?q=trend"
            f"&organizationalPage={page_urn}&analyticsType=FOLLOWER",
            headers,
            start_ms,
            end_ms,
            "follower_trend",
        )
        if body is None:
            return None
        gains: Dict[date, int] = {}
        total_followers = 0
        for element in body.get("elements") or []:
            day = _range_start_date(element.get("timeIntervals") or {})
            if day is None:
                continue
            value = element.get("value") or {}
            edge = (value.get("typeSpecificValue") or {}).get("followerEdgeAnalyticsValue") or {}
            gains[day] = to_int(edge.get("organicValue")) + to_int(edge.get("sponsoredValue"))
            total = value.get("totalCount") or {}
            total_followers = max(total_followers, to_int(total.get("long", total.get("bigDecimal"))))
        return gains, total_followers

    async def _follower_count(self, organization_id: str, headers: Dict[str, str]) -> int:
        page_urn = quote(f"urn:li:organizationalPage:{organization_id}", safe="")
        body = await self._get(
            f"{LINKEDIN_API_URL}/dmaOrganizationalPageFollows?q=followee&followee={page_urn}"
            "&edgeType=MEMBER_FOLLOWS_ORGANIZATIONAL_PAGE&maxPaginationCount=1",
            headers=headers,
            endpoint="follower_count",
        )
        total = to_int(((body or {}).get("paging") or {}).get("total"))
        # Without full page access the total only counts the caller's own follow.
        return total if total > 1 else 0

    async def _content_trend(
        self, organization_id: str, headers: Dict[str, str], start_ms: int, end_ms: int
    ) -> Optional[Dict[date, Dict[str, float]]]:
        page_urn = quote(f"urn:li:organizationalPage:{organization_id}", safe="")
        body = await self._with_time_interval(
            f"linkedin:{organization_id}:content_trend_interval",
            f"{LINKEDIN_API_URL}/dmaOrganizationalPageContentAnalytics?q=trend"
            f"&sourceEntity={page_urn}&metricTypes={CONTENT_TREND_METRICS}",
            headers,
            start_ms,
            end_ms,
            "content_trend",
        )
        if body is None:
            return None
        trend: Dict[date, Dict[str, float]] = {}
        for element in body.get("elements") or []:
            metric = element.get("metric") or {}
            day = _range_start_date(metric.get("timeIntervals") or {})
            if day is None:
                continue
            counts = trend.setdefault(day, {})
            kind = str(element.get("type") or "")
            counts[kind] = counts.get(kind, 0.0) + _metric_count(metric.get("value") or {})
        return trend

    async def _posts(
        self, organization_id: str, headers: Dict[str, str], limit: int = MAX_POSTS
    ) -> List[PostMetric]:
        author = quote(f"urn:li:organization:{organization_id}", safe="")
        feed = await self._optional(
            "feed contents",
            lambda: self._get(
                f"{LINKEDIN_API_URL}/dmaFeedContentsExternal?q=postsByAuthor"
                f"&author=List({author})&maxPaginationCount={limit}",
                headers=headers,
                endpoint="feed_contents",
            ),
        )
        urns = [
            str(element.get("id") or element.get("contentUrn"))
            for element in (feed or {}).get("elements") or []
            if element.get("id") or element.get("contentUrn")
        ]
        if not urns:
            return []

        details = await self._post_details(urns, headers)
        social = await self._map_bounded(
            urns, lambda urn: self._social_metadata(urn, headers), fallback=lambda urn: {}, label="social metadata"
        )
        analytics = await self._map_bounded(
            urns, lambda urn: self._post_analytics(urn, headers), fallback=lambda urn: {}, label="post analytics"
        )
        return [
            self._to_post(urn, details.get(urn) or {}, meta, counts)
            for urn, meta, counts in zip(urns, social, analytics)
        ]

    async def _post_details(self, urns: Sequence[str], headers: Dict[str, str]) -> Dict[str, Dict[str, Any]]:
        details: Dict[str, Dict[str, Any]] = {}
        for offset in range(0, len(urns), POST_BATCH_SIZE):
            batch = urns[offset : offset + POST_BATCH_SIZE]
            ids = ",".join(quote(urn, safe="") for urn in batch)
            try:
                body = await self._get(
                    f"{LINKEDIN_API_URL}/dmaPosts?ids=List({ids})&viewContext=AUTHOR",
                    headers=headers,
                    endpoint="post_batch",
                )
            except TokenExpiredError:
                raise
            except SocialApiError as exc:
                logger.warning("[linkedin] batch post fetch failed, fetching one by one: %s", exc.message[:200])
                for urn in batch:
                    post = await self._optional(
                        "post detail",
                        lambda: self._get(
                            f"{LINKEDIN_API_URL}/dmaPosts/{quote(urn, safe='')}",
                            headers=headers,
                            endpoint="post_detail",
                        ),
                    )
                    if post:
                        details[urn] = post
                continue
            for urn, post in ((body or {}).get("results") or {}).items():
                details[str(urn)] = post
        return details

    async def _social_metadata(self, urn: str, headers: Dict[str, str]) -> Dict[str, int]:
        body = await self._get(
            f"{LINKEDIN_API_URL}/dmaSocialMetadata/{quote(urn, safe='')}",
            headers=headers,
            endpoint="social_metadata",
        )
        body = body or {}
        return {
            "reactions": to_int((body.get("reactionSummary") or {}).get("totalCount")),
            "comments": to_int((body.get("commentSummary") or {}).get("totalCount")),
            "reposts": to_int(body.get("shareCount")),
        }

    async def _post_analytics(self, urn: str, headers: Dict[str, str]) -> Dict[str, float]:
        body = await self._get(
            f"{LINKEDIN_API_URL}/dmaOrganizationalPageContentAnalytics?q=trend"
            f"&sourceEntity={quote(urn, safe='')}&metricTypes={POST_ANALYTICS_METRICS}",
            headers=headers,
            endpoint="post_analytics",
            expectation=ErrorExpectation.EXPECTED_FAILURE,
        )
        counts: Dict[str, float] = {}
        for element in (body or {}).get("elements") or []:
            kind = str(element.get("type") or "")
            counts[kind] = counts.get(kind, 0.0) + _metric_count((element.get("metric") or {}).get("value") or {})
        return counts

    def _to_post(
        self, urn: str, detail: Mapping[str, Any], meta: Mapping[str, int], analytics: Mapping[str, float]
    ) -> PostMetric:
        created = detail.get("publishedAt") or (detail.get("created") or {}).get("time") or detail.get("createdAt")
        reactions = meta.get("reactions", 0)
        comments = meta.get("comments", 0)
        reposts = meta.get("reposts", 0)
        clicks = to_int(analytics.get("CLICKS"))
        return PostMetric(
            external_post_id=urn,
            platform=self.platform,
            posted_at=parse_timestamp(created),
            caption=(detail.get("commentary") or "")[:280] or None,
            media_type=detect_linkedin_media_type(detail.get("content")),
            url=f"https://www.linkedin.com/feed/update/{urn}",
            metrics={
                "impressions": to_int(analytics.get("IMPRESSIONS")),
                "reach": to_int(analytics.get("UNIQUE_IMPRESSIONS")),
                "likes": reactions,
                "comments": comments,
                "shares": reposts,
                "clicks": clicks,
                "engagements": reactions + comments + reposts + clicks,
            },
            raw=dict(detail),
        )
