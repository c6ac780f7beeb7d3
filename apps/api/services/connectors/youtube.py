"""YouTube Data + Analytics API connector.

Daily follower values are subscriber gains from YouTube Analytics; only the
row for today carries the channel's absolute subscriber count.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

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


logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
YOUTUBE_API_URL = "https://www.googleapis.com/youtube/v3"
YOUTUBE_ANALYTICS_URL = "https://youtubeanalytics.googleapis.com/v2"
YOUTUBE_SCOPES = (
    "https://www.googleapis.com/auth/youtube.readonly",
    "https://www.googleapis.com/auth/yt-analytics.readonly",
)
ANALYTICS_WINDOW_DAYS = 30
VIDEO_BATCH_SIZE = 50

ANALYTICS_METRIC_SETS = (
    "views,estimatedMinutesWatched,likes,comments,shares,subscribersGained,subscribersLost",
    "views,estimatedMinutesWatched,likes,comments,subscribersGained,subscribersLost",
    "views,likes,comments",
    "views",
)


class YouTubeConnector(BaseConnector):
    platform = "youtube"
    oauth_provider = "youtube"
    follower_series = FollowerSeries.GAINS_WITH_ANCHOR
    setup_url = "https://developers.google.com/youtube/registering_an_application"

    def is_configured(self) -> bool:
        return bool(settings.GOOGLE_CLIENT_ID and settings.GOOGLE_CLIENT_SECRET)

    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        self.ensure_configured()
        query = urlencode(
            {
                "client_id": settings.GOOGLE_CLIENT_ID,
                "redirect_uri": oauth_redirect_uri(self.oauth_provider),
                "response_type": "code",
                "scope": " ".join(YOUTUBE_SCOPES),
                "access_type": "offline",
                "prompt": "consent",
                "include_granted_scopes": "true",
                "state": state,
            }
        )
        return f"{GOOGLE_AUTHORIZE_URL}?{query}"

    @staticmethod
    def _headers(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> List[ConnectedAccount]:
        self.ensure_configured()
        body = await self._token_request(
            GOOGLE_TOKEN_URL,
            {
                "code": code,
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "redirect_uri": oauth_redirect_uri(self.oauth_provider),
                "grant_type": "authorization_code",
            },
            endpoint="oauth_token",
        )
        grant = TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_at=expires_at_from(body.get("expires_in")),
            scopes=body.get("scope"),
        )
        channels = await self._get(
            f"{YOUTUBE_API_URL}/channels",
            params={"part": "snippet,statistics", "mine": "true"},
            headers=self._headers(grant.access_token),
            endpoint="channels",
        )
        accounts = []
        for channel in (channels or {}).get("items") or []:
            snippet = channel.get("snippet") or {}
            accounts.append(
                ConnectedAccount(
                    platform="youtube",
                    external_account_id=str(channel["id"]),
                    account_name=snippet.get("title"),
                    grant=grant,
                    metadata={"custom_url": snippet.get("customUrl")},
                )
            )
        return accounts

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.ensure_configured()
        body = await self._token_request(
            GOOGLE_TOKEN_URL,
            {
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            endpoint="oauth_refresh",
        )
        # Google does not rotate refresh tokens.
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or refresh_token,
            expires_at=expires_at_from(body.get("expires_in")),
            scopes=body.get("scope"),
        )

    async def sync(self, params: SyncParams) -> SyncResult:
        self._require_token(params)
        headers = self._headers(params.access_token)
        channel_id = params.external_account_id
        today = self.today()

        channels = await self._get(
            f"{YOUTUBE_API_URL}/channels",
            params={"part": "statistics,snippet,contentDetails", "id": channel_id},
            headers=headers,
            endpoint="channels",
        )
        items = (channels or {}).get("items") or []
        channel = items[0] if items else {}
        statistics = channel.get("statistics") or {}
        uploads = ((channel.get("contentDetails") or {}).get("relatedPlaylists") or {}).get("uploads")

        video_ids: List[str] = []
        if uploads:

            async def _fetch(cursor: Optional[str]) -> Any:
                query: Dict[str, Any] = {"part": "contentDetails", "playlistId": uploads, "maxResults": 50}
                if cursor:
                    query["pageToken"] = cursor
                return await self._get(
                    f"{YOUTUBE_API_URL}/playlistItems", params=query, headers=headers, endpoint="playlist_items"
                )

            def _extract(page: Any) -> Tuple[List[str], Optional[str]]:
                page = page or {}
                ids = [
                    str((item.get("contentDetails") or {}).get("videoId"))
                    for item in page.get("items") or []
                    if (item.get("contentDetails") or {}).get("videoId")
                ]
                return ids, page.get("nextPageToken")

            video_ids = await self._optional("uploads", lambda: self._paginate(_fetch, _extract, label="uploads")) or []

        posts: List[PostMetric] = []
        for offset in range(0, len(video_ids), VIDEO_BATCH_SIZE):
            batch = video_ids[offset : offset + VIDEO_BATCH_SIZE]
            videos = await self._optional(
                "video details",
                lambda: self._get(
                    f"{YOUTUBE_API_URL}/videos",
                    params={"part": "snippet,statistics", "id": ",".join(batch)},
                    headers=headers,
                    endpoint="videos",
                ),
            )
            posts.extend(
                self._to_post(video) for video in (videos or {}).get("items") or [] if video.get("id")
            )

        daily = await self._optional("analytics", lambda: self._analytics(channel_id, headers, today)) or {}
        today_row = daily.setdefault(today, DailyMetric(date=today))
        today_row.raw = {**(today_row.raw or {}), "channel_statistics": statistics}
        if statistics.get("subscriberCount") is not None:
            today_row.followers = to_int(statistics.get("subscriberCount"))
        if statistics.get("videoCount") is not None:
            today_row.posts_count = to_int(statistics.get("videoCount"))
        if len(daily) == 1 and statistics.get("viewCount") is not None:
            today_row.views = to_int(statistics.get("viewCount"))

        logger.info("[youtube] %s: %s daily rows, %s videos", channel_id, len(daily), len(posts))
        return self._finalize(daily.values(), posts)

    async def _analytics(self, channel_id: str, headers: Dict[str, str], today: date) -> Dict[date, DailyMetric]:
        start = today - timedelta(days=ANALYTICS_WINDOW_DAYS)

        async def _attempt(metrics: str) -> Any:
            return await self._get(
                f"{YOUTUBE_ANALYTICS_URL}/reports",
                params={
                    "ids": "channel==MINE",
                    "startDate": start.isoformat(),
                    "endDate": today.isoformat(),
                    "metrics": metrics,
                    "dimensions": "day",
                    "sort": "day",
                },
                headers=headers,
                endpoint="analytics_reports",
                expectation=ErrorExpectation.EXPECTED_FAILURE,
            )

        negotiated = await self.negotiator.negotiate(
            f"youtube:{channel_id}:analytics_metrics", ANALYTICS_METRIC_SETS, _attempt
        )
        if negotiated is None:
            return {}
        return self.map_report_rows(negotiated.value or {})

    @staticmethod
    def map_report_rows(report: Mapping[str, Any]) -> Dict[date, DailyMetric]:
        headers = [str(column.get("name")) for column in report.get("columnHeaders") or []]
        daily: Dict[date, DailyMetric] = {}
        for values in report.get("rows") or []:
            record = dict(zip(headers, values))
            parsed = parse_timestamp(record.get("day"))
            if parsed is None:
                continue
            row = DailyMetric(date=parsed.date(), raw=record)
            if "views" in record:
                row.views = to_int(record["views"])
            if "estimatedMinutesWatched" in record:
                row.watch_time = float(record["estimatedMinutesWatched"] or 0)
            for field in ("likes", "comments", "shares"):
                if field in record:
                    setattr(row, field, to_int(record[field]))
            if "subscribersGained" in record:
                row.followers = to_int(record["subscribersGained"]) - to_int(record.get("subscribersLost"))
            parts = [row.likes, row.comments, row.shares]
            if any(part is not None for part in parts):
                row.engagements = sum(part or 0 for part in parts)
            daily[row.date] = row
        return daily

    def _to_post(self, video: Mapping[str, Any]) -> PostMetric:
        snippet = video.get("snippet") or {}
        statistics = video.get("statistics") or {}
        likes = to_int(statistics.get("likeCount"))
        comments = to_int(statistics.get("commentCount"))
        thumbnails = snippet.get("thumbnails") or {}
        thumbnail = (thumbnails.get("high") or thumbnails.get("medium") or thumbnails.get("default") or {}).get("url")
        return PostMetric(
            external_post_id=str(video["id"]),
            platform=self.platform,
            posted_at=parse_timestamp(snippet.get("publishedAt")),
            caption=(snippet.get("title") or "")[:500] or None,
            media_type="video",
            url=f"https://www.youtube.com/watch?v={video['id']}",
            thumbnail_url=thumbnail,
            metrics={
                "views": to_int(statistics.get("viewCount")),
                "likes": likes,
                "comments": comments,
                "engagements": likes + comments,
            },
            raw=dict(video),
        )
