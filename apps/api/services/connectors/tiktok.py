"""TikTok Display API connector (OAuth 2.0 with PKCE)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

from config import oauth_redirect_uri, settings
from services.connectors.base import BaseConnector, expires_at_from, parse_timestamp, to_int
from services.connectors.types import ConnectedAccount, DailyMetric, PostMetric, SyncParams, SyncResult, TokenGrant
from services.platforms.api_client import ErrorExpectation


logger = logging.getLogger(__name__)

TIKTOK_AUTHORIZE_URL = "https://www.tiktok.com/v2/auth/authorize/"
TIKTOK_TOKEN_URL = "https://open.tiktokapis.com/v2/oauth/token/"
TIKTOK_API_URL = "https://open.tiktokapis.com/v2"
TIKTOK_SCOPES = ("user.info.basic", "user.info.profile", "user.info.stats", "video.list")

# user.info.stats may not be granted; basic fields always are.
USER_INFO_FIELD_SETS = (
    "open_id,display_name,avatar_url,follower_count,following_count,likes_count,video_count",
    "open_id,display_name,avatar_url",
)
VIDEO_FIELDS = "id,title,cover_image_url,share_url,create_time,like_count,comment_count,share_count,view_count"
VIDEO_PAGE_SIZE = 20


class TikTokConnector(BaseConnector):
    platform = "tiktok"
    oauth_provider = "tiktok"
    uses_pkce = True
    setup_url = "https://developers.tiktok.com/doc/login-kit-web"

    def is_configured(self) -> bool:
        return bool(settings.TIKTOK_CLIENT_KEY and settings.TIKTOK_CLIENT_SECRET)

    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        self.ensure_configured()
        if not code_challenge:
            raise ValueError("TikTok authorization requires a PKCE code challenge")
        query = urlencode(
            {
                "client_key": settings.TIKTOK_CLIENT_KEY,
                "scope": ",".join(TIKTOK_SCOPES),
                "response_type": "code",
                "redirect_uri": oauth_redirect_uri(self.oauth_provider),
                "state": state,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
            }
        )
        return f"{TIKTOK_AUTHORIZE_URL}?{query}"

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
        if not code_verifier:
            raise ValueError("TikTok code exchange requires the PKCE code verifier")
        body = await self._token_request(
            TIKTOK_TOKEN_URL,
            {
                "client_key": settings.TIKTOK_CLIENT_KEY,
                "client_secret": settings.TIKTOK_CLIENT_SECRET,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": oauth_redirect_uri(self.oauth_provider),
                "code_verifier": code_verifier,
            },
            endpoint="oauth_token",
        )
        grant = self._grant(body)
        open_id = str(body.get("open_id") or "")
        user = await self._optional("user profile", lambda: self._user_info(open_id, grant.access_token))
        if not open_id and user:
            open_id = str(user.get("open_id") or "")
        return [
            ConnectedAccount(
                platform="tiktok",
                external_account_id=open_id,
                account_name=(user or {}).get("display_name"),
                grant=grant,
                metadata={"avatar_url": (user or {}).get("avatar_url")},
            )
        ]

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.ensure_configured()
        body = await self._token_request(
            TIKTOK_TOKEN_URL,
            {
                "client_key": settings.TIKTOK_CLIENT_KEY,
                "client_secret": settings.TIKTOK_CLIENT_SECRET,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            endpoint="oauth_refresh",
        )
        return self._grant(body, previous_refresh_token=refresh_token)

    @staticmethod
    def _auth_headers(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def _user_info(self, account_key: str, token: str) -> Dict[str, Any]:
        async def _attempt(fields: str) -> Any:
            return await self._get(
                f"{TIKTOK_API_URL}/user/info/",
                params={"fields": fields},
                headers=self._auth_headers(token),
                endpoint="user_info",
                expectation=ErrorExpectation.EXPECTED_FAILURE,
            )

        negotiated = await self.negotiator.negotiate(f"tiktok:{account_key}:user_info", USER_INFO_FIELD_SETS, _attempt)
        if negotiated is None:
            return {}
        return ((negotiated.value or {}).get("data") or {}).get("user") or {}

    async def sync(self, params: SyncParams) -> SyncResult:
        self._require_token(params)
        token = params.access_token
        today = self.today()

        user = await self._user_info(params.external_account_id, token)

        async def _fetch(cursor: Optional[str]) -> Any:
            payload: Dict[str, Any] = {"max_count": VIDEO_PAGE_SIZE}
            if cursor:
                payload["cursor"] = int(cursor)
            return await self.executor.request(
                self.platform,
                f"{TIKTOK_API_URL}/video/list/",
                method="POST",
                params={"fields": VIDEO_FIELDS},
                json=payload,
                headers=self._auth_headers(token),
                endpoint="video_list",
            )

        def _extract(page: Any) -> Tuple[List[Dict[str, Any]], Optional[str]]:
            data = (page or {}).get("data") or {}
            cursor = data.get("cursor")
            next_cursor = str(cursor) if data.get("has_more") and cursor is not None else None
            return list(data.get("videos") or []), next_cursor

        videos = await self._optional("video list", lambda: self._paginate(_fetch, _extract, label="videos"))
        posts = [self._to_post(video) for video in videos or [] if video.get("id")]

        total_views = sum(post.metrics.get("views", 0) for post in posts)
        total_engagements = sum(post.metrics.get("engagements", 0) for post in posts)
        row = DailyMetric(
            date=today,
            views=int(total_views) if posts else None,
            engagements=int(total_engagements) if posts else None,
            raw={"user": user},
        )
        if "follower_count" in user:
            row.followers = to_int(user.get("follower_count"))
        if "likes_count" in user:
            row.likes = to_int(user.get("likes_count"))
        if "video_count" in user:
            row.posts_count = to_int(user.get("video_count"))
        elif posts:
            row.posts_count = len(posts)

        logger.info("[tiktok] %s: %s videos", params.external_account_id, len(posts))
        return self._finalize([row], posts)

    def _to_post(self, video: Mapping[str, Any]) -> PostMetric:
        likes = to_int(video.get("like_count"))
        comments = to_int(video.get("comment_count"))
        shares = to_int(video.get("share_count"))
        views = to_int(video.get("view_count"))
        return PostMetric(
            external_post_id=str(video["id"]),
            platform=self.platform,
            posted_at=parse_timestamp(video.get("create_time")),
            caption=(video.get("title") or "")[:500] or None,
            media_type="video",
            url=video.get("share_url"),
            thumbnail_url=video.get("cover_image_url"),
            metrics={
                "views": views,
                "likes": likes,
                "comments": comments,
                "shares": shares,
                "engagements": likes + comments + shares,
            },
            raw=dict(video),
        )
