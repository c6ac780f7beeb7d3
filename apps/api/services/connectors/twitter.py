"""X (Twitter) API v2 connector (OAuth 2.0 with PKCE)."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import httpx

from config import oauth_redirect_uri, settings
from services.connectors.base import BaseConnector, expires_at_from, parse_timestamp, to_int
from services.connectors.types import ConnectedAccount, DailyMetric, PostMetric, SyncParams, SyncResult, TokenGrant
from services.platforms.api_client import ErrorExpectation


logger = logging.getLogger(__name__)

TWITTER_AUTHORIZE_URL = "https://twitter.com/i/oauth2/authorize"
TWITTER_TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
TWITTER_API_URL = "https://api.twitter.com/2"
TWITTER_SCOPES = ("tweet.read", "users.read", "offline.access")
TWEETS_PAGE_SIZE = 100

# non_public_metrics needs user context on the author's own tweets.
TWEET_FIELD_SETS = (
    "created_at,public_metrics,non_public_metrics,attachments",
    "created_at,public_metrics,attachments",
)


class TwitterConnector(BaseConnector):
    platform = "twitter"
    oauth_provider = "twitter"
    uses_pkce = True
    setup_url = "https://developer.x.com/en/docs/authentication/oauth-2-0/authorization-code"

    def is_configured(self) -> bool:
        return bool(settings.TWITTER_CLIENT_ID and settings.TWITTER_CLIENT_SECRET)

    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        self.ensure_configured()
        if not code_challenge:
            raise ValueError("Twitter authorization requires a PKCE code challenge")
        query = urlencode(
            {
                "response_type": "code",
                "client_id": settings.TWITTER_CLIENT_ID,
                "redirect_uri": oauth_redirect_uri(self.oauth_provider),
                "scope": " ".join(TWITTER_SCOPES),
                "state": state,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
            }
        )
        return f"{TWITTER_AUTHORIZE_URL}?{query}"

    @staticmethod
    def _client_auth() -> httpx.BasicAuth:
        return httpx.BasicAuth(settings.TWITTER_CLIENT_ID, settings.TWITTER_CLIENT_SECRET)

    @staticmethod
    def _grant(body: Mapping[str, Any], previous_refresh_token: Optional[str] = None) -> TokenGrant:
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or previous_refresh_token,
            expires_at=expires_at_from(body.get("expires_in")),
            scopes=body.get("scope"),
        )

    @staticmethod
    def _headers(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> List[ConnectedAccount]:
        self.ensure_configured()
        if not code_verifier:
            raise ValueError("Twitter code exchange requires the PKCE code verifier")
        body = await self._token_request(
            TWITTER_TOKEN_URL,
            {
                "code": code,
                "grant_type": "authorization_code",
                "client_id": settings.TWITTER_CLIENT_ID,
                "redirect_uri": oauth_redirect_uri(self.oauth_provider),
                "code_verifier": code_verifier,
            },
            endpoint="oauth_token",
            auth=self._client_auth(),
        )
        grant = self._grant(body)
        me = await self._get(
            f"{TWITTER_API_URL}/users/me",
            params={"user.fields": "profile_image_url,public_metrics"},
            headers=self._headers(grant.access_token),
            endpoint="users_me",
        )
        user = (me or {}).get("data") or {}
        return [
            ConnectedAccount(
                platform="twitter",
                external_account_id=str(user.get("id") or ""),
                account_name=user.get("username") or user.get("name"),
                grant=grant,
                metadata={"profile_image_url": user.get("profile_image_url")},
            )
        ]

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.ensure_configured()
        body = await self._token_request(
            TWITTER_TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": settings.TWITTER_CLIENT_ID,
            },
            endpoint="oauth_refresh",
            auth=self._client_auth(),
        )
        return self._grant(body, previous_refresh_token=refresh_token)

    async def sync(self, params: SyncParams) -> SyncResult:
        self._require_token(params)
        headers = self._headers(params.access_token)
        user_id = params.external_account_id
        today = self.today()

        profile = await self._get(
            f"{TWITTER_API_URL}/users/{user_id}",
            params={"user.fields": "public_metrics,username"},
            headers=headers,
            endpoint="users",
        )
        user = (profile or {}).get("data") or {}
        public_metrics = user.get("public_metrics") or {}
        username = user.get("username") or user_id

        def _query(tweet_fields: str, cursor: Optional[str]) -> Dict[str, Any]:
            query: Dict[str, Any] = {
                "max_results": TWEETS_PAGE_SIZE,
                "tweet.fields": tweet_fields,
                "expansions": "attachments.media_keys",
                "media.fields": "type,url,preview_image_url",
            }
            if cursor:
                query["pagination_token"] = cursor
            return query

        async def _first_page(tweet_fields: str) -> Any:
            return await self._get(
                f"{TWITTER_API_URL}/users/{user_id}/tweets",
                params=_query(tweet_fields, None),
                headers=headers,
                endpoint="tweets",
                expectation=ErrorExpectation.EXPECTED_FAILURE,
            )

        first = await self.negotiator.negotiate(f"twitter:{user_id}:tweet_fields", TWEET_FIELD_SETS, _first_page)
        media_by_key: Dict[str, Dict[str, Any]] = {}

        async def _fetch(cursor: Optional[str]) -> Any:
            if cursor is None:
                return first.value
            return await self._get(
                f"{TWITTER_API_URL}/users/{user_id}/tweets",
                params=_query(first.variant, cursor),
                headers=headers,
                endpoint="tweets",
            )

        def _extract(page: Any) -> Tuple[List[Dict[str, Any]], Optional[str]]:
            page = page or {}
            for media in (page.get("includes") or {}).get("media") or []:
                media_by_key[str(media.get("media_key"))] = media
            return list(page.get("data") or []), (page.get("meta") or {}).get("next_token")

        tweets: List[Dict[str, Any]] = []
        if first is not None:
            tweets = await self._paginate(_fetch, _extract, label="tweets")
        posts = [self._to_post(tweet, username, media_by_key) for tweet in tweets if tweet.get("id")]

        daily: Dict[date, DailyMetric] = {}
        for post in posts:
            if post.posted_at is None:
                continue
            day = post.posted_at.date()
            row = daily.setdefault(day, DailyMetric(date=day))
            row.add("posts_count", 1)
            row.add("likes", post.metrics.get("likes"))
            row.add("comments", post.metrics.get("replies"))
            row.add("shares", post.metrics.get("retweets", 0) + post.metrics.get("quotes", 0))
            row.add("impressions", post.metrics.get("impressions"))
            row.add("engagements", post.metrics.get("engagements"))
        today_row = daily.setdefault(today, DailyMetric(date=today))
        if public_metrics.get("followers_count") is not None:
            today_row.followers = to_int(public_metrics.get("followers_count"))
        today_row.raw = {**(today_row.raw or {}), "public_metrics": public_metrics}

        logger.info("[twitter] %s: %s tweets", user_id, len(posts))
        return self._finalize(daily.values(), posts)

    @staticmethod
    def media_type_for(tweet: Mapping[str, Any], media_by_key: Mapping[str, Mapping[str, Any]]) -> str:
        keys = (tweet.get("attachments") or {}).get("media_keys") or []
        if not keys:
            return "text"
        if len(keys) > 1:
            return "carousel"
        media_type = str((media_by_key.get(str(keys[0])) or {}).get("type") or "")
        return "video" if media_type in ("video", "animated_gif") else "image"

    def _to_post(
        self, tweet: Mapping[str, Any], username: str, media_by_key: Mapping[str, Mapping[str, Any]]
    ) -> PostMetric:
        public = tweet.get("public_metrics") or {}
        private = tweet.get("non_public_metrics") or {}
        likes = to_int(public.get("like_count"))
        retweets = to_int(public.get("retweet_count"))
        replies = to_int(public.get("reply_count"))
        quotes = to_int(public.get("quote_count"))
        impressions = to_int(public.get("impression_count") or private.get("impression_count"))
        keys = (tweet.get("attachments") or {}).get("media_keys") or []
        first_media = media_by_key.get(str(keys[0])) if keys else None
        return PostMetric(
            external_post_id=str(tweet["id"]),
            platform=self.platform,
            posted_at=parse_timestamp(tweet.get("created_at")),
            caption=(tweet.get("text") or "")[:500] or None,
            media_type=self.media_type_for(tweet, media_by_key),
            url=f"https://twitter.com/{username}/status/{tweet['id']}",
            thumbnail_url=(first_media or {}).get("url") or (first_media or {}).get("preview_image_url"),
            metrics={
                "likes": likes,
                "retweets": retweets,
                "replies": replies,
                "quotes": quotes,
                "impressions": impressions,
                "engagements": likes + retweets + replies + quotes,
            },
            raw=dict(tweet),
        )
