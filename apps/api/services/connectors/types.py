"""Canonical records and contracts shared by every platform connector."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple


PlatformKey = Literal["instagram", "facebook", "tiktok", "youtube", "twitter", "linkedin"]
OAuthProviderKey = Literal["meta", "tiktok", "youtube", "twitter", "linkedin"]

PLATFORMS: Tuple[str, ...] = ("instagram", "facebook", "tiktok", "youtube", "twitter", "linkedin")
OAUTH_PROVIDERS: Tuple[str, ...] = ("meta", "tiktok", "youtube", "twitter", "linkedin")

DAILY_METRIC_FIELDS: Tuple[str, ...] = (
    "followers",
    "impressions",
    "reach",
    "engagements",
    "likes",
    "comments",
    "shares",
    "saves",
    "views",
    "watch_time",
    "posts_count",
)


class ConnectorUnavailableError(RuntimeError):
    """Raised when a provider's OAuth client credentials are not configured."""


class RefreshMode(str, Enum):
    REFRESH_TOKEN = "refresh_token"
    # Long-lived page tokens are checked with an introspection call instead.
    VALIDATE = "validate"


class FollowerSeries(str, Enum):
    ABSOLUTE = "absolute"
    # Daily gains, with the true total only on the most recent day.
    GAINS_WITH_ANCHOR = "gains_with_anchor"


@dataclass
class DailyMetric:
    date: date
    followers: Optional[int] = None
    impressions: Optional[int] = None
    reach: Optional[int] = None
    engagements: Optional[int] = None
    likes: Optional[int] = None
    comments: Optional[int] = None
    shares: Optional[int] = None
    saves: Optional[int] = None
    views: Optional[int] = None
    watch_time: Optional[float] = None
    posts_count: Optional[int] = None
    raw: Optional[Dict[str, Any]] = None

    def add(self, name: str, value: Optional[float]) -> None:
        """Accumulate ``value`` into a metric, leaving it unset when nothing was reported."""
        if value is None:
            return
        current = getattr(self, name)
        total = (current or 0) + value
        setattr(self, name, total if name == "watch_time" else int(total))

    def metrics(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in DAILY_METRIC_FIELDS}


@dataclass
class PostMetric:
    external_post_id: str
    platform: str
    posted_at: Optional[datetime] = None
    caption: Optional[str] = None
    media_type: Optional[str] = None
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    metrics: Dict[str, float] = field(default_factory=dict)
    raw: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class SyncParams:
    tenant_id: str
    social_account_id: str
    external_account_id: str
    access_token: str
    refresh_token: Optional[str] = None


@dataclass
class SyncResult:
    daily_metrics: List[DailyMetric] = field(default_factory=list)
    posts: List[PostMetric] = field(default_factory=list)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: Optional[str] = None


@dataclass(frozen=True)
class ConnectedAccount:
    """An account discovered during the OAuth code exchange."""

    platform: PlatformKey
    external_account_id: str
    account_name: Optional[str]
    grant: TokenGrant
    metadata: Dict[str, Any] = field(default_factory=dict)
