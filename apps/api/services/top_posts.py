"""Post deduplication and deterministic top-post ranking over canonical posts."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from services.connectors.base import coerce_metric


VIEW_METRIC_KEYS = ("views", "media_views", "plays", "video_views")

MetricRecord = Union[Mapping[str, Any], str, None]


def _normalize_metrics(metrics: MetricRecord) -> Union[Dict[str, Any], str]:
    if isinstance(metrics, str):
        try:
            parsed = json.loads(metrics)
        except ValueError:
            return metrics
        return parsed if isinstance(parsed, dict) else metrics
    return dict(metrics or {})


def _first_present(metrics: Mapping[str, Any], keys: Iterable[str]) -> float:
    for key in keys:
        if metrics.get(key) is not None:
            return coerce_metric(metrics[key])
    return 0.0


def _is_reel(media_type: Optional[str]) -> bool:
    return "reel" in (media_type or "").strip().lower()


def post_visibility(metrics: MetricRecord, media_type: Optional[str] = None) -> Tuple[str, float]:
    """Return ``(label, value)`` of the "how many people saw this" metric.

    Reels with views rank by views; everything else by impressions, then
    views, then reach.
    """
    normalized = _normalize_metrics(metrics)
    if isinstance(normalized, str):
        return "impressions", coerce_metric(normalized)
    impressions = coerce_metric(normalized.get("impressions"))
    views = _first_present(normalized, VIEW_METRIC_KEYS)
    if _is_reel(media_type) and views > 0:
        return "views", views
    if impressions > 0:
        return "impressions", impressions
    if views > 0:
        return "views", views
    return "reach", coerce_metric(normalized.get("reach"))


def post_engagements(metrics: MetricRecord) -> float:
    normalized = _normalize_metrics(metrics)
    if isinstance(normalized, str):
        return 0.0
    if normalized.get("engagements") is not None:
        return coerce_metric(normalized["engagements"])
    return sum(coerce_metric(normalized.get(name)) for name in ("likes", "comments", "shares", "saves"))


@dataclass
class RankablePost:
    platform: str
    external_post_id: Optional[str]
    fallback_id: str
    media_type: Optional[str] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    payload: Any = None

    @property
    def key(self) -> str:
        return f"{self.platform}:{self.external_post_id or self.fallback_id}"

    @property
    def visibility(self) -> float:
        return post_visibility(self.metrics, self.media_type)[1]

    @property
    def engagements(self) -> float:
        return post_engagements(self.metrics)


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _created(post: RankablePost) -> datetime:
    if post.created_at is None:
        return _EPOCH
    return post.created_at if post.created_at.tzinfo else post.created_at.replace(tzinfo=timezone.utc)


def _prefer(candidate: RankablePost, current: RankablePost) -> bool:
    return (candidate.visibility, candidate.engagements, _created(candidate)) > (
        current.visibility,
        current.engagements,
        _created(current),
    )


def dedupe_posts(posts: Iterable[RankablePost]) -> List[RankablePost]:
    """Keep one record per ``platform:external id``, preferring the most complete metrics."""
    by_key: Dict[str, RankablePost] = {}
    for post in posts:
        current = by_key.get(post.key)
        if current is None or _prefer(post, current):
            by_key[post.key] = post
    return list(by_key.values())


def select_top_posts(posts: Iterable[RankablePost], limit: int) -> List[RankablePost]:
    """Dedupe, then rank by visibility and engagements with the key as a stable tiebreak.

    Posts without any visibility or engagement are only shown when nothing
    else has metrics.
    """
    unique = dedupe_posts(posts)
    ranked = sorted(unique, key=lambda post: (-post.visibility, -post.engagements, post.key))
    with_metrics = [post for post in ranked if post.visibility > 0 or post.engagements > 0]
    display = with_metrics or ranked
    return display[: max(int(limit), 0)]
