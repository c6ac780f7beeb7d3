"""
Tenant metrics router: top posts, follower trend, sync status and on-demand refresh.
"""

import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import and_, desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.social_account import SocialAccount
from models.social_daily_metric import SocialDailyMetric
from models.social_post import SocialPost
from models.sync_log import SyncLog
from models.tenant import Tenant
from routers.auth_scope import AuthContext, get_auth_context
from services.connectors.types import PLATFORMS
from services.repository import MetricsRepository
from services.sync import run_tenant_sync
from services.top_posts import RankablePost, post_visibility, select_top_posts

router = APIRouter()

REFRESH_COOLDOWN_MINUTES = 10


class TopPostResponse(BaseModel):
    id: str
    platform: str
    social_account_id: str
    external_post_id: str
    posted_at: Optional[datetime] = None
    caption: Optional[str] = None
    media_type: Optional[str] = None
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    visibility_metric: str
    visibility: float
    engagements: float
    metrics: Dict[str, Any] = {}


class FollowerPoint(BaseModel):
    date: date
    followers: int


class FollowerSeriesResponse(BaseModel):
    social_account_id: str
    platform: str
    account_name: Optional[str] = None
    points: List[FollowerPoint]


class AccountSyncStatus(BaseModel):
    social_account_id: str
    platform: str
    account_name: Optional[str] = None
    auth_status: str
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_run_status: Optional[str] = None
    last_run_started_at: Optional[datetime] = None
    last_run_finished_at: Optional[datetime] = None
    last_run_rows_upserted: Optional[int] = None


async def _require_tenant(db: AsyncSession, tenant_id: str) -> Tenant:
    tenant = await db.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail="Tenant not found.")
    return tenant


def _validate_platform(platform: Optional[str]) -> Optional[str]:
    if platform is not None and platform not in PLATFORMS:
        raise HTTPException(status_code=400, detail=f"Unknown platform: {platform}")
    return platform


@router.get("/{tenant_id}/top-posts", response_model=List[TopPostResponse])
async def get_top_posts(
    tenant_id: str,
    limit: int = Query(10, ge=1, le=100),
    platform: Optional[str] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Best-performing posts ranked by visibility, then engagements."""
    await _require_tenant(db, tenant_id)
    query = select(SocialPost).where(SocialPost.tenant_id == tenant_id)
    if _validate_platform(platform):
        query = query.where(SocialPost.platform == platform)
    result = await db.execute(query)
    candidates = [
        RankablePost(
            platform=post.platform,
            external_post_id=post.external_post_id,
            fallback_id=post.id,
            media_type=post.media_type,
            metrics=dict(post.metrics_json or {}),
            created_at=post.posted_at,
            payload=post,
        )
        for post in result.scalars().all()
    ]

    response = []
    for ranked in select_top_posts(candidates, limit):
        post: SocialPost = ranked.payload
        label, value = post_visibility(ranked.metrics, ranked.media_type)
        response.append(
            TopPostResponse(
                id=post.id,
                platform=post.platform,
                social_account_id=post.social_account_id,
                external_post_id=post.external_post_id,
                posted_at=post.posted_at,
                caption=post.caption,
                media_type=post.media_type,
                url=post.url,
                thumbnail_url=post.thumbnail_url,
                visibility_metric=label,
                visibility=value,
                engagements=ranked.engagements,
                metrics=ranked.metrics,
            )
        )
    return response


@router.get("/{tenant_id}/follower-trend", response_model=List[FollowerSeriesResponse])
async def get_follower_trend(
    tenant_id: str,
    platform: Optional[str] = None,
    social_account_id: Optional[str] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Stored cumulative follower counts, one series per account."""
    await _require_tenant(db, tenant_id)
    conditions = [SocialDailyMetric.tenant_id == tenant_id, SocialDailyMetric.followers.is_not(None)]
    if _validate_platform(platform):
        conditions.append(SocialDailyMetric.platform == platform)
    if social_account_id:
        conditions.append(SocialDailyMetric.social_account_id == social_account_id)

    result = await db.execute(
        select(SocialDailyMetric, SocialAccount.account_name)
        .join(SocialAccount, SocialAccount.id == SocialDailyMetric.social_account_id)
        .where(and_(*conditions))
        .order_by(SocialDailyMetric.social_account_id, SocialDailyMetric.date)
    )

    series: Dict[str, FollowerSeriesResponse] = {}
    for metric, account_name in result.all():
        entry = series.get(metric.social_account_id)
        if entry is None:
            entry = FollowerSeriesResponse(
                social_account_id=metric.social_account_id,
                platform=metric.platform,
                account_name=account_name,
                points=[],
            )
            series[metric.social_account_id] = entry
        entry.points.append(FollowerPoint(date=metric.date, followers=metric.followers))
    return list(series.values())


@router.get("/{tenant_id}/sync-status", response_model=List[AccountSyncStatus])
async def get_sync_status(
    tenant_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Connection health and the most recent sync run for every account of a tenant."""
    await _require_tenant(db, tenant_id)
    accounts_result = await db.execute(
        select(SocialAccount)
        .where(SocialAccount.tenant_id == tenant_id)
        .order_by(SocialAccount.platform, SocialAccount.created_at)
    )
    accounts = accounts_result.scalars().all()

    logs_result = await db.execute(
        select(SyncLog).where(SyncLog.tenant_id == tenant_id).order_by(desc(SyncLog.started_at))
    )
    latest_logs: Dict[str, SyncLog] = {}
    for log in logs_result.scalars().all():
        latest_logs.setdefault(log.social_account_id, log)

    statuses = []
    for account in accounts:
        log = latest_logs.get(account.id)
        statuses.append(
            AccountSyncStatus(
                social_account_id=account.id,
                platform=account.platform,
                account_name=account.account_name,
                auth_status=account.auth_status,
                last_sync_at=account.last_sync_at,
                last_error=account.last_error,
                last_run_status=log.status if log else None,
                last_run_started_at=log.started_at if log else None,
                last_run_finished_at=log.finished_at if log else None,
                last_run_rows_upserted=log.rows_upserted if log else None,
            )
        )
    return statuses


@router.post("/{tenant_id}/refresh")
async def refresh_tenant(
    tenant_id: str,
    platform: Optional[str] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Sync a tenant now, at most once per cooldown window."""
    await _require_tenant(db, tenant_id)
    _validate_platform(platform)

    last_sync = await MetricsRepository(db).latest_sync_at(tenant_id, platform)
    if last_sync is not None:
        remaining = timedelta(minutes=REFRESH_COOLDOWN_MINUTES) - (datetime.now(timezone.utc) - last_sync)
        if remaining > timedelta(0):
            minutes = math.ceil(remaining.total_seconds() / 60)
            raise HTTPException(
                status_code=429,
                detail=f"A sync ran less than {REFRESH_COOLDOWN_MINUTES} minutes ago. Try again in {minutes} min.",
                headers={"Retry-After": str(math.ceil(remaining.total_seconds()))},
            )

    summary = await run_tenant_sync(tenant_id, platform=platform)
    return {"tenant_id": tenant_id, "platform": platform, **summary}
