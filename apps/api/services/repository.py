"""Persistence helpers for synced metrics: upserts, account listing and sync logs."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Type

from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.social_account import AUTH_STATUS_ACTIVE, SocialAccount
from models.social_daily_metric import SocialDailyMetric
from models.social_post import SocialPost
from models.sync_log import SYNC_STATUS_RUNNING, SyncLog
from models.tenant import Tenant
from services.connectors.types import DAILY_METRIC_FIELDS, ConnectedAccount, DailyMetric, PostMetric
from services.crypto import encrypt_token


DAILY_METRIC_CONFLICT_KEY = ("tenant_id", "platform", "social_account_id", "date")
POST_CONFLICT_KEY = ("tenant_id", "platform", "external_post_id")
_IMMUTABLE_COLUMNS = ("id", "created_at")


def daily_metric_rows(account: SocialAccount, metrics: Sequence[DailyMetric]) -> List[Dict[str, Any]]:
    return [
        {
            "tenant_id": account.tenant_id,
            "platform": account.platform,
            "social_account_id": account.id,
            "date": metric.date,
            **{name: getattr(metric, name) for name in DAILY_METRIC_FIELDS},
            "raw_json": metric.raw,
        }
        for metric in metrics
    ]


def post_rows(account: SocialAccount, posts: Sequence[PostMetric]) -> List[Dict[str, Any]]:
    return [
        {
            "tenant_id": account.tenant_id,
            "platform": account.platform,
            "social_account_id": account.id,
            "external_post_id": post.external_post_id,
            "posted_at": post.posted_at,
            "caption": post.caption,
            "media_type": post.media_type,
            "url": post.url,
            "thumbnail_url": post.thumbnail_url,
            "metrics_json": dict(post.metrics),
            "raw_json": post.raw,
        }
        for post in posts
    ]


class MetricsRepository:
    """Thin repository over one ``AsyncSession``; callers own the commit."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _insert(self, model: Type[Any]):
        dialect = self.session.bind.dialect.name if self.session.bind is not None else "postgresql"
        if dialect == "sqlite":
            return sqlite_insert(model)
        return postgresql_insert(model)

    async def upsert(self, model: Type[Any], rows: Sequence[Dict[str, Any]], conflict_key: Sequence[str]) -> int:
        """Insert rows, updating every non-key column when the conflict key exists."""
        if not rows:
            return 0
        payload = [{"id": str(uuid.uuid4()), **row} for row in rows]
        stmt = self._insert(model).values(payload)
        excluded = set(conflict_key) | set(_IMMUTABLE_COLUMNS)
        updates = {name: stmt.excluded[name] for name in payload[0] if name not in excluded}
        if "updated_at" in model.__table__.c:
            updates["updated_at"] = datetime.now(timezone.utc)
        stmt = stmt.on_conflict_do_update(index_elements=list(conflict_key), set_=updates)
        await self.session.execute(stmt)
        return len(payload)

    async def upsert_daily_metrics(self, account: SocialAccount, metrics: Sequence[DailyMetric]) -> int:
        return await self.upsert(SocialDailyMetric, daily_metric_rows(account, metrics), DAILY_METRIC_CONFLICT_KEY)

    async def upsert_posts(self, account: SocialAccount, posts: Sequence[PostMetric]) -> int:
        return await self.upsert(SocialPost, post_rows(account, posts), POST_CONFLICT_KEY)

    async def list_active_accounts(
        self,
        tenant_id: Optional[str] = None,
        platform: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> List[SocialAccount]:
        query = (
            select(SocialAccount)
            .join(Tenant, Tenant.id == SocialAccount.tenant_id)
            .where(and_(SocialAccount.auth_status == AUTH_STATUS_ACTIVE, Tenant.is_active.is_(True)))
            .order_by(SocialAccount.platform, SocialAccount.created_at)
        )
        if tenant_id:
            query = query.where(SocialAccount.tenant_id == tenant_id)
        if platform:
            query = query.where(SocialAccount.platform == platform)
        if account_id:
            query = query.where(SocialAccount.id == account_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def latest_sync_at(self, tenant_id: str, platform: Optional[str] = None) -> Optional[datetime]:
        query = select(func.max(SocialAccount.last_sync_at)).where(SocialAccount.tenant_id == tenant_id)
        if platform:
            query = query.where(SocialAccount.platform == platform)
        latest = (await self.session.execute(query)).scalar_one_or_none()
        if latest is not None and latest.tzinfo is None:
            latest = latest.replace(tzinfo=timezone.utc)
        return latest

    async def latest_followers_before(self, account_id: str, day: date) -> Optional[int]:
        result = await self.session.execute(
            select(SocialDailyMetric.followers)
            .where(
                and_(
                    SocialDailyMetric.social_account_id == account_id,
                    SocialDailyMetric.date < day,
                    SocialDailyMetric.followers.is_not(None),
                )
            )
            .order_by(desc(SocialDailyMetric.date))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def start_sync_log(self, account: SocialAccount) -> SyncLog:
        log = SyncLog(
            tenant_id=account.tenant_id,
            social_account_id=account.id,
            platform=account.platform,
            status=SYNC_STATUS_RUNNING,
            rows_upserted=0,
            started_at=datetime.now(timezone.utc),
        )
        self.session.add(log)
        await self.session.flush()
        return log

    async def finish_sync_log(
        self, log_id: str, status: str, rows_upserted: int = 0, error_message: Optional[str] = None
    ) -> None:
        await self.session.execute(
            update(SyncLog)
            .where(SyncLog.id == log_id)
            .values(
                status=status,
                rows_upserted=rows_upserted,
                error_message=error_message[:2000] if error_message else None,
                finished_at=datetime.now(timezone.utc),
            )
        )

    async def mark_synced(self, account_id: str) -> None:
        await self.session.execute(
            update(SocialAccount)
            .where(SocialAccount.id == account_id)
            .values(last_sync_at=datetime.now(timezone.utc), last_error=None)
        )

    async def save_connected_account(self, tenant_id: str, connected: ConnectedAccount) -> SocialAccount:
        """Create or update the account row for an OAuth grant; reconnecting reactivates it."""
        result = await self.session.execute(
            select(SocialAccount).where(
                and_(
                    SocialAccount.tenant_id == tenant_id,
                    SocialAccount.platform == connected.platform,
                    SocialAccount.external_account_id == connected.external_account_id,
                )
            )
        )
        account = result.scalar_one_or_none()
        if account is None:
            account = SocialAccount(
                tenant_id=tenant_id,
                platform=connected.platform,
                external_account_id=connected.external_account_id,
            )
            self.session.add(account)
        grant = connected.grant
        account.account_name = connected.account_name or account.account_name
        account.access_token_encrypted = encrypt_token(grant.access_token)
        if grant.refresh_token:
            account.refresh_token_encrypted = encrypt_token(grant.refresh_token)
        account.token_expires_at = grant.expires_at
        account.scopes = grant.scopes
        account.auth_status = AUTH_STATUS_ACTIVE
        account.last_error = None
        await self.session.flush()
        return account
