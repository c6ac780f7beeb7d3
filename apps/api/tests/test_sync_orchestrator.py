from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select

from conftest import create_account, create_tenant
from models.social_account import SocialAccount
from models.social_daily_metric import SocialDailyMetric
from models.social_post import SocialPost
from models.sync_log import SyncLog
from services.connectors.types import DailyMetric, FollowerSeries, PostMetric, SyncResult
from services.platforms.errors import SocialApiError, TokenExpiredError
from services.platforms.token_vault import TokenVault
from services.repository import MetricsRepository
from services.sync import SyncOrchestrator, run_backfill, run_tenant_sync


DAY = date(2026, 10, 17)


class _FakeConnector:
    def __init__(
        self,
        platform,
        failing=(),
        expired_once=(),
        follower_series=FollowerSeries.ABSOLUTE,
        daily=None,
        supports_backfill=False,
    ):
        self.platform = platform
        self.failing = set(failing)
        self.expired_once = set(expired_once)
        self.follower_series = follower_series
        self.daily = daily
        self.supports_backfill = supports_backfill
        self.backfill_calls = []
        self.calls = []

    async def sync(self, params):
        self.calls.append((params.social_account_id, params.access_token))
        if params.social_account_id in self.failing:
            raise SocialApiError(
                platform=self.platform, endpoint="posts", status_code=500, message="Internal provider error"
            )
        if params.social_account_id in self.expired_once:
            self.expired_once.discard(params.social_account_id)
            raise TokenExpiredError(platform=self.platform, endpoint="posts", status_code=401, message="expired")
        daily = self.daily or [DailyMetric(date=DAY, followers=120, impressions=900)]
        posts = [
            PostMetric(
                external_post_id=f"{params.social_account_id}-post",
                platform=self.platform,
                posted_at=datetime(2026, 10, 16, tzinfo=timezone.utc),
                metrics={"impressions": 300, "likes": 12},
            )
        ]
        return SyncResult(daily_metrics=[DailyMetric(**vars(row)) for row in daily], posts=posts)

    async def backfill(self, params, days, include_views=True):
        self.backfill_calls.append((params.social_account_id, days, include_views))
        return await self.sync(params)


def _orchestrator(session_maker, connector, token_vault=None):
    return SyncOrchestrator(
        session_maker=session_maker,
        token_vault=token_vault,
        connector_factory=lambda platform, executor, negotiator: connector,
        account_concurrency=1,
    )


async def _accounts(session_maker, tenant_id="tenant-1"):
    async with session_maker() as db:
        return await MetricsRepository(db).list_active_accounts(tenant_id)


@pytest.mark.asyncio
async def test_one_failing_account_does_not_stop_the_others(session_maker):
    await create_tenant(session_maker)
    for account_id in ("acct-1", "acct-2", "acct-3"):
        await create_account(session_maker, account_id=account_id)
    connector = _FakeConnector("twitter", failing={"acct-2"})

    summary = await _orchestrator(session_maker, connector).sync_accounts(await _accounts(session_maker))

    assert summary["total"] == 3
    assert summary["succeeded"] == 2
    assert summary["failed"] == 1
    failed = [result for result in summary["results"] if result["status"] == "failed"]
    assert failed[0]["account_id"] == "acct-2"
    assert "Internal provider error" in failed[0]["error"]

    async with session_maker() as db:
        metric_accounts = {row.social_account_id for row in (await db.execute(select(SocialDailyMetric))).scalars()}
        post_accounts = {row.social_account_id for row in (await db.execute(select(SocialPost))).scalars()}
        logs = {log.social_account_id: log for log in (await db.execute(select(SyncLog))).scalars()}
        failed_account = await db.get(SocialAccount, "acct-2")
        synced_account = await db.get(SocialAccount, "acct-1")

    assert metric_accounts == {"acct-1", "acct-3"}
    assert post_accounts == {"acct-1", "acct-3"}
    assert logs["acct-2"].status == "failed"
    assert "Internal provider error" in logs["acct-2"].error_message
    assert logs["acct-1"].status == "success"
    assert logs["acct-1"].rows_upserted == 2
    assert logs["acct-1"].finished_at is not None
    assert failed_account.last_error is not None
    assert synced_account.last_sync_at is not None


@pytest.mark.asyncio
async def test_resync_updates_rows_instead_of_duplicating(session_maker):
    await create_tenant(session_maker)
    await create_account(session_maker, account_id="acct-1")
    connector = _FakeConnector("twitter")
    orchestrator = _orchestrator(session_maker, connector)

    await orchestrator.sync_accounts(await _accounts(session_maker))
    connector.daily = [DailyMetric(date=DAY, followers=125, impressions=1000)]
    await orchestrator.sync_accounts(await _accounts(session_maker))

    async with session_maker() as db:
        metrics = (await db.execute(select(SocialDailyMetric))).scalars().all()
        posts = (await db.execute(select(SocialPost))).scalars().all()

    assert len(metrics) == 1
    assert metrics[0].followers == 125
    assert metrics[0].impressions == 1000
    assert len(posts) == 1


@pytest.mark.asyncio
async def test_token_rejected_mid_sync_is_refreshed_once_and_retried(session_maker):
    await create_tenant(session_maker)
    await create_account(session_maker, account_id="acct-1", access_token="stale")
    connector = _FakeConnector("twitter", expired_once={"acct-1"})

    class _Vault(TokenVault):
        async def get_valid_access_token(self, account_id, force_refresh=False):
            return "renewed" if force_refresh else "stale"

    vault = _Vault(session_maker=session_maker)
    summary = await _orchestrator(session_maker, connector, token_vault=vault).sync_accounts(
        await _accounts(session_maker)
    )

    assert summary["succeeded"] == 1
    assert connector.calls == [("acct-1", "stale"), ("acct-1", "renewed")]


@pytest.mark.asyncio
async def test_gain_series_is_reconstructed_from_stored_history(session_maker):
    await create_tenant(session_maker)
    await create_account(session_maker, account_id="org-1", platform="linkedin")
    async with session_maker() as db:
        db.add(
            SocialDailyMetric(
                tenant_id="tenant-1",
                platform="linkedin",
                social_account_id="org-1",
                date=date(2026, 10, 14),
                followers=1000,
            )
        )
        await db.commit()

    connector = _FakeConnector(
        "linkedin",
        follower_series=FollowerSeries.GAINS_WITH_ANCHOR,
        daily=[
            DailyMetric(date=date(2026, 10, 15), followers=2),
            DailyMetric(date=date(2026, 10, 16), followers=3),
            DailyMetric(date=date(2026, 10, 17), followers=1),
        ],
    )

    await _orchestrator(session_maker, connector).sync_accounts(await _accounts(session_maker))

    async with session_maker() as db:
        rows = (
            await db.execute(
                select(SocialDailyMetric)
                .where(SocialDailyMetric.social_account_id == "org-1")
                .order_by(SocialDailyMetric.date)
            )
        ).scalars().all()

    assert [row.followers for row in rows] == [1000, 1002, 1005, 1006]


@pytest.mark.asyncio
async def test_tenant_sync_skips_inactive_accounts_and_other_tenants(session_maker):
    await create_tenant(session_maker)
    await create_tenant(session_maker, tenant_id="tenant-2", name="Other Client")
    await create_account(session_maker, account_id="active")
    await create_account(session_maker, account_id="expired", auth_status="expired")
    await create_account(session_maker, account_id="elsewhere", tenant_id="tenant-2")
    connector = _FakeConnector("twitter")

    summary = await run_tenant_sync("tenant-1", orchestrator=_orchestrator(session_maker, connector))

    assert summary["total"] == 1
    assert [call[0] for call in connector.calls] == ["active"]


@pytest.mark.asyncio
async def test_tenant_sync_can_be_limited_to_one_platform(session_maker):
    await create_tenant(session_maker)
    await create_account(session_maker, account_id="tweets")
    await create_account(session_maker, account_id="company-page", platform="linkedin")
    connector = _FakeConnector("linkedin")

    summary = await run_tenant_sync(
        "tenant-1", platform="linkedin", orchestrator=_orchestrator(session_maker, connector)
    )

    assert summary["total"] == 1
    assert [call[0] for call in connector.calls] == ["company-page"]


@pytest.mark.asyncio
async def test_backfill_reconstructs_followers_and_skips_platforms_without_history(session_maker):
    await create_tenant(session_maker)
    await create_account(session_maker, account_id="tweets")
    await create_account(session_maker, account_id="org-1", platform="linkedin")
    async with session_maker() as db:
        db.add(
            SocialDailyMetric(
                tenant_id="tenant-1",
                platform="linkedin",
                social_account_id="org-1",
                date=date(2026, 7, 1),
                followers=500,
            )
        )
        await db.commit()

    linkedin = _FakeConnector(
        "linkedin",
        follower_series=FollowerSeries.GAINS_WITH_ANCHOR,
        supports_backfill=True,
        daily=[
            DailyMetric(date=date(2026, 7, 20), followers=4),
            DailyMetric(date=date(2026, 10, 17), followers=6),
        ],
    )
    twitter = _FakeConnector("twitter")
    orchestrator = SyncOrchestrator(
        session_maker=session_maker,
        connector_factory=lambda platform, executor, negotiator: linkedin if platform == "linkedin" else twitter,
        account_concurrency=1,
    )

    summary = await run_backfill(days=120, tenant_id="tenant-1", include_views=False, orchestrator=orchestrator)

    assert summary["total"] == 2
    assert summary["succeeded"] == 1
    assert summary["skipped"] == 1
    skipped = next(result for result in summary["results"] if result["status"] == "skipped")
    assert skipped["account_id"] == "tweets"
    assert linkedin.backfill_calls == [("org-1", 120, False)]
    assert len(linkedin.calls) == 1
    assert twitter.calls == []

    async with session_maker() as db:
        rows = (
            await db.execute(
                select(SocialDailyMetric)
                .where(SocialDailyMetric.social_account_id == "org-1")
                .order_by(SocialDailyMetric.date)
            )
        ).scalars().all()
        logs = {log.social_account_id for log in (await db.execute(select(SyncLog))).scalars()}

    assert [row.followers for row in rows] == [500, 504, 510]
    assert logs == {"org-1"}


@pytest.mark.asyncio
async def test_backfill_can_target_a_single_account(session_maker):
    await create_tenant(session_maker)
    await create_account(session_maker, account_id="org-1", platform="linkedin")
    await create_account(session_maker, account_id="org-2", platform="linkedin")
    connector = _FakeConnector("linkedin", supports_backfill=True)

    summary = await run_backfill(
        social_account_id="org-2", orchestrator=_orchestrator(session_maker, connector)
    )

    assert summary["total"] == 1
    assert connector.backfill_calls == [("org-2", 365, True)]
