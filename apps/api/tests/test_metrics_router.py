from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import create_account, create_tenant
from database import get_db
from main import app
from models.social_account import SocialAccount
from models.social_daily_metric import SocialDailyMetric
from models.social_post import SocialPost
from models.sync_log import SyncLog
from services.session_token import ROLE_VIEWER, create_session_token


VIEWER_HEADER = {"Authorization": f"Bearer {create_session_token('viewer-1', role=ROLE_VIEWER)['token']}"}


@pytest_asyncio.fixture
async def metrics_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    await create_tenant(session_maker)
    await create_account(session_maker, account_id="ig-1", platform="instagram")
    await create_account(session_maker, account_id="li-1", platform="linkedin")

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)


def _post(post_id, account_id, platform, metrics, media_type="image"):
    return SocialPost(
        tenant_id="tenant-1",
        platform=platform,
        social_account_id=account_id,
        external_post_id=post_id,
        posted_at=datetime(2026, 10, 10, tzinfo=timezone.utc),
        media_type=media_type,
        metrics_json=metrics,
    )


@pytest.mark.asyncio
async def test_top_posts_ranked_by_visibility(metrics_client):
    client, session_maker = metrics_client
    async with session_maker() as db:
        db.add_all(
            [
                _post("reel-1", "ig-1", "instagram", {"views": 5000, "impressions": 800}, media_type="reel"),
                _post("img-1", "ig-1", "instagram", {"impressions": 1200, "likes": 30}),
                _post("li-post", "li-1", "linkedin", {"impressions": 300, "engagements": 90}),
                _post("quiet", "li-1", "linkedin", {}),
            ]
        )
        await db.commit()

    response = await client.get("/tenants/tenant-1/top-posts", params={"limit": 3}, headers=VIEWER_HEADER)

    assert response.status_code == 200
    payload = response.json()
    assert [post["external_post_id"] for post in payload] == ["reel-1", "img-1", "li-post"]
    assert payload[0]["visibility_metric"] == "views"
    assert payload[0]["visibility"] == 5000
    assert payload[1]["visibility_metric"] == "impressions"
    assert payload[1]["engagements"] == 30


@pytest.mark.asyncio
async def test_top_posts_platform_filter_and_validation(metrics_client):
    client, session_maker = metrics_client
    async with session_maker() as db:
        db.add_all(
            [
                _post("img-1", "ig-1", "instagram", {"impressions": 1200}),
                _post("li-post", "li-1", "linkedin", {"impressions": 300}),
            ]
        )
        await db.commit()

    filtered = await client.get(
        "/tenants/tenant-1/top-posts", params={"platform": "linkedin"}, headers=VIEWER_HEADER
    )
    invalid = await client.get("/tenants/tenant-1/top-posts", params={"platform": "myspace"}, headers=VIEWER_HEADER)

    assert [post["external_post_id"] for post in filtered.json()] == ["li-post"]
    assert invalid.status_code == 400


@pytest.mark.asyncio
async def test_follower_trend_returns_series_per_account(metrics_client):
    client, session_maker = metrics_client
    start = date(2026, 10, 15)
    async with session_maker() as db:
        for offset, followers in enumerate([100, 104, 110]):
            db.add(
                SocialDailyMetric(
                    tenant_id="tenant-1",
                    platform="linkedin",
                    social_account_id="li-1",
                    date=start + timedelta(days=offset),
                    followers=followers,
                )
            )
        db.add(
            SocialDailyMetric(
                tenant_id="tenant-1",
                platform="instagram",
                social_account_id="ig-1",
                date=start,
                followers=None,
                impressions=50,
            )
        )
        await db.commit()

    response = await client.get(
        "/tenants/tenant-1/follower-trend", params={"platform": "linkedin"}, headers=VIEWER_HEADER
    )

    assert response.status_code == 200
    series = response.json()
    assert len(series) == 1
    assert series[0]["social_account_id"] == "li-1"
    assert [point["followers"] for point in series[0]["points"]] == [100, 104, 110]
    assert series[0]["points"][0]["date"] == "2026-10-15"


@pytest.mark.asyncio
async def test_sync_status_reports_latest_run_per_account(metrics_client):
    client, session_maker = metrics_client
    now = datetime.now(timezone.utc)
    async with session_maker() as db:
        db.add_all(
            [
                SyncLog(
                    tenant_id="tenant-1",
                    social_account_id="ig-1",
                    platform="instagram",
                    status="failed",
                    error_message="old failure",
                    started_at=now - timedelta(hours=2),
                ),
                SyncLog(
                    tenant_id="tenant-1",
                    social_account_id="ig-1",
                    platform="instagram",
                    status="success",
                    rows_upserted=12,
                    started_at=now - timedelta(minutes=5),
                    finished_at=now,
                ),
            ]
        )
        await db.commit()

    response = await client.get("/tenants/tenant-1/sync-status", headers=VIEWER_HEADER)

    assert response.status_code == 200
    statuses = {item["social_account_id"]: item for item in response.json()}
    assert statuses["ig-1"]["last_run_status"] == "success"
    assert statuses["ig-1"]["last_run_rows_upserted"] == 12
    assert statuses["ig-1"]["auth_status"] == "active"
    assert statuses["li-1"]["last_run_status"] is None


@pytest.mark.asyncio
async def test_metrics_routes_require_session_and_known_tenant(metrics_client):
    client, _ = metrics_client

    unauthenticated = await client.get("/tenants/tenant-1/top-posts")
    unknown = await client.get("/tenants/missing/sync-status", headers=VIEWER_HEADER)

    assert unauthenticated.status_code == 401
    assert unknown.status_code == 404


async def _set_last_sync(session_maker, account_id, last_sync_at):
    async with session_maker() as db:
        account = await db.get(SocialAccount, account_id)
        account.last_sync_at = last_sync_at
        await db.commit()


@pytest.mark.asyncio
async def test_refresh_runs_tenant_sync_for_requested_platform(metrics_client):
    client, session_maker = metrics_client
    await _set_last_sync(session_maker, "ig-1", datetime.now(timezone.utc) - timedelta(minutes=3))
    summary = {"total": 1, "succeeded": 1, "failed": 0, "rows_upserted": 31, "results": []}

    with patch("routers.metrics.run_tenant_sync", AsyncMock(return_value=summary)) as run_tenant:
        response = await client.post(
            "/tenants/tenant-1/refresh", params={"platform": "linkedin"}, headers=VIEWER_HEADER
        )

    assert response.status_code == 200
    assert response.json()["platform"] == "linkedin"
    assert response.json()["rows_upserted"] == 31
    run_tenant.assert_awaited_once_with("tenant-1", platform="linkedin")


@pytest.mark.asyncio
async def test_refresh_is_rejected_during_cooldown(metrics_client):
    client, session_maker = metrics_client
    await _set_last_sync(session_maker, "ig-1", datetime.now(timezone.utc) - timedelta(minutes=3))

    with patch("routers.metrics.run_tenant_sync", AsyncMock()) as run_tenant:
        response = await client.post("/tenants/tenant-1/refresh", headers=VIEWER_HEADER)

    assert response.status_code == 429
    assert "Try again in 7 min" in response.json()["detail"]
    assert int(response.headers["retry-after"]) <= 420
    run_tenant.assert_not_awaited()


@pytest.mark.asyncio
async def test_refresh_after_cooldown_and_auth_checks(metrics_client):
    client, session_maker = metrics_client
    await _set_last_sync(session_maker, "ig-1", datetime.now(timezone.utc) - timedelta(minutes=30))
    summary = {"total": 2, "succeeded": 2, "failed": 0, "rows_upserted": 5, "results": []}

    with patch("routers.metrics.run_tenant_sync", AsyncMock(return_value=summary)) as run_tenant:
        allowed = await client.post("/tenants/tenant-1/refresh", headers=VIEWER_HEADER)
        unauthenticated = await client.post("/tenants/tenant-1/refresh")
        unknown_platform = await client.post(
            "/tenants/tenant-1/refresh", params={"platform": "myspace"}, headers=VIEWER_HEADER
        )

    assert allowed.status_code == 200
    assert allowed.json()["succeeded"] == 2
    assert unauthenticated.status_code == 401
    assert unknown_platform.status_code == 400
    run_tenant.assert_awaited_once_with("tenant-1", platform=None)
