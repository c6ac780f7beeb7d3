from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config import settings
from main import app


CRON_HEADER = {"Authorization": "Bearer cron-secret-value"}
SUMMARY = {"total": 2, "succeeded": 1, "failed": 1, "rows_upserted": 7, "results": []}


@pytest_asyncio.fixture
async def cron_client(monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret-value")
    monkeypatch.setattr(settings, "SYNC_USE_QUEUE", False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_cron_requires_secret(cron_client):
    missing = await cron_client.post("/cron/sync")
    wrong = await cron_client.post("/cron/sync", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_cron_without_configured_secret_is_unavailable(cron_client, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "")

    response = await cron_client.post("/cron/sync", headers=CRON_HEADER)

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_cron_sync_runs_global_sync_inline(cron_client):
    with patch("routers.cron.run_global_sync", AsyncMock(return_value=SUMMARY)) as run_global:
        response = await cron_client.post("/cron/sync", headers=CRON_HEADER)

    assert response.status_code == 200
    payload = response.json()
    assert payload["queued"] is False
    assert payload["succeeded"] == 1
    assert payload["failed"] == 1
    run_global.assert_awaited_once()


@pytest.mark.asyncio
async def test_cron_sync_for_one_tenant(cron_client):
    with patch("routers.cron.run_tenant_sync", AsyncMock(return_value=SUMMARY)) as run_tenant:
        response = await cron_client.post("/cron/sync", params={"tenant_id": "tenant-9"}, headers=CRON_HEADER)

    assert response.status_code == 200
    assert response.json()["tenant_id"] == "tenant-9"
    run_tenant.assert_awaited_once_with("tenant-9")


@pytest.mark.asyncio
async def test_cron_sync_enqueues_when_queue_enabled(cron_client, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_USE_QUEUE", True)
    job = MagicMock(id="sync:tenant-9:1")

    with patch("routers.cron.enqueue_sync_job", return_value=job) as enqueue:
        response = await cron_client.post("/cron/sync", params={"tenant_id": "tenant-9"}, headers=CRON_HEADER)

    assert response.status_code == 200
    assert response.json() == {"queued": True, "job_id": "sync:tenant-9:1", "tenant_id": "tenant-9"}
    enqueue.assert_called_once_with("tenant-9")


@pytest.mark.asyncio
async def test_cron_sync_queue_failure_is_503(cron_client, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_USE_QUEUE", True)

    with patch("routers.cron.enqueue_sync_job", side_effect=ConnectionError("redis down")):
        response = await cron_client.post("/cron/sync", headers=CRON_HEADER)

    assert response.status_code == 503
    assert "redis down" in response.json()["detail"]


@pytest.mark.asyncio
async def test_cron_refresh_tokens_runs_sweep(cron_client):
    sweep = {"refreshed": 3, "failed": 1, "results": []}
    vault = MagicMock()
    vault.refresh_all_expiring_tokens = AsyncMock(return_value=sweep)

    with patch("routers.cron.TokenVault", return_value=vault):
        response = await cron_client.post("/cron/refresh-tokens", params={"within_hours": 48}, headers=CRON_HEADER)

    assert response.status_code == 200
    assert response.json() == {"queued": False, "refreshed": 3, "failed": 1, "results": []}
    vault.refresh_all_expiring_tokens.assert_awaited_once_with(48)


@pytest.mark.asyncio
async def test_cron_backfill_defaults_to_a_year(cron_client):
    with patch("routers.cron.run_backfill", AsyncMock(return_value=SUMMARY)) as backfill:
        response = await cron_client.post("/cron/backfill", headers=CRON_HEADER)

    assert response.status_code == 200
    payload = response.json()
    assert payload["queued"] is False
    assert payload["days"] == 365
    assert payload["rows_upserted"] == 7
    backfill.assert_awaited_once_with(365, tenant_id=None, social_account_id=None, include_views=True)


@pytest.mark.asyncio
async def test_cron_backfill_filters_and_validation(cron_client):
    with patch("routers.cron.run_backfill", AsyncMock(return_value=SUMMARY)) as backfill:
        response = await cron_client.post(
            "/cron/backfill",
            params={"days": 90, "tenant_id": "tenant-9", "social_account_id": "org-1", "include_views": "false"},
            headers=CRON_HEADER,
        )
        zero_days = await cron_client.post("/cron/backfill", params={"days": 0}, headers=CRON_HEADER)
        unauthorized = await cron_client.post("/cron/backfill")

    assert response.status_code == 200
    backfill.assert_awaited_once_with(90, tenant_id="tenant-9", social_account_id="org-1", include_views=False)
    assert zero_days.status_code == 422
    assert unauthorized.status_code == 401


@pytest.mark.asyncio
async def test_cron_backfill_enqueues_when_queue_enabled(cron_client, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_USE_QUEUE", True)
    job = MagicMock(id="backfill:tenant-9:1")

    with patch("routers.cron.enqueue_backfill_job", return_value=job) as enqueue:
        response = await cron_client.post(
            "/cron/backfill", params={"tenant_id": "tenant-9", "days": 30}, headers=CRON_HEADER
        )

    assert response.status_code == 200
    assert response.json() == {"queued": True, "job_id": "backfill:tenant-9:1", "days": 30}
    enqueue.assert_called_once_with(30, "tenant-9", None, True)
