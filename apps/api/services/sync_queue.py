"""Durable sync job queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy import select

from config import settings
from database import async_session_maker
from models.sync_log import SYNC_STATUS_FAILED, SYNC_STATUS_RUNNING, SyncLog
from services.platforms.token_vault import TokenVault
from services.sync import run_backfill, run_global_sync, run_tenant_sync


SYNC_QUEUE_NAME = "social-sync"
TOKEN_REFRESH_JOB_ID = "token-refresh"
BACKFILL_JOB_TIMEOUT = 4 * 3600


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_sync_queue() -> Queue:
    """Return the configured sync queue."""
    return Queue(
        name=SYNC_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def enqueue_sync_job(tenant_id: Optional[str] = None) -> Job:
    """Enqueue a tenant (or global, when ``tenant_id`` is None) sync with retries."""
    queue = get_sync_queue()
    return queue.enqueue(
        "services.sync_queue.process_sync_job",
        tenant_id,
        job_id=f"sync:{tenant_id or 'all'}:{int(datetime.now(timezone.utc).timestamp())}",
        retry=Retry(max=3, interval=[30, 120, 600]),
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )


def enqueue_backfill_job(
    days: int,
    tenant_id: Optional[str] = None,
    social_account_id: Optional[str] = None,
    include_views: bool = True,
) -> Job:
    """Enqueue a history backfill; no retries, a rerun simply upserts again."""
    queue = get_sync_queue()
    scope = social_account_id or tenant_id or "all"
    return queue.enqueue(
        "services.sync_queue.process_backfill_job",
        days,
        tenant_id,
        social_account_id,
        include_views,
        job_id=f"backfill:{scope}:{int(datetime.now(timezone.utc).timestamp())}",
        job_timeout=BACKFILL_JOB_TIMEOUT,
        result_ttl=86400,
        failure_ttl=86400,
    )


def enqueue_token_refresh_job() -> Job:
    queue = get_sync_queue()
    return queue.enqueue(
        "services.sync_queue.process_token_refresh_job",
        job_id=f"{TOKEN_REFRESH_JOB_ID}:{int(datetime.now(timezone.utc).timestamp())}",
        retry=Retry(max=2, interval=[60, 300]),
        job_timeout=900,
        result_ttl=86400,
        failure_ttl=86400,
    )


def process_sync_job(tenant_id: Optional[str] = None) -> Dict[str, Any]:
    """RQ worker entrypoint for sync jobs."""
    if tenant_id:
        return asyncio.run(run_tenant_sync(tenant_id))
    return asyncio.run(run_global_sync())


def process_token_refresh_job() -> Dict[str, Any]:
    """RQ worker entrypoint for the expiring-token sweep."""
    return asyncio.run(TokenVault().refresh_all_expiring_tokens(settings.TOKEN_REFRESH_LOOKAHEAD_HOURS))


def process_backfill_job(
    days: int,
    tenant_id: Optional[str] = None,
    social_account_id: Optional[str] = None,
    include_views: bool = True,
) -> Dict[str, Any]:
    """RQ worker entrypoint for history backfills."""
    return asyncio.run(
        run_backfill(days, tenant_id=tenant_id, social_account_id=social_account_id, include_views=include_views)
    )


async def recover_stalled_sync_logs(max_age_minutes: int = 120) -> int:
    """Mark sync logs left running by a crashed worker or restart as failed."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(SyncLog).where(
                SyncLog.status == SYNC_STATUS_RUNNING,
                SyncLog.started_at < cutoff,
            )
        )
        logs = result.scalars().all()
        for log in logs:
            log.status = SYNC_STATUS_FAILED
            log.error_message = "Sync was interrupted before finishing."
            log.finished_at = datetime.now(timezone.utc)
        if logs:
            await db.commit()
        return len(logs)
