"""
Cron router: scheduled sync, history backfill and token-refresh triggers.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from config import settings
from routers.auth_scope import require_cron_secret
from services.platforms.token_vault import TokenVault
from services.sync import run_backfill, run_global_sync, run_tenant_sync
from services.sync_queue import enqueue_backfill_job, enqueue_sync_job, enqueue_token_refresh_job

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/sync")
async def trigger_sync(
    tenant_id: Optional[str] = Query(None, min_length=1),
    _: None = Depends(require_cron_secret),
):
    """Sync one tenant, or every active tenant when ``tenant_id`` is omitted."""
    if settings.SYNC_USE_QUEUE:
        try:
            job = enqueue_sync_job(tenant_id)
        except Exception as exc:
            logger.exception("Failed to enqueue sync job for tenant=%s", tenant_id or "all")
            raise HTTPException(status_code=503, detail=f"Sync queue unavailable: {exc}") from exc
        return {"queued": True, "job_id": job.id, "tenant_id": tenant_id}

    if tenant_id:
        summary = await run_tenant_sync(tenant_id)
    else:
        summary = await run_global_sync()
    return {"queued": False, "tenant_id": tenant_id, **summary}


@router.post("/refresh-tokens")
async def trigger_token_refresh(
    within_hours: Optional[int] = Query(None, ge=1, le=24 * 30),
    _: None = Depends(require_cron_secret),
):
    """Refresh every token that expires within the lookahead window."""
    if settings.SYNC_USE_QUEUE:
        try:
            job = enqueue_token_refresh_job()
        except Exception as exc:
            logger.exception("Failed to enqueue token refresh job")
            raise HTTPException(status_code=503, detail=f"Sync queue unavailable: {exc}") from exc
        return {"queued": True, "job_id": job.id}

    summary = await TokenVault().refresh_all_expiring_tokens(within_hours or settings.TOKEN_REFRESH_LOOKAHEAD_HOURS)
    return {"queued": False, **summary}


@router.post("/backfill")
async def trigger_backfill(
    days: Optional[int] = Query(None, ge=1, le=730),
    tenant_id: Optional[str] = Query(None, min_length=1),
    social_account_id: Optional[str] = Query(None, min_length=1),
    include_views: bool = True,
    _: None = Depends(require_cron_secret),
):
    """Load history for Instagram and LinkedIn accounts; other platforms are skipped."""
    days = days or settings.BACKFILL_DEFAULT_DAYS
    if settings.SYNC_USE_QUEUE:
        try:
            job = enqueue_backfill_job(days, tenant_id, social_account_id, include_views)
        except Exception as exc:
            logger.exception("Failed to enqueue backfill job for tenant=%s", tenant_id or "all")
            raise HTTPException(status_code=503, detail=f"Sync queue unavailable: {exc}") from exc
        return {"queued": True, "job_id": job.id, "days": days}

    summary = await run_backfill(
        days, tenant_id=tenant_id, social_account_id=social_account_id, include_views=include_views
    )
    return {"queued": False, "days": days, **summary}
