"""
Social Sync Engine - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    oauth,
    cron,
    metrics,
)
from services.platforms.store import get_shared_store
from services.platforms.token_vault import TokenVault
from services.sync import run_global_sync
from services.sync_queue import enqueue_sync_job, recover_stalled_sync_logs

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def _periodic_sync() -> None:
    interval_minutes = max(int(settings.SYNC_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            if settings.SYNC_USE_QUEUE:
                job = enqueue_sync_job()
                print(f"🔄 Scheduled sync queued: job={job.id}")
                continue
            result = await run_global_sync()
            print(
                f"🔄 Scheduled sync: total={result.get('total', 0)} "
                f"succeeded={result.get('succeeded', 0)} failed={result.get('failed', 0)}"
            )
        except Exception as exc:
            print(f"⚠️ Scheduled sync tick failed: {exc}")


async def _periodic_token_refresh() -> None:
    interval_minutes = max(int(settings.TOKEN_REFRESH_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await TokenVault().refresh_all_expiring_tokens(settings.TOKEN_REFRESH_LOOKAHEAD_HOURS)
            if result.get("refreshed") or result.get("failed"):
                print(
                    f"🔑 Token refresh sweep: refreshed={result.get('refreshed', 0)} "
                    f"failed={result.get('failed', 0)}"
                )
        except Exception as exc:
            print(f"⚠️ Token refresh tick failed: {exc}")


async def _cancel(task) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Social Sync Engine API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_sync_logs()
        if recovered:
            print(f"♻️ Marked {recovered} interrupted sync runs as failed after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled sync recovery skipped: {exc}")
    sync_task = None
    token_refresh_task = None
    if int(settings.SYNC_INTERVAL_MINUTES) > 0:
        sync_task = asyncio.create_task(_periodic_sync())
        print(f"📅 Sync loop enabled (every {int(settings.SYNC_INTERVAL_MINUTES)} min).")
    if int(settings.TOKEN_REFRESH_INTERVAL_MINUTES) > 0:
        token_refresh_task = asyncio.create_task(_periodic_token_refresh())
        print(f"📅 Token refresh loop enabled (every {int(settings.TOKEN_REFRESH_INTERVAL_MINUTES)} min).")
    yield
    # Shutdown
    await _cancel(sync_task)
    await _cancel(token_refresh_task)
    await get_shared_store().close()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Social Sync Engine API",
    description="Connect agency clients' social accounts and sync their metrics into one schema",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(oauth.router, prefix="/oauth", tags=["OAuth"])
app.include_router(cron.router, prefix="/cron", tags=["Cron"])
app.include_router(metrics.router, prefix="/tenants", tags=["Metrics"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Social Sync Engine API",
        "version": "0.1.0",
        "status": "running"
    }
