"""Sync orchestration: run every connected account's connector and persist the results.

One account's failure never stops the run. Each account gets its own sync log
row, its own token resolution and its own database transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from database import async_session_maker
from models.social_account import SocialAccount
from models.sync_log import SYNC_STATUS_FAILED, SYNC_STATUS_SUCCESS
from services.connectors.base import BaseConnector
from services.connectors.providers import get_connector
from services.connectors.types import DailyMetric, FollowerSeries, SyncParams, SyncResult
from services.crypto import TokenDecryptionError
from services.follower_trend import reconstruct_follower_trend
from services.platforms.api_client import ApiExecutor
from services.platforms.concurrency import gather_bounded
from services.platforms.errors import TokenExpiredError
from services.platforms.negotiation import VariantNegotiator
from services.platforms.token_vault import TokenVault
from services.repository import MetricsRepository


logger = logging.getLogger(__name__)

OUTCOME_SKIPPED = "skipped"


@dataclass
class AccountSyncOutcome:
    account_id: str
    tenant_id: str
    platform: str
    status: str
    rows_upserted: int = 0
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "tenant_id": self.tenant_id,
            "platform": self.platform,
            "status": self.status,
            "rows_upserted": self.rows_upserted,
            "error": self.error,
        }


def summarize(outcomes: Sequence[AccountSyncOutcome]) -> Dict[str, Any]:
    return {
        "total": len(outcomes),
        "succeeded": sum(1 for outcome in outcomes if outcome.status == SYNC_STATUS_SUCCESS),
        "failed": sum(1 for outcome in outcomes if outcome.status == SYNC_STATUS_FAILED),
        "skipped": sum(1 for outcome in outcomes if outcome.status == OUTCOME_SKIPPED),
        "rows_upserted": sum(outcome.rows_upserted for outcome in outcomes),
        "results": [outcome.as_dict() for outcome in outcomes],
    }


async def apply_follower_reconstruction(
    repo: MetricsRepository, account_id: str, daily: List[DailyMetric]
) -> List[DailyMetric]:
    """Replace gain-style follower values with cumulative counts, continuing from stored history."""
    entries = [(metric.date, metric.followers) for metric in daily if metric.followers is not None]
    if not entries:
        return daily
    first_day: date = min(day for day, _ in entries)
    baseline = await repo.latest_followers_before(account_id, first_day) or 0
    trend = dict(reconstruct_follower_trend(entries, baseline))
    for metric in daily:
        if metric.date in trend:
            metric.followers = trend[metric.date]
    return daily


class SyncOrchestrator:
    """Drives connectors over a set of accounts with per-account failure isolation."""

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker] = None,
        token_vault: Optional[TokenVault] = None,
        connector_factory: Callable[..., BaseConnector] = get_connector,
        executor: Optional[ApiExecutor] = None,
        account_concurrency: Optional[int] = None,
    ) -> None:
        self._session_maker = session_maker
        self._connector_factory = connector_factory
        self._executor = executor
        self._token_vault = token_vault
        self._account_concurrency = int(account_concurrency or settings.SYNC_ACCOUNT_CONCURRENCY)

    def sessions(self) -> async_sessionmaker:
        return self._session_maker or async_session_maker

    @property
    def token_vault(self) -> TokenVault:
        if self._token_vault is None:
            self._token_vault = TokenVault(session_maker=self._session_maker, executor=self._executor)
        return self._token_vault

    def _supports_backfill(
        self, platform: str, executor: ApiExecutor, negotiator: Optional[VariantNegotiator]
    ) -> bool:
        try:
            connector = self._connector_factory(platform, executor, negotiator)
        except ValueError:
            return False
        return connector.supports_backfill

    async def sync_accounts(
        self,
        accounts: Sequence[SocialAccount],
        backfill_days: Optional[int] = None,
        include_views: bool = True,
    ) -> Dict[str, Any]:
        """Sync accounts grouped by platform; groups run side by side, each with bounded concurrency.

        With ``backfill_days`` set, connectors fetch that much history instead of
        their regular window and platforms without a backfill are skipped.
        """
        groups: Dict[str, List[SocialAccount]] = {}
        for account in accounts:
            groups.setdefault(account.platform, []).append(account)

        negotiator = VariantNegotiator()
        executor = self._executor or ApiExecutor()
        async with executor:

            async def _run_group(platform: str) -> List[AccountSyncOutcome]:
                return await gather_bounded(
                    groups[platform],
                    lambda account: self.sync_account(
                        account, executor, negotiator, backfill_days=backfill_days, include_views=include_views
                    ),
                    limit=self._account_concurrency,
                )

            grouped = await gather_bounded(sorted(groups), _run_group, limit=max(len(groups), 1))

        outcomes = [outcome for group in grouped for outcome in group]
        summary = summarize(outcomes)
        logger.info(
            "%s run finished: %s accounts, %s succeeded, %s failed",
            "Backfill" if backfill_days else "Sync",
            summary["total"],
            summary["succeeded"],
            summary["failed"],
        )
        return summary

    async def sync_account(
        self,
        account: SocialAccount,
        executor: ApiExecutor,
        negotiator: Optional[VariantNegotiator] = None,
        backfill_days: Optional[int] = None,
        include_views: bool = True,
    ) -> AccountSyncOutcome:
        outcome = AccountSyncOutcome(
            account_id=account.id, tenant_id=account.tenant_id, platform=account.platform, status=SYNC_STATUS_FAILED
        )
        if backfill_days and not self._supports_backfill(account.platform, executor, negotiator):
            outcome.status = OUTCOME_SKIPPED
            outcome.error = f"No historical backfill for {account.platform}"
            return outcome

        async with self.sessions()() as session:
            log = await MetricsRepository(session).start_sync_log(account)
            log_id = log.id
            await session.commit()

        try:
            try:
                access_token = await self.token_vault.get_valid_access_token(account.id)
                tokens = await self.token_vault.get_decrypted_tokens(account.id)
            except TokenDecryptionError as exc:
                await self.token_vault.mark_account_expired(account.id, str(exc))
                raise

            connector = self._connector_factory(account.platform, executor, negotiator)
            params = SyncParams(
                tenant_id=account.tenant_id,
                social_account_id=account.id,
                external_account_id=account.external_account_id,
                access_token=access_token,
                refresh_token=tokens.refresh_token,
            )

            async def _fetch(sync_params: SyncParams) -> SyncResult:
                if backfill_days:
                    return await connector.backfill(sync_params, backfill_days, include_views=include_views)
                return await connector.sync(sync_params)

            try:
                result = await _fetch(params)
            except TokenExpiredError:
                logger.info("Token rejected for %s account %s, refreshing once", account.platform, account.id)
                access_token = await self.token_vault.get_valid_access_token(account.id, force_refresh=True)
                result = await _fetch(replace(params, access_token=access_token))

            outcome.rows_upserted = await self._persist(account, connector, result, log_id)
            outcome.status = SYNC_STATUS_SUCCESS
            logger.info(
                "Synced %s account %s: %s daily rows, %s posts",
                account.platform,
                account.id,
                len(result.daily_metrics),
                len(result.posts),
            )
        except Exception as exc:
            logger.exception("Sync failed for %s account %s: %s", account.platform, account.id, exc)
            outcome.error = str(exc) or exc.__class__.__name__
            await self._record_failure(account.id, log_id, outcome.error)
        return outcome

    async def _persist(
        self, account: SocialAccount, connector: BaseConnector, result: SyncResult, log_id: str
    ) -> int:
        async with self.sessions()() as session:
            repo = MetricsRepository(session)
            daily = list(result.daily_metrics)
            if connector.follower_series is FollowerSeries.GAINS_WITH_ANCHOR:
                daily = await apply_follower_reconstruction(repo, account.id, daily)
            rows = await repo.upsert_daily_metrics(account, daily)
            rows += await repo.upsert_posts(account, result.posts)
            await repo.mark_synced(account.id)
            await repo.finish_sync_log(log_id, SYNC_STATUS_SUCCESS, rows)
            await session.commit()
        return rows

    async def _record_failure(self, account_id: str, log_id: str, error: str) -> None:
        async with self.sessions()() as session:
            await MetricsRepository(session).finish_sync_log(log_id, SYNC_STATUS_FAILED, 0, error)
            await session.execute(
                update(SocialAccount).where(SocialAccount.id == account_id).values(last_error=error[:1000])
            )
            await session.commit()


async def run_tenant_sync(
    tenant_id: str,
    platform: Optional[str] = None,
    orchestrator: Optional[SyncOrchestrator] = None,
) -> Dict[str, Any]:
    """Sync the active accounts of one tenant, optionally only those of one platform."""
    orchestrator = orchestrator or SyncOrchestrator()
    async with orchestrator.sessions()() as session:
        accounts = await MetricsRepository(session).list_active_accounts(tenant_id, platform=platform)
    logger.info("Tenant %s sync (%s): %s active accounts", tenant_id, platform or "all platforms", len(accounts))
    return await orchestrator.sync_accounts(accounts)


async def run_global_sync(orchestrator: Optional[SyncOrchestrator] = None) -> Dict[str, Any]:
    """Sync every active account of every active tenant."""
    orchestrator = orchestrator or SyncOrchestrator()
    async with orchestrator.sessions()() as session:
        accounts = await MetricsRepository(session).list_active_accounts()
    logger.info("Global sync: %s active accounts", len(accounts))
    return await orchestrator.sync_accounts(accounts)


async def run_backfill(
    days: Optional[int] = None,
    tenant_id: Optional[str] = None,
    social_account_id: Optional[str] = None,
    include_views: bool = True,
    orchestrator: Optional[SyncOrchestrator] = None,
) -> Dict[str, Any]:
    """Load ``days`` of history for active accounts, optionally one tenant or one account."""
    days = int(days or settings.BACKFILL_DEFAULT_DAYS)
    orchestrator = orchestrator or SyncOrchestrator()
    async with orchestrator.sessions()() as session:
        accounts = await MetricsRepository(session).list_active_accounts(tenant_id, account_id=social_account_id)
    logger.info(
        "Backfill of %s days for tenant=%s account=%s: %s active accounts",
        days,
        tenant_id or "all",
        social_account_id or "all",
        len(accounts),
    )
    return await orchestrator.sync_accounts(accounts, backfill_days=days, include_views=include_views)
