"""Encrypted OAuth token storage, expiry checks and refresh dispatch."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import async_session_maker
from models.social_account import AUTH_STATUS_ACTIVE, AUTH_STATUS_EXPIRED, SocialAccount
from services.connectors.base import BaseConnector
from services.connectors.providers import SELF_VALIDATING_PLATFORMS, get_connector
from services.connectors.types import RefreshMode, TokenGrant
from services.crypto import decrypt_optional, decrypt_token, encrypt_token
from services.platforms.api_client import ApiExecutor
from services.platforms.errors import AccountNotFoundError, RefreshFailedError, SocialApiError


logger = logging.getLogger(__name__)

REFRESH_BUFFER = timedelta(minutes=5)


@dataclass(frozen=True)
class DecryptedTokens:
    account_id: str
    platform: str
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def token_needs_refresh(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when the token expires within the refresh buffer. No expiry means never."""
    if expires_at is None:
        return False
    current = _as_utc(now) if now else datetime.now(timezone.utc)
    return _as_utc(expires_at) - current <= REFRESH_BUFFER


class TokenVault:
    """Reads, refreshes and persists per-account provider tokens.

    At most one refresh per account is in flight: callers racing on the same
    account wait on its lock and reuse the token the winner stored.
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker] = None,
        connector_factory: Callable[..., BaseConnector] = get_connector,
        executor: Optional[ApiExecutor] = None,
    ) -> None:
        self._session_maker = session_maker
        self._connector_factory = connector_factory
        self._executor = executor
        self._locks: Dict[str, asyncio.Lock] = {}

    def _sessions(self) -> async_sessionmaker:
        return self._session_maker or async_session_maker

    def _connector(self, platform: str) -> BaseConnector:
        return self._connector_factory(platform, self._executor or ApiExecutor())

    @staticmethod
    async def _load(session: AsyncSession, account_id: str) -> SocialAccount:
        account = await session.get(SocialAccount, account_id)
        if account is None:
            raise AccountNotFoundError(f"Social account {account_id} not found")
        return account

    @staticmethod
    def _decrypt(account: SocialAccount) -> DecryptedTokens:
        return DecryptedTokens(
            account_id=account.id,
            platform=account.platform,
            access_token=decrypt_token(account.access_token_encrypted),
            refresh_token=decrypt_optional(account.refresh_token_encrypted),
            expires_at=account.token_expires_at,
        )

    async def get_decrypted_tokens(self, account_id: str) -> DecryptedTokens:
        async with self._sessions()() as session:
            return self._decrypt(await self._load(session, account_id))

    async def get_valid_access_token(self, account_id: str, force_refresh: bool = False) -> str:
        tokens = await self.get_decrypted_tokens(account_id)
        if not force_refresh and not token_needs_refresh(tokens.expires_at):
            return tokens.access_token

        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            current = await self.get_decrypted_tokens(account_id)
            if current.access_token != tokens.access_token and not token_needs_refresh(current.expires_at):
                # Another caller refreshed while we waited.
                return current.access_token
            return await self._refresh(current)

    async def _refresh(self, tokens: DecryptedTokens) -> str:
        connector = self._connector(tokens.platform)
        if connector.refresh_mode is RefreshMode.VALIDATE:
            try:
                valid = await connector.validate_access_token(tokens.access_token)
            except SocialApiError as exc:
                await self.mark_account_expired(tokens.account_id, exc.message)
                raise RefreshFailedError(tokens.account_id, tokens.platform, exc.message) from exc
            if not valid:
                reason = "Token failed validation"
                await self.mark_account_expired(tokens.account_id, reason)
                raise RefreshFailedError(tokens.account_id, tokens.platform, reason)
            return tokens.access_token

        if not tokens.refresh_token:
            reason = "No refresh token available"
            await self.mark_account_expired(tokens.account_id, reason)
            raise RefreshFailedError(tokens.account_id, tokens.platform, reason)

        try:
            grant = await connector.refresh_access_token(tokens.refresh_token)
        except SocialApiError as exc:
            await self.mark_account_expired(tokens.account_id, exc.message)
            raise RefreshFailedError(tokens.account_id, tokens.platform, exc.message) from exc

        await self.update_stored_tokens(tokens.account_id, grant)
        logger.info("Refreshed %s token for account %s", tokens.platform, tokens.account_id)
        return grant.access_token

    async def update_stored_tokens(self, account_id: str, grant: TokenGrant) -> None:
        """Persist a new access token together with its expiry in one commit."""
        async with self._sessions()() as session:
            account = await self._load(session, account_id)
            account.access_token_encrypted = encrypt_token(grant.access_token)
            if grant.refresh_token:
                account.refresh_token_encrypted = encrypt_token(grant.refresh_token)
            account.token_expires_at = grant.expires_at
            if grant.scopes:
                account.scopes = grant.scopes
            account.auth_status = AUTH_STATUS_ACTIVE
            account.last_error = None
            await session.commit()

    async def mark_account_expired(self, account_id: str, reason: str) -> None:
        async with self._sessions()() as session:
            account = await session.get(SocialAccount, account_id)
            if account is None:
                return
            account.auth_status = AUTH_STATUS_EXPIRED
            account.last_error = (reason or "")[:1000]
            await session.commit()
        logger.warning("Marked account %s expired: %s", account_id, reason)

    async def refresh_all_expiring_tokens(self, within_hours: int = 24) -> Dict[str, Any]:
        """Force-refresh every active account whose token expires within the window."""
        cutoff = datetime.now(timezone.utc) + timedelta(hours=within_hours)
        async with self._sessions()() as session:
            result = await session.execute(
                select(SocialAccount.id, SocialAccount.platform).where(
                    and_(
                        SocialAccount.auth_status == AUTH_STATUS_ACTIVE,
                        SocialAccount.token_expires_at.is_not(None),
                        SocialAccount.token_expires_at <= cutoff,
                        SocialAccount.platform.not_in(sorted(SELF_VALIDATING_PLATFORMS)),
                    )
                )
            )
            candidates = list(result.all())

        results: List[Dict[str, Any]] = []
        refreshed = failed = 0
        for account_id, platform in candidates:
            try:
                await self.get_valid_access_token(account_id, force_refresh=True)
            except Exception as exc:
                failed += 1
                logger.warning("Token refresh failed for %s account %s: %s", platform, account_id, exc)
                results.append({"account_id": account_id, "platform": platform, "status": "failed", "error": str(exc)})
                continue
            refreshed += 1
            results.append({"account_id": account_id, "platform": platform, "status": "refreshed", "error": None})

        logger.info("Token refresh sweep: %s refreshed, %s failed", refreshed, failed)
        return {"refreshed": refreshed, "failed": failed, "results": results}
