"""
OAuth connection router: start the provider handshake and persist accounts on callback.
"""

import hmac
import logging
from typing import Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.tenant import Tenant
from routers.auth_scope import AuthContext, require_admin
from services.connectors.providers import get_oauth_connector
from services.connectors.types import OAUTH_PROVIDERS, ConnectorUnavailableError
from services.platforms.api_client import ApiExecutor
from services.platforms.errors import OAuthStateError, SocialApiError, StateMismatchError
from services.platforms.oauth_state import (
    OAuthStateCodec,
    PkceVerifierStore,
    code_challenge,
    generate_code_verifier,
)
from services.repository import MetricsRepository

logger = logging.getLogger(__name__)

router = APIRouter()

STATE_COOKIE_MAX_AGE_SECONDS = 600


def state_cookie_name(provider: str) -> str:
    return f"oauth_{provider}_state"


def _require_provider(provider: str) -> str:
    if provider not in OAUTH_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown OAuth provider: {provider}")
    return provider


def _admin_redirect(provider: str, params: Dict[str, str], tenant_id: Optional[str] = None) -> RedirectResponse:
    base = (settings.APP_URL or "").rstrip("/")
    path = f"/admin/clients/{tenant_id}" if tenant_id else "/admin"
    response = RedirectResponse(url=f"{base}{path}?{urlencode(params)}", status_code=302)
    response.delete_cookie(state_cookie_name(provider))
    return response


def _error_redirect(provider: str, error: str, tenant_id: Optional[str] = None) -> RedirectResponse:
    return _admin_redirect(provider, {f"{provider}_error": error}, tenant_id)


@router.get("/{provider}/start")
async def start_oauth(
    provider: str,
    tenant_id: str = Query(..., min_length=1),
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Redirect an agency admin to the provider's consent screen for a tenant."""
    _require_provider(provider)
    tenant = await db.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail="Tenant not found.")

    connector = get_oauth_connector(provider, ApiExecutor())
    state = OAuthStateCodec().encode(tenant_id)
    challenge = None
    try:
        connector.ensure_configured()
        if connector.uses_pkce:
            verifier = generate_code_verifier()
            await PkceVerifierStore().save(state, verifier)
            challenge = code_challenge(verifier)
        authorization_url = connector.authorization_url(state, challenge)
    except ConnectorUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    logger.info("OAuth start: provider=%s tenant=%s admin=%s", provider, tenant_id, auth.user_id)
    response = RedirectResponse(url=authorization_url, status_code=302)
    response.set_cookie(
        key=state_cookie_name(provider),
        value=state,
        max_age=STATE_COOKIE_MAX_AGE_SECONDS,
        httponly=True,
        samesite="lax",
        secure=settings.API_BASE_URL.startswith("https://"),
    )
    return response


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """Finish the handshake: verify state, exchange the code and store every discovered account."""
    _require_provider(provider)
    if error:
        return _error_redirect(provider, error_description or error)
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state.")

    try:
        cookie_state = request.cookies.get(state_cookie_name(provider)) or ""
        if not hmac.compare_digest(cookie_state.encode(), state.encode()):
            raise StateMismatchError("OAuth state does not match the browser session.")
        decoded = OAuthStateCodec().decode(state)
    except OAuthStateError as exc:
        logger.warning("OAuth callback rejected for %s: %s", provider, exc)
        return _error_redirect(provider, exc.error_code)

    tenant_id = decoded.tenant_id
    async with ApiExecutor() as executor:
        connector = get_oauth_connector(provider, executor)
        try:
            verifier = await PkceVerifierStore().consume(state) if connector.uses_pkce else None
            connected = await connector.exchange_code(code, verifier)
        except OAuthStateError as exc:
            return _error_redirect(provider, exc.error_code, tenant_id)
        except ConnectorUnavailableError:
            return _error_redirect(provider, "not_configured", tenant_id)
        except SocialApiError as exc:
            logger.warning("OAuth code exchange failed for %s tenant %s: %s", provider, tenant_id, exc)
            return _error_redirect(provider, "exchange_failed", tenant_id)

    if not connected:
        return _error_redirect(provider, "no_accounts", tenant_id)

    repo = MetricsRepository(db)
    for account in connected:
        await repo.save_connected_account(tenant_id, account)
    await db.commit()
    logger.info("OAuth connected %s %s account(s) for tenant %s", len(connected), provider, tenant_id)

    return _admin_redirect(
        provider,
        {f"{provider}_success": "true", f"{provider}_accounts": str(len(connected))},
        tenant_id,
    )
