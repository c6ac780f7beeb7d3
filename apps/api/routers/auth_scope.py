"""Authentication dependencies for admin and cron endpoints."""

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import ROLE_AGENCY_ADMIN, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    role: str
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_AGENCY_ADMIN


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated staff member from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        role=str(payload.get("role", "")),
        email=str(payload.get("email", "")) or None,
    )


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Only agency admins may connect accounts or trigger syncs."""
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Agency admin role required.")
    return auth


async def require_cron_secret(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> None:
    """Scheduled jobs authenticate with a shared bearer secret."""
    expected = (settings.CRON_SECRET or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="CRON_SECRET is not configured.")
    supplied = credentials.credentials if credentials else ""
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid cron secret.")
