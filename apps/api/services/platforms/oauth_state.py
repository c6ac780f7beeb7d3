"""OAuth handshake state: signed tenant-bound state tokens and one-time PKCE verifiers."""

from __future__ import annotations

import base64
import hashlib
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from jose import JWTError, jwt

from config import settings
from services.platforms.errors import StateExpiredError, StateInvalidError, VerifierNotFoundError
from services.platforms.store import KeyValueStore, get_shared_store


STATE_MAX_AGE_MS = 60 * 60 * 1000
PKCE_VERIFIER_TTL_SECONDS = 10 * 60
PKCE_VERIFIER_LENGTH = 64
_PKCE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
_STATE_TOKEN_TYPE = "oauth_state"


@dataclass(frozen=True)
class OAuthState:
    tenant_id: str
    ts: int
    nonce: str


class OAuthStateCodec:
    """Encodes ``{tenant_id, ts, nonce}`` into a signed, URL-safe state parameter."""

    def __init__(
        self,
        secret: Optional[str] = None,
        algorithm: Optional[str] = None,
        max_age_ms: int = STATE_MAX_AGE_MS,
        now_ms: Optional[Callable[[], int]] = None,
    ) -> None:
        self._secret = secret or settings.JWT_SECRET
        self._algorithm = algorithm or settings.JWT_ALGORITHM
        self._max_age_ms = max_age_ms
        self._now_ms = now_ms or (lambda: int(time.time() * 1000))

    def encode(self, tenant_id: str) -> str:
        claims = {
            "type": _STATE_TOKEN_TYPE,
            "tenant_id": tenant_id,
            "ts": self._now_ms(),
            "nonce": secrets.token_urlsafe(16),
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def decode(self, state: str) -> OAuthState:
        try:
            payload = jwt.decode(state, self._secret, algorithms=[self._algorithm])
        except JWTError as exc:
            raise StateInvalidError("OAuth state is malformed or has an invalid signature.") from exc

        if payload.get("type") != _STATE_TOKEN_TYPE:
            raise StateInvalidError("OAuth state has the wrong token type.")
        tenant_id = str(payload.get("tenant_id") or "").strip()
        if not tenant_id:
            raise StateInvalidError("OAuth state is missing the tenant.")
        try:
            ts = int(payload.get("ts"))
        except (TypeError, ValueError) as exc:
            raise StateInvalidError("OAuth state has no timestamp.") from exc

        if self._now_ms() - ts > self._max_age_ms:
            raise StateExpiredError("OAuth state has expired. Restart the connection.")
        return OAuthState(tenant_id=tenant_id, ts=ts, nonce=str(payload.get("nonce") or ""))


def generate_code_verifier(length: int = PKCE_VERIFIER_LENGTH) -> str:
    return "".join(secrets.choice(_PKCE_ALPHABET) for _ in range(length))


def code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class PkceVerifierStore:
    """Verifiers keyed by state, consumed exactly once."""

    def __init__(self, store: Optional[KeyValueStore] = None, ttl_seconds: int = PKCE_VERIFIER_TTL_SECONDS) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds

    @property
    def store(self) -> KeyValueStore:
        if self._store is None:
            self._store = get_shared_store()
        return self._store

    @staticmethod
    def _key(state: str) -> str:
        return f"pkce:{hashlib.sha256(state.encode()).hexdigest()}"

    async def save(self, state: str, verifier: str) -> None:
        await self.store.set(self._key(state), verifier, ttl_seconds=self._ttl_seconds)

    async def consume(self, state: str) -> str:
        verifier = await self.store.pop(self._key(state))
        if not verifier:
            raise VerifierNotFoundError("Code verifier not found or expired")
        return verifier
