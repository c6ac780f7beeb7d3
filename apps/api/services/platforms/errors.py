"""Error taxonomy for provider API calls, token handling and OAuth handshakes."""

from __future__ import annotations

from typing import Any, Optional


class SocialApiError(Exception):
    """A provider call failed with a parsed, structured error."""

    def __init__(
        self,
        *,
        platform: str,
        endpoint: str,
        status_code: int,
        message: str,
        raw_body: Any = None,
    ) -> None:
        super().__init__(message)
        self.platform = platform
        self.endpoint = endpoint
        self.status_code = status_code
        self.message = message
        self.raw_body = raw_body

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(platform={self.platform!r}, endpoint={self.endpoint!r}, "
            f"status_code={self.status_code}, message={self.message!r})"
        )


class TransientApiError(SocialApiError):
    """Timeout (408), network failure (0) or throttling (429). Retried with backoff."""


class TokenExpiredError(SocialApiError):
    """The provider rejected the access token (401)."""


class TokenVaultError(RuntimeError):
    """Base error for stored-token operations."""


class AccountNotFoundError(TokenVaultError):
    pass


class RefreshFailedError(TokenVaultError):
    """Terminal: the account has been marked expired and needs a fresh OAuth connect."""

    def __init__(self, account_id: str, platform: str, reason: str) -> None:
        super().__init__(f"Token refresh failed for {platform} account {account_id}: {reason}")
        self.account_id = account_id
        self.platform = platform
        self.reason = reason


class OAuthStateError(ValueError):
    """Base error for OAuth state and PKCE verification. Never retried."""

    error_code = "invalid_state"


class StateExpiredError(OAuthStateError):
    error_code = "state_expired"


class StateInvalidError(OAuthStateError):
    error_code = "invalid_state"


class StateMismatchError(OAuthStateError):
    error_code = "state_mismatch"


class VerifierNotFoundError(OAuthStateError):
    error_code = "verifier_missing"
