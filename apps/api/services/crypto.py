"""
Encryption of provider OAuth tokens at rest (Fernet).
"""

import base64
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings


_KDF_SALT = b"social_sync_engine_token_salt"


class TokenDecryptionError(ValueError):
    """Stored ciphertext cannot be decrypted with the configured key."""


@lru_cache(maxsize=4)
def _fernet_for_key(key: str) -> Fernet:
    # Raw 32-char keys are used directly, anything else is stretched with PBKDF2.
    if len(key) == 32:
        material = base64.urlsafe_b64encode(key.encode())
    else:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_KDF_SALT,
            iterations=100000,
        )
        material = base64.urlsafe_b64encode(kdf.derive(key.encode()))
    return Fernet(material)


def _get_fernet() -> Fernet:
    return _fernet_for_key(settings.ENCRYPTION_KEY)


def encrypt_token(token: str) -> str:
    """
    Encrypt an access or refresh token for storage.

    Args:
        token: Plain text token

    Returns:
        Fernet ciphertext as text
    """
    return _get_fernet().encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """
    Decrypt a stored token.

    Raises:
        TokenDecryptionError: ciphertext is corrupt or was written with another key
    """
    try:
        return _get_fernet().decrypt(encrypted_token.encode()).decode()
    except InvalidToken as exc:
        raise TokenDecryptionError("Stored token could not be decrypted.") from exc


def decrypt_optional(encrypted_token: Optional[str]) -> Optional[str]:
    return decrypt_token(encrypted_token) if encrypted_token else None
