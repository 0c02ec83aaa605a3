"""
Symmetric encryption for provider credentials at rest.

OAuth access/refresh tokens, Plaid access tokens and MusicKit user tokens are
stored with Fernet (AES-128-CBC + HMAC-SHA256). The Fernet key is derived from
SECRET_KEY with HKDF-SHA256, so it is stable across restarts and rotating
SECRET_KEY makes every stored credential undecryptable (users reconnect).

Usage:
    from app.core.encryption import encrypt_token, decrypt_token

    encrypted = encrypt_token(access_token)
    access_token = decrypt_token(encrypted)
"""
import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from app.core.config import settings
from app.core.logging_config import log_error

_FERNET_INFO = b'listsync-provider-credential-encryption'

_fernet_key_cache: Optional[bytes] = None


def _get_fernet_key() -> bytes:
    """Derive (once) the Fernet key from SECRET_KEY."""
    global _fernet_key_cache

    if _fernet_key_cache is not None:
        return _fernet_key_cache

    if not settings.secret_key:
        raise ValueError(
            "SECRET_KEY must be set for encryption. "
            "Set it in your .env file or environment variables."
        )

    kdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,  # Fernet requires exactly 32 bytes
        salt=None,
        info=_FERNET_INFO,
    )
    derived_key = kdf.derive(settings.secret_key.encode('utf-8'))

    # Fernet expects a URL-safe base64-encoded 32-byte key
    _fernet_key_cache = base64.urlsafe_b64encode(derived_key)
    return _fernet_key_cache


def _get_fernet() -> Fernet:
    return Fernet(_get_fernet_key())


def encrypt_token(token: str) -> str:
    """
    Encrypt a provider credential.

    Args:
        token: The plaintext credential (access token, refresh token, feed config)
    """
    if not token or not token.strip():
        raise ValueError("Cannot encrypt empty token")

    try:
        return _get_fernet().encrypt(token.encode('utf-8')).decode('utf-8')
    except Exception as e:
        log_error(e, action="token_encryption")
        raise


def decrypt_token(encrypted_token: str) -> str:
    """
    Decrypt a credential produced by encrypt_token.

    Raises:
        ValueError: the ciphertext is corrupt or SECRET_KEY changed
    """
    if not encrypted_token or not encrypted_token.strip():
        raise ValueError("Cannot decrypt empty token")

    try:
        return _get_fernet().decrypt(encrypted_token.encode('utf-8')).decode('utf-8')
    except InvalidToken as e:
        log_error(e, action="token_decryption")
        raise ValueError(
            "Failed to decrypt token. This may indicate the token is corrupted "
            "or the SECRET_KEY has changed. "
            "The user may need to reconnect their integration."
        ) from e


def is_encrypted(value: Optional[str]) -> bool:
    """
    Heuristic check for Fernet ciphertext.

    Fernet tokens always start with "gAAAAA" (version byte 0x80 plus timestamp).
    """
    if not value:
        return False
    return value.startswith("gAAAAA")


def reset_key_cache():
    """
    Reset the cached Fernet key.

    Only for tests or a runtime SECRET_KEY change.
    """
    global _fernet_key_cache
    _fernet_key_cache = None
