"""
Canonical HMAC-SHA256 signing for OAuth callback state.

Callback state travels through the user's browser and the provider, so it is
signed to bind it to one provider and one user. The signature is computed over
a canonical message:

    LISTSYNC-STATE-V1
    <PROVIDER>
    <ISSUED_AT>
    <SHA256_HEX_OF_CANONICAL_JSON_CLAIMS>

The signing key is derived from SECRET_KEY and is never the raw SECRET_KEY, so
a leaked state signature says nothing about the Fernet key used for tokens.
"""

import hashlib
import hmac
import json
from typing import Any, Dict

CANONICAL_PREFIX = "LISTSYNC-STATE-V1"


def derive_state_key(secret: str) -> bytes:
    """Derive the state signing key from the application secret."""
    return hmac.new(
        secret.encode('utf-8'),
        b'listsync-callback-state',
        hashlib.sha256,
    ).digest()


def canonical_json(claims: Dict[str, Any]) -> str:
    """Sort keys, no whitespace."""
    try:
        return json.dumps(claims, sort_keys=True, separators=(',', ':'))
    except (TypeError, ValueError) as e:
        raise ValueError(
            f"state claims contain non-JSON-serializable value: {str(e)}"
        ) from e


def generate_canonical_signature(
    *,
    provider: str,
    issued_at: int,
    claims: Dict[str, Any],
    secret: str,
) -> str:
    """
    Generate HMAC-SHA256 signature using the canonical state format.

    Args:
        provider: Provider key the state is issued for (e.g., "spotify")
        issued_at: Unix timestamp in seconds
        claims: Claims dictionary (canonicalized before hashing)
        secret: Application SECRET_KEY

    Returns:
        Hex-encoded HMAC-SHA256 signature (64 characters)

    Raises:
        ValueError: If provider contains newline characters or claims are not JSON-serializable
    """
    if '\n' in provider or '\r' in provider:
        raise ValueError(
            f"Provider contains invalid newline characters: {repr(provider)}"
        )

    claims_hash = hashlib.sha256(canonical_json(claims).encode('utf-8')).hexdigest()
    canonical_message = f"{CANONICAL_PREFIX}\n{provider}\n{issued_at}\n{claims_hash}"

    return hmac.new(
        derive_state_key(secret),
        canonical_message.encode('utf-8'),
        hashlib.sha256,
    ).hexdigest()


def verify_canonical_signature(
    *,
    provider: str,
    issued_at: int,
    claims: Dict[str, Any],
    secret: str,
    signature: str,
) -> bool:
    """Constant-time comparison against a freshly computed signature."""
    expected = generate_canonical_signature(
        provider=provider, issued_at=issued_at, claims=claims, secret=secret
    )
    return hmac.compare_digest(expected, signature)
