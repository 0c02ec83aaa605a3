"""
OAuth callback state.

Two formats are accepted on callbacks:

- legacy: ``"<prefix><userId>-<unixMillis>"`` (e.g. ``spotify-<uuid>-1718000000000``).
  The user id is everything between the prefix and the *last* hyphen, so ids
  containing hyphens (UUIDs) parse correctly as long as the timestamp is last.
  The state is unsigned and trusts the caller; it exists for mobile clients
  that build it themselves.
- signed: ``"v1.<base64url(claims)>.<hmac>"`` with claims
  ``{provider, user_id, issued_at, nonce}``, signed with a key derived from
  SECRET_KEY (see app/core/signing.py) and bounded by a max age.

``issue_state`` emits the signed form when ``INTEGRATION_SIGNED_STATE`` is on.
"""
import base64
import binascii
import json
import secrets
import uuid
from typing import Any, Dict, Optional

from app.core.config import settings
from app.core.signing import canonical_json, generate_canonical_signature, verify_canonical_signature
from app.core.time_utils import epoch_millis, epoch_seconds
from app.integrations.exceptions import InvalidCallbackException

SIGNED_STATE_VERSION = "v1"


def build_legacy_state(prefix: str, user_id: uuid.UUID | str, now_ms: Optional[int] = None) -> str:
    return f"{prefix}{user_id}-{now_ms if now_ms is not None else epoch_millis()}"


def parse_legacy_state(state: str, prefix: str, provider: str) -> str:
    """
    Extract the user id from a legacy state string.

    Raises:
        InvalidCallbackException: wrong prefix, no timestamp, or empty user id
    """
    if not state.startswith(prefix):
        got = state.split("-", 1)[0]
        raise InvalidCallbackException(
            provider, f"Invalid state prefix: expected '{prefix}', got '{got}-'"
        )

    rest = state[len(prefix):]
    last_hyphen = rest.rfind("-")
    if last_hyphen == -1:
        raise InvalidCallbackException(provider, "Invalid state format: missing timestamp")

    user_id = rest[:last_hyphen]
    if not user_id:
        raise InvalidCallbackException(provider, "Missing userId in state parameter")
    return user_id


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def issue_signed_state(provider: str, user_id: uuid.UUID | str, now: Optional[int] = None) -> str:
    issued_at = now if now is not None else epoch_seconds()
    claims = {
        "provider": provider,
        "user_id": str(user_id),
        "issued_at": issued_at,
        "nonce": secrets.token_urlsafe(12),
    }
    signature = generate_canonical_signature(
        provider=provider, issued_at=issued_at, claims=claims, secret=settings.secret_key
    )
    payload = _b64encode(canonical_json(claims).encode("utf-8"))
    return f"{SIGNED_STATE_VERSION}.{payload}.{signature}"


def is_signed_state(state: str) -> bool:
    return state.startswith(f"{SIGNED_STATE_VERSION}.") and state.count(".") == 2


def verify_signed_state(
    state: str,
    provider: str,
    max_age: Optional[int] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Verify a signed state and return its claims.

    Raises:
        InvalidCallbackException: malformed, bad signature, other provider, or expired
    """
    try:
        _, payload, signature = state.split(".")
        claims = json.loads(_b64decode(payload))
    except (ValueError, binascii.Error, UnicodeDecodeError):
        raise InvalidCallbackException(provider, "Malformed state parameter")

    if not isinstance(claims, dict) or "issued_at" not in claims:
        raise InvalidCallbackException(provider, "Malformed state parameter")

    if not verify_canonical_signature(
        provider=str(claims.get("provider", "")),
        issued_at=claims["issued_at"],
        claims=claims,
        secret=settings.secret_key,
        signature=signature,
    ):
        raise InvalidCallbackException(provider, "State signature mismatch")

    if claims.get("provider") != provider:
        raise InvalidCallbackException(
            provider, f"State was issued for '{claims.get('provider')}'"
        )

    max_age = max_age if max_age is not None else settings.integration_state_max_age_seconds
    current = now if now is not None else epoch_seconds()
    if current - int(claims["issued_at"]) > max_age:
        raise InvalidCallbackException(provider, "State has expired")

    if not claims.get("user_id"):
        raise InvalidCallbackException(provider, "Missing userId in state parameter")
    return claims


def issue_state(provider: str, prefix: str, user_id: uuid.UUID | str) -> str:
    """State for a new connection attempt, in the configured format."""
    if settings.integration_signed_state:
        return issue_signed_state(provider, user_id)
    return build_legacy_state(prefix, user_id)


def resolve_state_user_id(state: Optional[str], provider: str, prefix: str) -> uuid.UUID:
    """
    The user id a callback state belongs to.

    Raises:
        InvalidCallbackException: missing, malformed or unverifiable state
    """
    if not state:
        raise InvalidCallbackException(provider, "Missing state parameter")

    if is_signed_state(state):
        raw_user_id = verify_signed_state(state, provider)["user_id"]
    else:
        raw_user_id = parse_legacy_state(state, prefix, provider)

    try:
        return uuid.UUID(str(raw_user_id))
    except ValueError:
        raise InvalidCallbackException(provider, "Invalid userId in state parameter")
