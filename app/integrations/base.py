"""
Provider adapter contract and the machinery shared by every adapter.

Contents:
- BaseProvider: abstract adapter (connect, callback, sync, status, disconnect)
- OAuthTokenMixin: authlib-backed code exchange, and token refresh under a per-(user, provider) lock
- Result / run_best_effort: explicit outcome of steps whose failure is tolerated
- classify_http_error: httpx failures mapped onto the exception taxonomy

Adding a provider:
- Subclass BaseProvider (and OAuthTokenMixin for refreshable OAuth tokens)
- Set ``name``, ``display_name``, ``state_prefix`` and ``list_name``
- Register it in app/integrations/providers/__init__.py
"""
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, Optional, Tuple, Type, TypeVar

import httpx
from authlib.integrations.httpx_client import AsyncOAuth2Client, OAuthError

from app.core.config import settings
from app.core.http_client import build_timeout, get_http_client
from app.core.logging_config import log_debug, log_error, log_info, log_sync_event, log_warning
from app.core.time_utils import epoch_seconds, sync_window_start, utc_now
from app.integrations.exceptions import (
    ConfigurationException,
    IntegrationException,
    InvalidTokenException,
    OAuthAuthenticationException,
    ProviderAPIException,
    RateLimitException,
    RefreshTokenException,
)
from app.integrations.persistence import IntegrationPersistence
from app.integrations.schemas import ConnectResponse, StatusResult, SyncResult
from app.integrations.state import issue_state, resolve_state_user_id
from app.integrations.token_store import StoredToken, TokenStore, refresh_locks
from app.models.enums import IntegrationStatus
from app.models.integration import Integration, UserIntegration

T = TypeVar("T")

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


# ================================================================================
# BEST-EFFORT RESULTS
# ================================================================================

class Result(Generic[T]):
    """Outcome of a step whose failure the caller tolerates."""

    __slots__ = ("ok", "value", "error")

    def __init__(self, ok: bool, value: Optional[T] = None, error: Optional[BaseException] = None):
        self.ok = ok
        self.value = value
        self.error = error

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(True, value=value)

    @classmethod
    def failure(cls, error: BaseException) -> "Result[T]":
        return cls(False, error=error)

    def __repr__(self) -> str:
        return f"Result(ok={self.ok}, error={self.error!r})"


async def run_best_effort(label: str, awaitable: Awaitable[T], **context) -> Result[T]:
    """
    Await ``awaitable`` and capture any failure as a Result.

    The failure is logged as a warning; callers decide whether to look at it.
    Cancellation is never captured.
    """
    try:
        value = await awaitable
    except Exception as exc:
        log_warning(f"Best-effort step failed: {label}", error=str(exc), **context)
        return Result.failure(exc)
    return Result.success(value)


# ================================================================================
# HTTP ERROR CLASSIFICATION
# ================================================================================

def retry_after_seconds(response: Optional[httpx.Response]) -> Optional[int]:
    if response is None:
        return None
    value = response.headers.get("Retry-After")
    if value and value.strip().isdigit():
        return int(value.strip())
    return None


def classify_http_error(
    provider: str,
    exc: httpx.HTTPError,
    operation: str,
    auth_error: Type[IntegrationException] = InvalidTokenException,
) -> IntegrationException:
    """
    Map an httpx failure onto the taxonomy.

    401/403 -> ``auth_error``; 429 -> RateLimitException; any other status or
    a transport failure -> ProviderAPIException.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return auth_error(provider, f"HTTP {status} during {operation}")
        if status == 429:
            return RateLimitException(provider, retry_after_seconds(exc.response))
        return ProviderAPIException(provider, operation, f"HTTP {status}", upstream_status=status)
    if isinstance(exc, httpx.TimeoutException):
        return ProviderAPIException(provider, operation, "request timed out")
    return ProviderAPIException(provider, operation, str(exc) or exc.__class__.__name__)


def is_systemic(exc: BaseException) -> bool:
    """
    Whether a failure invalidates the whole sync rather than one resource.

    Auth, rate limit, configuration, 5xx and transport failures are systemic;
    4xx answers for a single resource and malformed records are not.
    """
    if isinstance(exc, (
        InvalidTokenException,
        RefreshTokenException,
        RateLimitException,
        OAuthAuthenticationException,
        ConfigurationException,
    )):
        return True
    if isinstance(exc, ProviderAPIException):
        return exc.upstream_status is None or exc.upstream_status >= 500
    return False


# ================================================================================
# PROVIDER CONTRACT
# ================================================================================

class BaseProvider(ABC):
    """Abstract base for all provider adapters."""

    name: str = ""
    display_name: str = ""
    state_prefix: str = ""
    list_name: str = ""

    def __init__(
        self,
        persistence: IntegrationPersistence,
        token_store: TokenStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.persistence = persistence
        self.token_store = token_store
        self.transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    # -- contract -------------------------------------------------------------

    @abstractmethod
    async def create_connection(self, user_id: uuid.UUID) -> ConnectResponse:
        """Validate configuration and return what the client needs to authorize."""

    @abstractmethod
    async def handle_callback(self, payload: Dict[str, Any]) -> None:
        """Complete authorization from the provider's callback payload."""

    @abstractmethod
    async def sync(self, user_id: uuid.UUID) -> SyncResult:
        """Pull the user's data since the last sync into list items."""

    async def status(self, user_id: uuid.UUID) -> StatusResult:
        integration = await self.persistence.get_integration(self.name)
        if integration is None:
            return StatusResult(
                connected=False, last_synced_at=None, details={"integration_id": None, "popularity": None}
            )
        link = await self.persistence.get_link(user_id, integration.id)
        connected = link is not None and link.status == IntegrationStatus.CONNECTED
        last_synced_at = await self.persistence.get_last_synced_at(user_id, integration.id)
        details = {
            "integration_id": str(integration.id),
            "popularity": integration.popularity,
        }
        if connected:
            details.update(await self.status_details(user_id))
        return StatusResult(connected=connected, last_synced_at=last_synced_at, details=details)

    async def status_details(self, user_id: uuid.UUID) -> Dict[str, Any]:
        """Provider-specific extras for a connected user."""
        return {}

    async def disconnect(self, user_id: uuid.UUID) -> None:
        """Revoke provider-side access where the provider supports it."""
        return None

    def validate_config(self) -> None:
        """Raise ConfigurationException when required settings are missing."""
        return None

    # -- helpers --------------------------------------------------------------

    def require_settings(self, **values: Optional[str]) -> None:
        missing = [key.upper() for key, value in values.items() if not value]
        if missing:
            raise ConfigurationException(self.name, ", ".join(missing))

    def new_state(self, user_id: uuid.UUID) -> str:
        return issue_state(self.name, self.state_prefix, user_id)

    def user_id_from_state(self, state: Optional[str]) -> uuid.UUID:
        return resolve_state_user_id(state, self.name, self.state_prefix)

    async def http(self) -> httpx.AsyncClient:
        """The shared client, or a private one over the injected transport."""
        if self.transport is None:
            return await get_http_client()
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(transport=self.transport, timeout=build_timeout())
        return self._http_client

    async def request(
        self,
        method: str,
        url: str,
        operation: str,
        *,
        auth_error: Type[IntegrationException] = InvalidTokenException,
        **kwargs,
    ) -> httpx.Response:
        """Send a request and raise a taxonomy exception on any failure."""
        client = await self.http()
        try:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(self.name, exc, operation, auth_error) from exc
        return response

    async def link_for(self, user_id: uuid.UUID) -> Tuple[Integration, UserIntegration]:
        integration = await self.persistence.ensure_integration(self.name)
        link = await self.persistence.ensure_user_integration(user_id, integration.id)
        return integration, link

    async def mark_connected(self, user_id: uuid.UUID) -> UserIntegration:
        integration = await self.persistence.ensure_integration(self.name)
        return await self.persistence.mark_connected(user_id, integration.id)

    async def sync_window(
        self, user_id: uuid.UUID, default_days: int
    ) -> Tuple[Integration, UserIntegration, datetime]:
        """Link plus the start of the incremental window."""
        integration, link = await self.link_for(user_id)
        last = await self.persistence.get_last_synced_at(user_id, integration.id)
        return integration, link, sync_window_start(last, default_days)

    async def run_resource(
        self,
        resource: str,
        fetch: Callable[[], Awaitable[int]],
        details: Dict[str, Any],
        user_id: Optional[uuid.UUID] = None,
    ) -> int:
        """
        Sync one resource type in isolation.

        Systemic failures propagate. Anything else, including malformed
        provider records, is logged and recorded under ``details["errors"]``
        and the remaining resources continue.
        """
        try:
            count = await fetch()
        except IntegrationException as exc:
            if is_systemic(exc):
                raise
            self._record_resource_error(resource, exc, details, user_id)
            return 0
        except Exception as exc:
            self._record_resource_error(resource, exc, details, user_id)
            return 0
        details.setdefault("counts", {})[resource] = count
        return count

    def _record_resource_error(self, resource, exc, details, user_id) -> None:
        log_error(exc, user_id=str(user_id) if user_id else None, provider=self.name, resource=resource)
        details.setdefault("errors", []).append({"resource": resource, "error": str(exc)})

    async def save_items(
        self,
        user_id: uuid.UUID,
        list_name: str,
        category_name: Optional[str],
        items: Iterable[Tuple[str, Dict[str, Any]]],
    ) -> int:
        """Upsert ``(title, attributes)`` pairs into one list bucket, in order."""
        target = None
        count = 0
        for title, attributes in items:
            if target is None:
                target = await self.persistence.ensure_list_and_category(user_id, list_name, category_name)
            await self.persistence.upsert_list_item(target, title, attributes, attribute_types(attributes))
            count += 1
        return count

    async def finish_sync(
        self,
        user_id: uuid.UUID,
        link: UserIntegration,
        details: Dict[str, Any],
        synced_at: Optional[datetime] = None,
    ) -> SyncResult:
        """Stamp the link as synced and build the result."""
        synced_at = synced_at or utc_now()
        await self.persistence.mark_synced(link.id, synced_at)
        log_sync_event(
            self.name, str(user_id), "completed",
            counts=details.get("counts", {}), errors=len(details.get("errors", [])),
        )
        return SyncResult(ok=True, synced_at=synced_at, details=details)

    async def auto_sync(self, user_id: uuid.UUID) -> Result[SyncResult]:
        """Opportunistic sync right after a successful connect."""
        return await run_best_effort(
            f"{self.name} post-connect sync", self.sync(user_id),
            provider=self.name, user_id=str(user_id),
        )


# ================================================================================
# OAUTH TOKEN LIFECYCLE
# ================================================================================

def token_from_payload(payload: Dict[str, Any], previous: Optional[StoredToken] = None) -> StoredToken:
    """
    Build a StoredToken from a token endpoint response.

    Keeps the previous refresh token when the response has none and makes
    ``expires_at`` strictly later than the previous one.
    """
    now = epoch_seconds()
    if payload.get("expires_at"):
        expires_at = int(payload["expires_at"])
    else:
        expires_at = now + int(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
    if previous is not None and expires_at <= previous.expires_at:
        expires_at = previous.expires_at + 1

    return StoredToken(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token") or (previous.refresh_token if previous else None),
        expires_at=expires_at,
        scope=payload.get("scope") or (previous.scope if previous else None),
        provider_user_id=(previous.provider_user_id if previous else None),
    )


def _raise_for_status(response: httpx.Response) -> httpx.Response:
    response.raise_for_status()
    return response


class OAuthTokenMixin:
    """
    Authorization-code flow and access-token lifecycle for OAuth providers.

    Subclasses set ``authorize_url``, ``token_url`` and ``scopes`` and provide
    ``oauth_credentials`` and ``redirect_uri``. Token endpoint calls go through
    authlib's AsyncOAuth2Client over the provider's transport.
    """

    name: str
    token_store: TokenStore
    transport: Optional[httpx.AsyncBaseTransport]

    authorize_url: str = ""
    token_url: str = ""
    scopes: str = ""
    token_endpoint_auth_method: str = "client_secret_post"

    def oauth_credentials(self) -> Tuple[Optional[str], Optional[str]]:
        raise NotImplementedError

    def redirect_uri(self) -> Optional[str]:
        raise NotImplementedError

    def oauth_client(self) -> AsyncOAuth2Client:
        client_id, client_secret = self.oauth_credentials()
        client = AsyncOAuth2Client(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=self.redirect_uri(),
            token_endpoint_auth_method=self.token_endpoint_auth_method,
            timeout=build_timeout(),
            transport=self.transport,
        )
        # Error statuses surface as httpx errors so they classify like any other call
        client.register_compliance_hook("access_token_response", _raise_for_status)
        client.register_compliance_hook("refresh_token_response", _raise_for_status)
        return client

    async def authorization_url(self, state: str, **params) -> str:
        async with self.oauth_client() as client:
            url, _ = client.create_authorization_url(
                self.authorize_url, state=state, scope=self.scopes, **params
            )
        return url

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Trade an authorization code for the token endpoint's response."""
        async with self.oauth_client() as client:
            try:
                token = await client.fetch_token(self.token_url, code=code)
            except httpx.HTTPError as exc:
                raise classify_http_error(self.name, exc, "token exchange", OAuthAuthenticationException) from exc
            except (OAuthError, ValueError) as exc:
                raise OAuthAuthenticationException(self.name, str(exc)) from exc
        return dict(token)

    async def request_token_refresh(self, refresh_token: str) -> Dict[str, Any]:
        async with self.oauth_client() as client:
            token = await client.refresh_token(self.token_url, refresh_token=refresh_token)
        return dict(token)

    async def ensure_valid_access_token(self, user_id: uuid.UUID) -> str:
        skew = settings.integration_token_refresh_skew_seconds
        token = await self.token_store.get(user_id, self.name)
        if token is None:
            raise InvalidTokenException(self.name, "no stored token")
        if token.seconds_remaining() > skew:
            return token.access_token

        async with refresh_locks.get(user_id, self.name):
            # Another caller may have refreshed while we waited
            token = await self.token_store.get(user_id, self.name)
            if token is None:
                raise InvalidTokenException(self.name, "no stored token")
            if token.seconds_remaining() > skew:
                return token.access_token
            if not token.refresh_token:
                raise InvalidTokenException(self.name, "token expired and no refresh token")

            refreshed = await self._refresh(token)
            await self.token_store.set(user_id, self.name, refreshed)
            log_info("Access token refreshed", provider=self.name, user_id=str(user_id))
            return refreshed.access_token

    async def _refresh(self, token: StoredToken) -> StoredToken:
        try:
            payload = await self.request_token_refresh(token.refresh_token)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            log_debug("Token refresh rejected", provider=self.name, status=status)
            if status in (400, 401):
                raise RefreshTokenException(self.name, f"HTTP {status}") from exc
            if status == 429:
                raise RateLimitException(self.name, retry_after_seconds(exc.response)) from exc
            raise ProviderAPIException(self.name, "token refresh", f"HTTP {status}", upstream_status=status) from exc
        except httpx.HTTPError as exc:
            raise classify_http_error(self.name, exc, "token refresh", RefreshTokenException) from exc
        except (OAuthError, ValueError) as exc:
            raise RefreshTokenException(self.name, str(exc)) from exc

        if not payload.get("access_token"):
            raise RefreshTokenException(self.name, "refresh response had no access_token")
        return token_from_payload(payload, previous=token)


def attribute_types(attributes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Data-type descriptor mirroring an attributes dict.

    Example:
        >>> attribute_types({"name": "Run", "distance": 5.2, "external": {"id": "1"}})
        {'name': 'string', 'distance': 'number', 'external': {'id': 'string'}}
    """
    types: Dict[str, Any] = {}
    for key, value in attributes.items():
        if isinstance(value, dict):
            types[key] = attribute_types(value)
        elif isinstance(value, bool):
            types[key] = "boolean"
        elif isinstance(value, (int, float)):
            types[key] = "number"
        elif isinstance(value, (list, tuple)):
            types[key] = "array"
        else:
            types[key] = "string"
    return types
