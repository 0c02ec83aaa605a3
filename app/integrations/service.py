"""
Integration service layer and provider registry.

``IntegrationsService`` is the single entry point the API and the background
tasks use. It resolves a provider key to its adapter, delegates, and owns the
cross-provider concerns: the sync timeout, the all-statuses overview,
disconnect bookkeeping and the post-callback user data view.

Architecture:
- Registry: provider key → adapter instance, built from an injected list
- Adapters (app/integrations/providers): provider-specific API calls
- Persistence / TokenStore: all database writes

Design Principles:
- Unknown providers fail before any side effect
- Taxonomy exceptions pass through unchanged; anything else becomes DataSyncException
- Steps whose failure is tolerated go through ``run_best_effort``
"""
import asyncio
import uuid
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import settings
from app.core.logging_config import log_error, log_info, log_warning
from app.integrations.aggregation import SYNCED_DATA_VIEWS
from app.integrations.base import BaseProvider, run_best_effort
from app.integrations.db import AnySession
from app.integrations.exceptions import (
    DataSyncException,
    DataValidationException,
    IntegrationException,
    ProviderAPIException,
    ProviderNotFoundException,
    UserDataNotFoundException,
)
from app.integrations.location_store import LocationDataStore
from app.integrations.persistence import IntegrationPersistence
from app.integrations.providers import build_default_providers
from app.integrations.schemas import ConnectResponse, StatusResult, SyncResult
from app.integrations.token_store import DbTokenStore, TokenStore

TOP_INTEGRATIONS = 3

PROVIDER_LISTS = {
    "spotify": "Music",
    "apple_music": "Music",
    "strava": "Activity",
    "plaid": "Financial",
    "email_scraper": "Email",
    "contact_list": "Friends",
    "apple_health": "Health",
    "location_services": "Places",
    "goodreads": "Books",
}

HEALTH_DATA_TYPES = ["workouts", "healthMetrics", "steps", "heartRate", "sleep"]


def format_provider_name(provider: str) -> str:
    """'apple_health' -> 'Apple Health'."""
    return " ".join(word.capitalize() for word in provider.split("_"))


def list_for_provider(provider: str) -> str:
    return PROVIDER_LISTS.get(provider, format_provider_name(provider))


class IntegrationsService:
    """Provider registry plus cross-provider orchestration."""

    def __init__(
        self,
        providers: List[BaseProvider],
        persistence: IntegrationPersistence,
        token_store: TokenStore,
    ):
        self.providers: Dict[str, BaseProvider] = {provider.name: provider for provider in providers}
        self.persistence = persistence
        self.token_store = token_store

    def get_provider_or_throw(self, name: str) -> BaseProvider:
        provider = self.providers.get(name)
        if provider is None:
            raise ProviderNotFoundException(name)
        return provider

    # ================================================================================
    # DELEGATIONS
    # ================================================================================

    async def create_connection(self, provider: str, user_id: uuid.UUID) -> ConnectResponse:
        adapter = self.get_provider_or_throw(provider)
        log_info("Creating integration connection", provider=provider, user_id=str(user_id))
        return await adapter.create_connection(user_id)

    async def handle_callback(self, provider: str, payload: Dict[str, Any]) -> None:
        adapter = self.get_provider_or_throw(provider)
        log_info("Handling integration callback", provider=provider)
        await adapter.handle_callback(payload)

    async def status(self, provider: str, user_id: uuid.UUID) -> StatusResult:
        return await self.get_provider_or_throw(provider).status(user_id)

    async def sync(self, provider: str, user_id: uuid.UUID) -> SyncResult:
        """
        Run one provider sync under the configured timeout.

        Raises:
            ProviderNotFoundException: unknown provider
            ProviderAPIException: the sync timed out
            DataSyncException: ``ok=False`` or a failure outside the taxonomy
            IntegrationException: any taxonomy error raised by the adapter
        """
        adapter = self.get_provider_or_throw(provider)
        timeout = settings.integration_sync_timeout_seconds
        try:
            result = await asyncio.wait_for(adapter.sync(user_id), timeout=timeout)
        except Exception as exc:
            # Writes of a failed sync are discarded; the session serves the next call
            await self.persistence.rollback()
            if isinstance(exc, asyncio.TimeoutError):
                raise ProviderAPIException(provider, "sync", f"timed out after {timeout:g} seconds") from exc
            if isinstance(exc, IntegrationException):
                raise
            log_error(exc, user_id=str(user_id), provider=provider)
            raise DataSyncException(provider, str(exc)) from exc

        if not result.ok:
            raise DataSyncException(provider, result.details.get("error") or "Sync failed")
        return result

    # ================================================================================
    # CALLBACK WITH USER DATA
    # ================================================================================

    async def handle_callback_with_user_data(self, provider: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self.handle_callback(provider, payload)

        state = payload.get("state")
        if provider not in SYNCED_DATA_VIEWS or not state:
            return {"ok": True, "message": "Integration connected successfully"}

        user_id = self.get_provider_or_throw(provider).user_id_from_state(str(state))
        return await self.user_data_with_synced_content(provider, user_id)

    async def user_data_with_synced_content(self, provider: str, user_id: uuid.UUID) -> Dict[str, Any]:
        user = await self.persistence.get_user(user_id)
        if user is None:
            raise UserDataNotFoundException(provider, "user profile")

        integration_status = await self.status(provider, user_id)
        synced_data = None
        view = SYNCED_DATA_VIEWS.get(provider)
        if view is not None and integration_status.connected:
            synced_data = await view(self.persistence, user_id)

        return {
            "ok": True,
            "message": "Integration connected and data synced successfully",
            "data": {
                "user": user.to_profile(),
                "integration": {
                    "provider": provider,
                    "connected": integration_status.connected,
                    "last_synced_at": integration_status.last_synced_at,
                    "details": integration_status.details,
                },
                "synced_data": synced_data,
            },
        }

    # ================================================================================
    # OVERVIEW
    # ================================================================================

    async def get_all_statuses(self, user_id: uuid.UUID) -> Dict[str, Any]:
        """Every provider's status, top three by popularity, the rest grouped by list."""
        statuses: List[Dict[str, Any]] = []
        for name, adapter in self.providers.items():
            entry: Dict[str, Any] = {"provider": name, "provider_name": format_provider_name(name)}
            try:
                result = await adapter.status(user_id)
            except Exception as exc:
                log_warning("Provider status failed", provider=name, user_id=str(user_id), error=str(exc))
                entry.update(connected=False, last_synced_at=None, error=str(exc) or "Failed to retrieve status")
            else:
                entry.update(
                    connected=result.connected,
                    last_synced_at=result.last_synced_at,
                    popularity=result.details.get("popularity"),
                    details=result.details,
                )
            statuses.append(entry)

        # None sorts after every number; sort is stable so registry order breaks ties
        statuses.sort(key=lambda s: (s.get("popularity") is None, -(s.get("popularity") or 0)))

        by_list: Dict[str, List[Dict[str, Any]]] = {}
        for entry in statuses[TOP_INTEGRATIONS:]:
            by_list.setdefault(list_for_provider(entry["provider"]), []).append(entry)

        return {
            "user_id": str(user_id),
            "top_integrations": statuses[:TOP_INTEGRATIONS],
            "integrations_by_list": by_list,
            "total_integrations": len(statuses),
            "connected_integrations": sum(1 for entry in statuses if entry["connected"]),
        }

    # ================================================================================
    # DISCONNECT
    # ================================================================================

    async def disconnect(self, provider: str, user_id: uuid.UUID) -> Dict[str, Any]:
        """
        Revoke (best effort), drop the stored token (best effort) and mark the
        link DISCONNECTED. Only the final status write may raise.
        """
        adapter = self.get_provider_or_throw(provider)
        current = await adapter.status(user_id)
        if not current.connected:
            return {
                "status_code": 400,
                "connection_status": "not_connected",
                "message": f"Not connected to {provider}",
            }

        context = {"provider": provider, "user_id": str(user_id)}
        await run_best_effort(f"{provider} revocation", adapter.disconnect(user_id), **context)
        deleted = await run_best_effort(
            f"{provider} token deletion", self.token_store.delete(user_id, provider), **context
        )
        if not deleted.ok:
            await self.persistence.rollback()
        await self.persistence.mark_disconnected(user_id, provider)

        log_info("Integration disconnected", **context)
        return {
            "status_code": 200,
            "connection_status": "disconnected",
            "message": f"Successfully disconnected from {provider}",
        }

    # ================================================================================
    # DEVICE AND IMPORT FLOWS
    # ================================================================================

    def _capable(self, provider: str, method: str):
        adapter = self.get_provider_or_throw(provider)
        handler = getattr(adapter, method, None)
        if handler is None:
            raise DataValidationException(provider, f"{format_provider_name(provider)} does not support {method}")
        return handler

    async def handle_apple_health_upload(
        self, user_id: uuid.UUID, upload_token: str, health_data: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self._capable("apple_health", "handle_data_upload")(user_id, upload_token, health_data)

    async def handle_apple_music_authorization(
        self, user_id: uuid.UUID, music_user_token: str, state: Optional[str] = None
    ) -> Dict[str, Any]:
        adapter = self.get_provider_or_throw("apple_music")
        await adapter.handle_callback({
            "music_user_token": music_user_token,
            "state": state or adapter.new_state(user_id),
        })
        return {"ok": True, "message": "Apple Music authorized successfully"}

    async def submit_locations(self, user_id: uuid.UUID, locations: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._capable("location_services", "submit_locations")(user_id, locations)

    async def import_goodreads_csv(self, user_id: uuid.UUID, csv_data: str) -> Dict[str, Any]:
        return await self._capable("goodreads", "import_csv")(user_id, csv_data)

    async def get_integration_config(self, provider: str, user_id: uuid.UUID) -> Dict[str, Any]:
        """What a mobile client needs to drive a provider's device-side flow."""
        adapter = self.get_provider_or_throw(provider)
        current = await adapter.status(user_id)
        config: Dict[str, Any] = {
            "provider": provider,
            "connected": current.connected,
            "last_synced_at": current.last_synced_at,
        }

        if provider == "apple_health":
            config.update(
                upload_endpoint=settings.apple_health_upload_endpoint or "/api/v1/integrations/apple_health/upload",
                supported_data_types=HEALTH_DATA_TYPES,
            )
            if current.connected:
                # Status never exposes the token; connected clients get a fresh one here
                config["upload_token"] = await adapter.issue_upload_token(user_id)
        elif provider == "apple_music":
            config.update(
                authorization_url="https://authorize.music.apple.com/woa",
                supported_data_types=["recentlyPlayed", "librarySongs", "playlists"],
                details=current.details,
            )
        elif provider == "strava":
            config.update(
                authorization_url="https://www.strava.com/oauth/authorize",
                supported_data_types=["activities"],
            )
        else:
            config["details"] = current.details
        return config

    async def get_connected_user_data(
        self, provider: str, user_id: uuid.UUID, force_sync: bool = True
    ) -> Dict[str, Any]:
        """
        User profile plus synced data for a connected provider.

        Only an unknown provider raises; any other failure comes back as
        ``ok=False`` with the message.
        """
        self.get_provider_or_throw(provider)
        try:
            current = await self.status(provider, user_id)
            if not current.connected:
                return {
                    "ok": False,
                    "connected": False,
                    "message": f"User is not connected to {provider}. Please connect first.",
                    "data": None,
                }
            if force_sync:
                await run_best_effort(
                    f"{provider} forced sync", self.sync(provider, user_id),
                    provider=provider, user_id=str(user_id),
                )
            result = await self.user_data_with_synced_content(provider, user_id)
            return {**result, "connected": True}
        except Exception as exc:
            log_error(exc, user_id=str(user_id), provider=provider)
            return {
                "ok": False,
                "connected": False,
                "message": f"Failed to fetch data for {provider}: {exc}",
                "data": None,
            }


def build_integrations_service(
    session: AnySession,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    token_store: Optional[TokenStore] = None,
) -> IntegrationsService:
    """Service wired to one session, the encrypted token table and every provider."""
    persistence = IntegrationPersistence(session)
    token_store = token_store or DbTokenStore(session)
    location_store = LocationDataStore(session, persistence)
    providers = build_default_providers(persistence, token_store, location_store, transport)
    return IntegrationsService(providers, persistence, token_store)
