"""
Unit tests for IntegrationsService orchestration with stub adapters.
"""
import asyncio
from typing import Any, Dict, Optional

import pytest

from app.core.config import settings
from app.integrations import db
from app.integrations.base import BaseProvider
from app.integrations.exceptions import (
    DataSyncException,
    ProviderAPIException,
    ProviderNotFoundException,
    RateLimitException,
)
from app.integrations.schemas import ConnectResponse, StatusResult, SyncResult
from app.integrations.service import IntegrationsService, format_provider_name, list_for_provider
from app.integrations.token_store import InMemoryTokenStore
from app.models.integration import Integration
from tests.lib import make_token


class StubProvider(BaseProvider):
    """Adapter whose sync and revoke behaviour is set per test."""

    def __init__(self, name, persistence, token_store, sync_behaviour=None, revoke_error=None):
        super().__init__(persistence, token_store)
        self.name = name
        self.state_prefix = f"{name}-"
        self.sync_behaviour = sync_behaviour
        self.revoke_error = revoke_error
        self.revoked = False

    async def create_connection(self, user_id):
        return ConnectResponse(provider=self.name, state=self.new_state(user_id))

    async def handle_callback(self, payload):
        await self.mark_connected(self.user_id_from_state(payload.get("state")))

    async def sync(self, user_id):
        if self.sync_behaviour is not None:
            return await self.sync_behaviour()
        return SyncResult(ok=True, details={"counts": {}})

    async def disconnect(self, user_id):
        self.revoked = True
        if self.revoke_error is not None:
            raise self.revoke_error


class FixedStatusProvider(StubProvider):
    def __init__(self, name, persistence, token_store, popularity: Optional[int], connected=False):
        super().__init__(name, persistence, token_store)
        self.popularity = popularity
        self.connected = connected

    async def status(self, user_id):
        details: Dict[str, Any] = {}
        if self.popularity is not None:
            details["popularity"] = self.popularity
        return StatusResult(connected=self.connected, details=details)


def make_service(persistence, token_store, *providers):
    return IntegrationsService(list(providers), persistence, token_store)


class TestRegistry:
    def test_unknown_provider(self, persistence, token_store):
        service = make_service(persistence, token_store)

        with pytest.raises(ProviderNotFoundException) as exc_info:
            service.get_provider_or_throw("myspace")
        assert exc_info.value.status_code == 404

    def test_provider_names_and_lists(self):
        assert format_provider_name("apple_health") == "Apple Health"
        assert list_for_provider("strava") == "Activity"
        assert list_for_provider("brand_new") == "Brand New"

    @pytest.mark.asyncio
    async def test_connect_then_callback_connects(self, persistence, token_store, user_id):
        service = make_service(persistence, token_store, StubProvider("strava", persistence, token_store))

        connection = await service.create_connection("strava", user_id)
        await service.handle_callback("strava", {"state": connection.state})

        assert (await service.status("strava", user_id)).connected


class TestSync:
    @pytest.mark.asyncio
    async def test_success_passes_result_through(self, persistence, token_store, user_id):
        service = make_service(persistence, token_store, StubProvider("strava", persistence, token_store))

        result = await service.sync("strava", user_id)
        assert result.ok

    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_api_error(self, persistence, token_store, user_id, monkeypatch):
        monkeypatch.setattr(settings, "integration_sync_timeout_seconds", 0.01)

        async def hang():
            await asyncio.sleep(1)

        service = make_service(persistence, token_store, StubProvider("strava", persistence, token_store, hang))

        with pytest.raises(ProviderAPIException, match="timed out"):
            await service.sync("strava", user_id)

    @pytest.mark.asyncio
    async def test_taxonomy_errors_pass_through(self, persistence, token_store, user_id):
        async def limited():
            raise RateLimitException("strava", 60)

        service = make_service(persistence, token_store, StubProvider("strava", persistence, token_store, limited))

        with pytest.raises(RateLimitException):
            await service.sync("strava", user_id)

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_data_sync_error(self, persistence, token_store, user_id):
        async def crash():
            raise RuntimeError("disk full")

        service = make_service(persistence, token_store, StubProvider("strava", persistence, token_store, crash))

        with pytest.raises(DataSyncException, match="disk full"):
            await service.sync("strava", user_id)

    @pytest.mark.asyncio
    async def test_failed_write_is_rolled_back(self, persistence, token_store, user_id):
        async def duplicate_row():
            persistence.session.add(Integration(name="strava", popularity=0))
            await db.flush(persistence.session)

        adapter = StubProvider("strava", persistence, token_store, duplicate_row)
        service = make_service(persistence, token_store, adapter)
        await adapter.mark_connected(user_id)

        with pytest.raises(DataSyncException):
            await service.sync("strava", user_id)

        assert (await service.status("strava", user_id)).connected

    @pytest.mark.asyncio
    async def test_not_ok_result_becomes_data_sync_error(self, persistence, token_store, user_id):
        async def failed():
            return SyncResult(ok=False, details={"error": "nothing to sync"})

        service = make_service(persistence, token_store, StubProvider("strava", persistence, token_store, failed))

        with pytest.raises(DataSyncException, match="nothing to sync"):
            await service.sync("strava", user_id)


class TestAllStatuses:
    @pytest.mark.asyncio
    async def test_top_three_by_popularity(self, persistence, token_store, user_id):
        service = make_service(
            persistence, token_store,
            FixedStatusProvider("goodreads", persistence, token_store, None),
            FixedStatusProvider("strava", persistence, token_store, 5, connected=True),
            FixedStatusProvider("spotify", persistence, token_store, 9),
            FixedStatusProvider("plaid", persistence, token_store, 1),
            FixedStatusProvider("apple_music", persistence, token_store, 5),
        )

        overview = await service.get_all_statuses(user_id)

        assert [entry["provider"] for entry in overview["top_integrations"]] == ["spotify", "strava", "apple_music"]
        assert [entry["provider"] for entry in overview["integrations_by_list"]["Financial"]] == ["plaid"]
        assert [entry["provider"] for entry in overview["integrations_by_list"]["Books"]] == ["goodreads"]
        assert overview["total_integrations"] == 5
        assert overview["connected_integrations"] == 1

    @pytest.mark.asyncio
    async def test_failing_status_reported_not_raised(self, persistence, token_store, user_id):
        class Broken(StubProvider):
            async def status(self, user_id):
                raise RuntimeError("db down")

        service = make_service(persistence, token_store, Broken("plaid", persistence, token_store))

        overview = await service.get_all_statuses(user_id)
        entry = overview["top_integrations"][0]
        assert entry["connected"] is False
        assert entry["error"] == "db down"


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_not_connected(self, persistence, token_store, user_id):
        service = make_service(persistence, token_store, StubProvider("spotify", persistence, token_store))

        response = await service.disconnect("spotify", user_id)

        assert response["status_code"] == 400
        assert response["connection_status"] == "not_connected"

    @pytest.mark.asyncio
    async def test_failed_revocation_still_disconnects(self, persistence, token_store, user_id):
        adapter = StubProvider("spotify", persistence, token_store, revoke_error=RuntimeError("revoke failed"))
        service = make_service(persistence, token_store, adapter)
        await adapter.mark_connected(user_id)
        await token_store.set(user_id, "spotify", make_token())

        response = await service.disconnect("spotify", user_id)

        assert response["status_code"] == 200
        assert response["connection_status"] == "disconnected"
        assert adapter.revoked
        assert await token_store.get(user_id, "spotify") is None
        assert not (await service.status("spotify", user_id)).connected

    @pytest.mark.asyncio
    async def test_failed_token_deletion_still_disconnects(self, persistence, user_id):
        class BrokenDeleteStore(InMemoryTokenStore):
            async def delete(self, user_id, provider):
                persistence.session.add(Integration(name=provider, popularity=0))
                await db.flush(persistence.session)

        store = BrokenDeleteStore()
        adapter = StubProvider("spotify", persistence, store)
        service = make_service(persistence, store, adapter)
        await adapter.mark_connected(user_id)

        response = await service.disconnect("spotify", user_id)

        assert response["connection_status"] == "disconnected"
        assert not (await service.status("spotify", user_id)).connected


class TestConnectedUserData:
    @pytest.mark.asyncio
    async def test_not_connected(self, persistence, token_store, user_id):
        service = make_service(persistence, token_store, StubProvider("spotify", persistence, token_store))

        data = await service.get_connected_user_data("spotify", user_id)

        assert data["ok"] is False
        assert data["connected"] is False
        assert data["data"] is None

    @pytest.mark.asyncio
    async def test_unknown_provider_raises(self, persistence, token_store, user_id):
        service = make_service(persistence, token_store)

        with pytest.raises(ProviderNotFoundException):
            await service.get_connected_user_data("myspace", user_id)

    @pytest.mark.asyncio
    async def test_connected_returns_profile_and_synced_data(self, persistence, token_store, user_id):
        async def failed():
            raise RuntimeError("upstream down")

        adapter = StubProvider("spotify", persistence, token_store, failed)
        service = make_service(persistence, token_store, adapter)
        await adapter.mark_connected(user_id)
        target = await persistence.ensure_list_and_category(user_id, "Music", "Recently Played")
        await persistence.upsert_list_item(target, "Song | Recently Played", {
            "track_name": "Song",
            "external": {"provider": "spotify", "id": "t1", "type": "recently_played"},
        })

        # The forced sync fails but the stored data is still returned
        data = await service.get_connected_user_data("spotify", user_id)

        assert data["ok"] is True
        assert data["connected"] is True
        assert data["data"]["user"]["email"] == "ada@example.com"
        assert data["data"]["integration"]["connected"] is True
        assert [item["title"] for item in data["data"]["synced_data"]["recently_played"]] == ["Song | Recently Played"]

    @pytest.mark.asyncio
    async def test_callback_with_user_data(self, persistence, token_store, user_id):
        adapter = StubProvider("strava", persistence, token_store)
        service = make_service(persistence, token_store, adapter)

        response = await service.handle_callback_with_user_data("strava", {"state": adapter.new_state(user_id)})

        assert response["ok"] is True
        assert response["data"]["synced_data"]["total_activities"] == 0
