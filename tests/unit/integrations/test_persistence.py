"""
Unit tests for IntegrationPersistence: links, history and list-item dedup.
"""
from datetime import datetime, timezone

import pytest
from sqlmodel import select

from app.models.enums import IntegrationStatus
from app.models.lists import ItemCategory, ItemList, ListItem, UserList


def track(track_id: str, **extra):
    attributes = {
        "track_name": "Song",
        "artist_name": "Band",
        "external": {"provider": "spotify", "id": track_id, "type": "saved_track"},
    }
    attributes.update(extra)
    return attributes


class TestLinks:
    @pytest.mark.asyncio
    async def test_ensure_integration_is_idempotent(self, persistence):
        first = await persistence.ensure_integration("spotify")
        second = await persistence.ensure_integration("spotify")
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_new_link_is_pending_with_history(self, persistence, user_id):
        integration = await persistence.ensure_integration("spotify")
        link = await persistence.ensure_user_integration(user_id, integration.id)

        assert link.status == IntegrationStatus.PENDING
        history = await persistence.get_history(link.id)
        assert history is not None
        assert history.first_connected_at is not None

    @pytest.mark.asyncio
    async def test_mark_connected_bumps_popularity(self, persistence, user_id):
        integration = await persistence.ensure_integration("strava")
        await persistence.mark_connected(user_id, integration.id)
        await persistence.mark_connected(user_id, integration.id)

        refreshed = await persistence.get_integration("strava")
        assert refreshed.popularity == 2
        link = await persistence.get_link(user_id, integration.id)
        assert link.status == IntegrationStatus.CONNECTED
        assert (await persistence.get_history(link.id)).last_connected_at is not None

    @pytest.mark.asyncio
    async def test_last_synced_at_round_trips_as_utc(self, persistence, user_id):
        integration = await persistence.ensure_integration("strava")
        link = await persistence.mark_connected(user_id, integration.id)
        synced_at = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)

        await persistence.mark_synced(link.id, synced_at)

        assert await persistence.get_last_synced_at(user_id, integration.id) == synced_at

    @pytest.mark.asyncio
    async def test_disconnect_and_connected_links(self, persistence, user_id):
        spotify = await persistence.ensure_integration("spotify")
        strava = await persistence.ensure_integration("strava")
        await persistence.mark_connected(user_id, spotify.id)
        await persistence.mark_connected(user_id, strava.id)

        await persistence.mark_disconnected(user_id, "spotify")

        assert await persistence.list_connected_links() == [(user_id, "strava")]

    @pytest.mark.asyncio
    async def test_disconnect_without_link_is_noop(self, persistence, user_id):
        assert await persistence.mark_disconnected(user_id, "spotify") is None


class TestListItems:
    @pytest.mark.asyncio
    async def test_ensure_list_and_category_is_idempotent(self, persistence, session, user_id):
        first = await persistence.ensure_list_and_category(user_id, "Music", "Liked Songs")
        second = await persistence.ensure_list_and_category(user_id, "Music", "Liked Songs")

        assert first.list.id == second.list.id
        assert first.user_list.id == second.user_list.id
        assert first.category.id == second.category.id
        assert len(session.exec(select(ItemList)).all()) == 1
        assert len(session.exec(select(UserList)).all()) == 1
        assert len(session.exec(select(ItemCategory)).all()) == 1

    @pytest.mark.asyncio
    async def test_upsert_same_item_twice_creates_one_row(self, persistence, session, user_id):
        target = await persistence.ensure_list_and_category(user_id, "Music", "Liked Songs")

        first = await persistence.upsert_list_item(target, "Song | Saved Tracks", track("t1"))
        second = await persistence.upsert_list_item(target, "Song | Saved Tracks", track("t1"))

        assert first.id == second.id
        assert len(session.exec(select(ListItem)).all()) == 1
        assert second.external_provider == "spotify"
        assert second.external_id == "t1"

    @pytest.mark.asyncio
    async def test_changed_attributes_update_in_place(self, persistence, session, user_id):
        target = await persistence.ensure_list_and_category(user_id, "Music", "Liked Songs")
        original = await persistence.upsert_list_item(target, "Song | Saved Tracks", track("t1", popularity=10))

        updated = await persistence.upsert_list_item(target, "Song | Saved Tracks", track("t1", popularity=80))

        assert updated.id == original.id
        assert updated.attributes["popularity"] == 80
        assert len(session.exec(select(ListItem)).all()) == 1

    @pytest.mark.asyncio
    async def test_distinct_external_ids_are_distinct_items(self, persistence, session, user_id):
        target = await persistence.ensure_list_and_category(user_id, "Music", "Liked Songs")
        await persistence.upsert_list_item(target, "Song | Saved Tracks", track("t1"))
        await persistence.upsert_list_item(target, "Song | Saved Tracks", track("t2"))

        assert len(session.exec(select(ListItem)).all()) == 2

    @pytest.mark.asyncio
    async def test_items_without_external_identity_always_create(self, persistence, session, user_id):
        target = await persistence.ensure_list_and_category(user_id, "Notes", None)
        await persistence.upsert_list_item(target, "Untracked", {"note": "a"})
        await persistence.upsert_list_item(target, "Untracked", {"note": "a"})

        assert len(session.exec(select(ListItem)).all()) == 2

    @pytest.mark.asyncio
    async def test_list_user_items_with_category_names(self, persistence, user_id):
        liked = await persistence.ensure_list_and_category(user_id, "Music", "Liked Songs")
        top = await persistence.ensure_list_and_category(user_id, "Music", "Top Tracks")
        await persistence.upsert_list_item(liked, "A | Saved Tracks", track("a"))
        await persistence.upsert_list_item(top, "B | Top Tracks", track("b"))

        rows = await persistence.list_user_items(user_id, "Music")

        assert sorted(category for _, category in rows) == ["Liked Songs", "Top Tracks"]
        assert await persistence.list_user_items(user_id, "Books") == []
