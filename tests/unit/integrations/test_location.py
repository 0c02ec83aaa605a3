"""
Location submissions, reverse geocoding and the submission queue.
"""
from datetime import datetime, timezone

import httpx
import pytest
from sqlmodel import select

from app.core.config import settings
from app.integrations.exceptions import ConfigurationException, DataValidationException, RateLimitException
from app.integrations.providers.location_services import (
    GEOCODE_URL,
    LocationServicesProvider,
    destination_for,
    parse_geocode_result,
    place_items,
    place_type_for,
)
from app.models.integration import LocationDataSubmission

CAFE_RESULT = {
    "formatted_address": "Blue Bottle, 1 Ferry Building, San Francisco, CA 94111, USA",
    "types": ["cafe", "food", "point_of_interest", "establishment"],
    "address_components": [
        {"long_name": "Blue Bottle", "short_name": "Blue Bottle", "types": ["establishment", "point_of_interest"]},
        {"long_name": "San Francisco", "short_name": "SF", "types": ["locality", "political"]},
        {"long_name": "California", "short_name": "CA", "types": ["administrative_area_level_1", "political"]},
        {"long_name": "United States", "short_name": "US", "types": ["country", "political"]},
        {"long_name": "94111", "short_name": "94111", "types": ["postal_code"]},
    ],
}

LOCATION = {"latitude": 37.7955, "longitude": -122.3937, "timestamp": "2024-06-01T12:00:00Z"}


@pytest.fixture(autouse=True)
def maps_key(monkeypatch):
    monkeypatch.setattr(settings, "google_maps_api_key", "maps-key")


@pytest.fixture
def location(persistence, token_store, location_store, routes):
    return LocationServicesProvider(persistence, token_store, location_store, routes.transport)


class TestMappers:
    @pytest.mark.parametrize("types,place_type", [
        (["cafe", "restaurant"], "restaurant"),
        (["lodging"], "hotel"),
        (["store"], "shopping"),
        (["route"], ""),
    ])
    def test_place_type_for(self, types, place_type):
        assert place_type_for(types) == place_type

    def test_destination_for(self):
        assert destination_for("cafe") == ("Food", "Coffee Shops")
        assert destination_for("airport") == ("Travel", "Airport")
        assert destination_for("") == ("Places", "Visited Location")

    def test_parse_geocode_result(self):
        place = parse_geocode_result(CAFE_RESULT, LOCATION)

        assert place["name"] == "Blue Bottle"
        assert place["city"] == "San Francisco"
        assert place["state"] == "CA"
        assert place["country"] == "United States"
        assert place["postal_code"] == "94111"
        assert place["place_type"] == "cafe"
        assert place["visited_at"] == "2024-06-01T12:00:00Z"

    def test_name_falls_back_to_address(self):
        result = {"formatted_address": "1 Main St, Springfield", "types": ["street_address"]}
        place = parse_geocode_result(result, {"latitude": 1.0, "longitude": 2.0})

        assert place["name"] == "1 Main St"
        assert place["visited_at"] is None

    def test_place_items(self):
        [(list_name, category, title, attributes)] = place_items([parse_geocode_result(CAFE_RESULT, LOCATION)])

        assert (list_name, category) == ("Food", "Coffee Shops")
        assert title == "Blue Bottle | Coffee Shops"
        assert attributes["external"] == {
            "provider": "location_services",
            "id": "location-37.7955--122.3937",
        }


class TestSubmit:
    @pytest.mark.asyncio
    async def test_batch_is_queued(self, location, location_store, user_id):
        response = await location.submit_locations(user_id, [LOCATION])

        assert response["details"]["locations_stored"] == 1
        batch = await location_store.get(user_id, "location_services")
        assert batch.locations == [LOCATION]

    @pytest.mark.asyncio
    async def test_empty_batch_is_accepted(self, location, location_store, user_id):
        response = await location.submit_locations(user_id, [])

        assert response["details"]["locations_stored"] == 0
        assert await location_store.get(user_id, "location_services") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("locations", [
        [{"latitude": "37.7", "longitude": -122.3}],
        [{"latitude": 37.7}],
        ["37.7,-122.3"],
        [{"latitude": True, "longitude": 1.0}],
    ])
    async def test_invalid_coordinates_rejected(self, location, user_id, locations):
        with pytest.raises(DataValidationException):
            await location.submit_locations(user_id, locations)


class TestSync:
    @pytest.mark.asyncio
    async def test_requires_maps_key(self, location, user_id, monkeypatch):
        monkeypatch.setattr(settings, "google_maps_api_key", None)

        with pytest.raises(ConfigurationException):
            await location.sync(user_id)

    @pytest.mark.asyncio
    async def test_nothing_pending(self, location, user_id):
        result = await location.sync(user_id)

        assert result.ok
        assert result.details["locations_processed"] == 0

    @pytest.mark.asyncio
    async def test_geocodes_and_drains_queue(self, location, location_store, persistence, routes, session, user_id):
        routes.json("GET", GEOCODE_URL, {"status": "OK", "results": [CAFE_RESULT]})
        await location.submit_locations(user_id, [LOCATION])

        result = await location.sync(user_id)

        assert result.details["places_identified"] == 1
        assert routes.calls("GET", GEOCODE_URL)[0].url.params["latlng"] == "37.7955,-122.3937"
        rows = await persistence.list_user_items(user_id, "Food")
        assert [category for _, category in rows] == ["Coffee Shops"]
        assert await location_store.get(user_id, "location_services") is None
        assert session.exec(select(LocationDataSubmission)).one().processed

    @pytest.mark.asyncio
    async def test_invalid_and_empty_results_are_skipped(self, location, persistence, routes, user_id):
        routes.add(
            "GET", GEOCODE_URL,
            httpx.Response(200, json={"status": "INVALID_REQUEST"}),
            httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []}),
            httpx.Response(200, json={"status": "OK", "results": [CAFE_RESULT]}),
        )
        second = {"latitude": 1.0, "longitude": 2.0}
        await location.submit_locations(user_id, [LOCATION, second, LOCATION])

        result = await location.sync(user_id)

        assert result.details["skipped"] == 1
        assert result.details["places_identified"] == 1

    @pytest.mark.asyncio
    async def test_every_pending_batch_is_geocoded(self, location, location_store, persistence, routes, user_id):
        routes.json("GET", GEOCODE_URL, {"status": "OK", "results": [CAFE_RESULT]})
        await location.submit_locations(user_id, [LOCATION])
        await location.submit_locations(user_id, [{"latitude": 1.0, "longitude": 2.0}])

        result = await location.sync(user_id)

        assert result.details["batches"] == 2
        assert result.details["locations_processed"] == 2
        latlngs = [request.url.params["latlng"] for request in routes.calls("GET", GEOCODE_URL)]
        assert latlngs == ["37.7955,-122.3937", "1.0,2.0"]
        assert await location_store.pending(user_id, "location_services") == []

    @pytest.mark.asyncio
    async def test_failed_geocoding_keeps_batches_pending(self, location, location_store, routes, user_id):
        routes.add(
            "GET", GEOCODE_URL,
            httpx.Response(200, json={"status": "OK", "results": ["garbled"]}),
            httpx.Response(200, json={"status": "OK", "results": [CAFE_RESULT]}),
        )
        await location.submit_locations(user_id, [LOCATION])

        first = await location.sync(user_id)

        assert first.details["errors"][0]["resource"] == "places"
        assert len(await location_store.pending(user_id, "location_services")) == 1

        second = await location.sync(user_id)

        assert second.details["places_identified"] == 1
        assert await location_store.pending(user_id, "location_services") == []

    @pytest.mark.asyncio
    async def test_over_query_limit_aborts(self, location, routes, user_id):
        routes.json("GET", GEOCODE_URL, {"status": "OVER_QUERY_LIMIT"})
        await location.submit_locations(user_id, [LOCATION])

        with pytest.raises(RateLimitException):
            await location.sync(user_id)


class TestLocationStore:
    @pytest.mark.asyncio
    async def test_newest_batch_wins(self, location_store, user_id):
        await location_store.set(
            user_id, "location_services", [{"latitude": 1, "longitude": 1}],
            submitted_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
        )
        await location_store.set(
            user_id, "location_services", [{"latitude": 2, "longitude": 2}],
            submitted_at=datetime(2024, 6, 2, tzinfo=timezone.utc),
        )

        batch = await location_store.get(user_id, "location_services")
        assert batch.locations == [{"latitude": 2, "longitude": 2}]

    @pytest.mark.asyncio
    async def test_pending_is_oldest_first_and_marking_is_selective(self, location_store, user_id):
        older = await location_store.set(
            user_id, "location_services", [{"latitude": 1, "longitude": 1}],
            submitted_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
        )
        newer = await location_store.set(
            user_id, "location_services", [{"latitude": 2, "longitude": 2}],
            submitted_at=datetime(2024, 6, 2, tzinfo=timezone.utc),
        )

        assert [batch.id for batch in await location_store.pending(user_id, "location_services")] == [
            older.id, newer.id,
        ]
        assert await location_store.mark_processed(user_id, "location_services", [older.id]) == 1
        assert [batch.id for batch in await location_store.pending(user_id, "location_services")] == [newer.id]

    @pytest.mark.asyncio
    async def test_mark_and_purge(self, location_store, session, user_id):
        await location_store.set(user_id, "location_services", [LOCATION])
        await location_store.set(user_id, "location_services", [LOCATION])

        assert await location_store.mark_processed(user_id, "location_services") == 2
        assert await location_store.delete_processed(user_id, "location_services") == 0
        assert await location_store.delete_processed(user_id, "location_services", older_than_days=-1) == 2
        assert session.exec(select(LocationDataSubmission)).all() == []

    @pytest.mark.asyncio
    async def test_unknown_provider(self, location_store, user_id):
        assert await location_store.get(user_id, "location_services") is None
        assert await location_store.mark_processed(user_id, "location_services") == 0
