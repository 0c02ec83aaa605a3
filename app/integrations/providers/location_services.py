"""
Location services adapter.

The device authorizes once and then submits batches of raw coordinates. Sync
reverse-geocodes every pending batch with the Google Geocoding API and files
each resolved place under Places, Food or Travel by place type.
"""
import uuid
from typing import Any, Dict, Iterator, List, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.logging_config import log_info, log_warning
from app.core.time_utils import parse_optional_datetime, serialize_datetime, utc_now
from app.integrations.base import BaseProvider, is_systemic
from app.integrations.exceptions import (
    DataValidationException,
    IntegrationException,
    InvalidCallbackException,
    ProviderAPIException,
    RateLimitException,
)
from app.integrations.location_store import LocationDataStore
from app.integrations.persistence import IntegrationPersistence
from app.integrations.schemas import ConnectResponse, SyncResult
from app.integrations.token_store import TokenStore

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

# First matching Google result type wins
PLACE_TYPES = (
    ("restaurant", "restaurant"),
    ("cafe", "cafe"),
    ("park", "park"),
    ("museum", "museum"),
    ("shopping_mall", "shopping"),
    ("store", "shopping"),
    ("gym", "gym"),
    ("airport", "airport"),
    ("lodging", "hotel"),
    ("hotel", "hotel"),
    ("point_of_interest", "point_of_interest"),
)

PLACE_DESTINATIONS = {
    "restaurant": ("Food", "Restaurants"),
    "cafe": ("Food", "Coffee Shops"),
    "park": ("Places", "Parks"),
    "museum": ("Places", "Museums"),
    "shopping": ("Places", "Shopping"),
    "gym": ("Places", "Gyms"),
    "airport": ("Travel", "Airport"),
    "hotel": ("Travel", "Accommodation"),
}
DEFAULT_DESTINATION = ("Places", "Visited Location")


def _has_coordinates(location: Dict[str, Any]) -> bool:
    return all(
        isinstance(location.get(key), (int, float)) and not isinstance(location.get(key), bool)
        for key in ("latitude", "longitude")
    )


def place_type_for(result_types: List[str]) -> str:
    for google_type, place_type in PLACE_TYPES:
        if google_type in result_types:
            return place_type
    return ""


def destination_for(place_type: str) -> Tuple[str, str]:
    return PLACE_DESTINATIONS.get(place_type, DEFAULT_DESTINATION)


def parse_geocode_result(result: Dict[str, Any], location: Dict[str, Any]) -> Dict[str, Any]:
    """Place attributes from the first Geocoding API result for a location."""
    place: Dict[str, Any] = {"name": "", "city": "", "state": "", "country": "", "postal_code": ""}
    for component in result.get("address_components") or []:
        types = component.get("types") or []
        if "locality" in types:
            place["city"] = component.get("long_name")
        elif "administrative_area_level_1" in types:
            place["state"] = component.get("short_name")
        elif "country" in types:
            place["country"] = component.get("long_name")
        elif "postal_code" in types:
            place["postal_code"] = component.get("long_name")
        elif "point_of_interest" in types or "establishment" in types:
            place["name"] = component.get("long_name")

    address = result.get("formatted_address") or ""
    visited_at = parse_optional_datetime(location.get("timestamp"))
    place.update({
        "name": place["name"] or address.split(",")[0],
        "address": address,
        "place_type": place_type_for(result.get("types") or []),
        "latitude": location["latitude"],
        "longitude": location["longitude"],
        "visited_at": serialize_datetime(visited_at) if visited_at else None,
    })
    return place


def place_items(places: List[Dict[str, Any]]) -> Iterator[Tuple[str, str, str, Dict[str, Any]]]:
    """``(list, category, title, attributes)`` for each resolved place."""
    for place in places:
        list_name, category = destination_for(place["place_type"])
        yield list_name, category, f"{place['name']} | {category}", {
            **place,
            "external": {
                "provider": "location_services",
                "id": f"location-{place['latitude']}-{place['longitude']}",
            },
        }


class LocationServicesProvider(BaseProvider):
    """Device-submitted coordinates, reverse geocoded on sync."""

    name = "location_services"
    display_name = "Location Services"
    state_prefix = "location-"
    list_name = "Places"

    def __init__(
        self,
        persistence: IntegrationPersistence,
        token_store: TokenStore,
        location_store: LocationDataStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(persistence, token_store, transport)
        self.location_store = location_store

    def validate_config(self) -> None:
        self.require_settings(google_maps_api_key=settings.google_maps_api_key)

    async def create_connection(self, user_id: uuid.UUID) -> ConnectResponse:
        self.validate_config()
        await self.persistence.ensure_integration(self.name)
        return ConnectResponse(provider=self.name, state=self.new_state(user_id))

    async def handle_callback(self, payload: Dict[str, Any]) -> None:
        state = payload.get("state")
        if not state:
            raise InvalidCallbackException(
                self.name, "Missing state parameter in callback. Please try connecting again."
            )
        user_id = self.user_id_from_state(str(state))
        await self.mark_connected(user_id)
        log_info("Location services connected", user_id=str(user_id))

    async def submit_locations(self, user_id: uuid.UUID, locations: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Queue a batch of coordinates for the next sync."""
        if not isinstance(locations, list):
            raise DataValidationException(self.name, "Expected an array of locations")
        if not locations:
            return {"ok": True, "details": {"locations_stored": 0, "message": "No locations to store"}}
        if not all(isinstance(location, dict) and _has_coordinates(location) for location in locations):
            raise DataValidationException(self.name, "Each location must have numeric latitude and longitude")

        await self.location_store.set(user_id, self.name, locations)
        log_info("Location batch queued", user_id=str(user_id), count=len(locations))
        return {"ok": True, "details": {"locations_stored": len(locations)}}

    async def reverse_geocode(self, location: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = await self.request(
            "GET", GEOCODE_URL, "reverse geocode",
            params={
                "latlng": f"{location['latitude']},{location['longitude']}",
                "key": settings.google_maps_api_key,
            },
        )
        data = response.json()
        status = data.get("status")
        if status == "OVER_QUERY_LIMIT":
            raise RateLimitException(self.name)
        if status == "REQUEST_DENIED":
            raise ProviderAPIException(self.name, "reverse geocode", "access denied, check the API key")
        if status == "INVALID_REQUEST":
            raise ProviderAPIException(self.name, "reverse geocode", "invalid coordinates", upstream_status=400)
        if status != "OK" or not data.get("results"):
            return None
        return parse_geocode_result(data["results"][0], location)

    async def _resolve_places(self, locations: List[Dict[str, Any]], details: Dict[str, Any]) -> List[Dict[str, Any]]:
        places = []
        for location in locations:
            if not isinstance(location, dict) or not _has_coordinates(location):
                continue
            try:
                place = await self.reverse_geocode(location)
            except IntegrationException as exc:
                if is_systemic(exc):
                    raise
                log_warning("Skipping unresolvable location", provider=self.name, error=str(exc))
                details["skipped"] = details.get("skipped", 0) + 1
                continue
            if place:
                places.append(place)
        return places

    async def sync(self, user_id: uuid.UUID) -> SyncResult:
        self.validate_config()
        _, link = await self.link_for(user_id)
        batches = await self.location_store.pending(user_id, self.name)
        locations = [location for batch in batches for location in batch.locations]
        if not locations:
            await self.location_store.mark_processed(user_id, self.name, [batch.id for batch in batches])
            return SyncResult(
                ok=True,
                synced_at=utc_now(),
                details={"message": "No location data available to sync", "locations_processed": 0},
            )

        details: Dict[str, Any] = {"locations_processed": len(locations), "batches": len(batches)}

        async def places() -> int:
            resolved = await self._resolve_places(locations, details)
            details["places_identified"] = len(resolved)
            stored = 0
            for list_name, category, title, attributes in place_items(resolved):
                stored += await self.save_items(user_id, list_name, category, [(title, attributes)])
            return stored

        await self.run_resource("places", places, details, user_id)
        if "places" in details.get("counts", {}):
            await self.location_store.mark_processed(user_id, self.name, [batch.id for batch in batches])
        else:
            log_warning("Location batches left pending", provider=self.name, user_id=str(user_id))
        await self.location_store.delete_processed(user_id, self.name)
        return await self.finish_sync(user_id, link, details)

    async def status_details(self, user_id: uuid.UUID) -> Dict[str, Any]:
        batches = await self.location_store.pending(user_id, self.name)
        return {
            "pending_batches": len(batches),
            "pending_locations": sum(len(batch.locations) for batch in batches),
        }
