"""
Strava adapter.

OAuth authorization-code flow; client credentials travel in the token request
body. Activities since the last sync land in the "Activity" list with one
category per sport.
"""
import uuid
from datetime import timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

from app.core.config import settings
from app.core.logging_config import log_info
from app.core.time_utils import epoch_seconds, parse_iso_datetime, serialize_datetime
from app.integrations.base import BaseProvider, OAuthTokenMixin, token_from_payload
from app.integrations.exceptions import InvalidCallbackException, OAuthAuthenticationException
from app.integrations.schemas import ConnectResponse, SyncResult

AUTHORIZE_URL = "https://www.strava.com/oauth/authorize"
TOKEN_URL = "https://www.strava.com/oauth/token"
DEAUTHORIZE_URL = "https://www.strava.com/oauth/deauthorize"
API_BASE = "https://www.strava.com/api/v3"

SCOPES = "read,activity:read_all"
PER_PAGE = 100
MAX_PAGES = 10

METERS_PER_MILE = 1609.344
YARDS_PER_METER = 1.09361

SPORT_CATEGORIES = {
    "run": "Run",
    "ride": "Bike",
    "bike": "Bike",
    "swim": "Swim",
    "walk": "Walk",
    "hike": "Hike",
    "workout": "Strength",
    "strength": "Strength",
}


def category_for(sport_type: str) -> str:
    return SPORT_CATEGORIES.get((sport_type or "").lower(), "Other")


def activity_items(activities: List[Dict[str, Any]]) -> Iterator[Tuple[str, str, Dict[str, Any]]]:
    """``(category, title, attributes)`` for each raw Strava activity."""
    for activity in activities:
        sport = activity.get("sport_type") or activity.get("type") or "Other"
        category = category_for(sport)
        start = parse_iso_datetime(activity["start_date"])
        moving_seconds = activity.get("moving_time") or 0
        end = start + timedelta(seconds=moving_seconds)
        distance = activity.get("distance")
        has_distance = isinstance(distance, (int, float))

        start_iso = serialize_datetime(start)
        end_iso = serialize_datetime(end)
        yield category, f"{category} | {start_iso} - {end_iso}", {
            "name": activity.get("name"),
            "start_time": start_iso,
            "end_time": end_iso,
            "duration_minutes": round(moving_seconds / 60),
            "miles": distance / METERS_PER_MILE if has_distance else None,
            "yards": distance * YARDS_PER_METER if has_distance and sport.lower() == "swim" else None,
            "images": [],
            "route": activity.get("map"),
            "external": {"provider": "strava", "id": str(activity["id"])},
        }


class StravaProvider(OAuthTokenMixin, BaseProvider):
    """Strava API v3 adapter."""

    name = "strava"
    display_name = "Strava"
    state_prefix = "strava-"
    list_name = "Activity"

    authorize_url = AUTHORIZE_URL
    token_url = TOKEN_URL
    scopes = SCOPES

    def oauth_credentials(self) -> Tuple[Optional[str], Optional[str]]:
        return settings.strava_client_id, settings.strava_client_secret

    def redirect_uri(self) -> Optional[str]:
        return settings.strava_redirect_uri

    def validate_config(self) -> None:
        self.require_settings(
            strava_client_id=settings.strava_client_id,
            strava_client_secret=settings.strava_client_secret,
            strava_redirect_uri=settings.strava_redirect_uri,
        )

    async def create_connection(self, user_id: uuid.UUID) -> ConnectResponse:
        self.validate_config()
        state = self.new_state(user_id)
        redirect_url = await self.authorization_url(state, approval_prompt="auto")
        await self.persistence.ensure_integration(self.name)
        return ConnectResponse(provider=self.name, redirect_url=redirect_url, state=state)

    async def handle_callback(self, payload: Dict[str, Any]) -> None:
        if payload.get("error"):
            raise OAuthAuthenticationException(self.name, f"OAuth error: {payload['error']}")

        code = payload.get("code")
        state = payload.get("state")
        if not code or not state:
            raise InvalidCallbackException(self.name, "Missing authorization code or state parameter")
        user_id = self.user_id_from_state(str(state))

        data = await self.exchange_code(code)
        token = token_from_payload(data)
        athlete_id = (data.get("athlete") or {}).get("id")
        if athlete_id:
            token.provider_user_id = str(athlete_id)

        await self.token_store.set(user_id, self.name, token)
        await self.mark_connected(user_id)
        log_info("Strava connected", user_id=str(user_id), athlete_id=token.provider_user_id)

        await self.auto_sync(user_id)

    async def _fetch_activities(self, access_token: str, after: int) -> List[Dict[str, Any]]:
        activities: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            response = await self.request(
                "GET", f"{API_BASE}/athlete/activities", "activities",
                headers={"Authorization": f"Bearer {access_token}"},
                params={"after": after, "per_page": PER_PAGE, "page": page},
            )
            batch = response.json() or []
            activities.extend(batch)
            if len(batch) < PER_PAGE:
                break
        return activities

    async def sync(self, user_id: uuid.UUID) -> SyncResult:
        _, link, since = await self.sync_window(user_id, settings.strava_default_days)
        access_token = await self.ensure_valid_access_token(user_id)
        details: Dict[str, Any] = {"since": since.isoformat()}

        async def activities() -> int:
            raw = await self._fetch_activities(access_token, epoch_seconds(since))
            count = 0
            for category, title, attributes in activity_items(raw):
                count += await self.save_items(user_id, self.list_name, category, [(title, attributes)])
            details["activities_count"] = len(raw)
            return count

        total = await self.run_resource("activities", activities, details, user_id)
        details["total_items"] = total
        return await self.finish_sync(user_id, link, details)

    async def disconnect(self, user_id: uuid.UUID) -> None:
        token = await self.token_store.get(user_id, self.name)
        if token is None:
            return
        await self.request(
            "POST", DEAUTHORIZE_URL, "deauthorize",
            headers={"Authorization": f"Bearer {token.access_token}"},
        )
