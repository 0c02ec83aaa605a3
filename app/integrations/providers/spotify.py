"""
Spotify adapter.

OAuth authorization-code flow with a Basic-auth token endpoint. Sync pulls
recently played tracks, liked songs, playlists and top tracks into the
"Music" list.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from app.core.config import settings
from app.core.logging_config import log_info
from app.core.time_utils import epoch_millis, parse_optional_datetime
from app.integrations.base import BaseProvider, OAuthTokenMixin, run_best_effort, token_from_payload
from app.integrations.exceptions import InvalidCallbackException, OAuthAuthenticationException
from app.integrations.schemas import ConnectResponse, SyncResult

AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"
API_BASE = "https://api.spotify.com/v1"

SCOPES = " ".join([
    "user-read-email",
    "user-read-private",
    "user-read-recently-played",
    "user-read-playback-state",
    "user-library-read",
    "playlist-read-private",
    "playlist-read-collaborative",
    "user-top-read",
])

PAGE_SIZE = 50
MAX_SAVED_TRACKS = 1000
MAX_PLAYLISTS = 200


def _track_attributes(track: Dict[str, Any]) -> Dict[str, Any]:
    album = track.get("album") or {}
    images = album.get("images") or []
    return {
        "track_name": track["name"],
        "artist_name": ", ".join(artist["name"] for artist in track.get("artists", [])),
        "album_name": album.get("name"),
        "duration_ms": track.get("duration_ms"),
        "release_date": album.get("release_date"),
        "popularity": track.get("popularity"),
        "preview_url": track.get("preview_url"),
        "spotify_url": (track.get("external_urls") or {}).get("spotify"),
        "isrc": (track.get("external_ids") or {}).get("isrc"),
        "artwork": images[0]["url"] if images else None,
    }


def recently_played_items(history: List[Dict[str, Any]]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for entry in history:
        track = entry["track"]
        context = entry.get("context")
        attributes = _track_attributes(track)
        attributes.update({
            "played_at": entry.get("played_at"),
            "context": {
                "type": context.get("type"),
                "uri": context.get("uri"),
                "url": (context.get("external_urls") or {}).get("spotify"),
            } if context else None,
            "external": {"provider": "spotify", "id": track["id"], "type": "recently_played"},
        })
        yield f"{track['name']} | Recently Played", attributes


def saved_track_items(saved: List[Dict[str, Any]]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for entry in saved:
        track = entry["track"]
        attributes = _track_attributes(track)
        attributes.update({
            "added_at": entry.get("added_at"),
            "external": {"provider": "spotify", "id": track["id"], "type": "saved_track"},
        })
        yield f"{track['name']} | Saved Tracks", attributes


def playlist_items(playlists: List[Dict[str, Any]]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for playlist in playlists:
        images = playlist.get("images") or []
        owner = playlist.get("owner") or {}
        yield f"{playlist['name']} | Playlists", {
            "playlist_name": playlist["name"],
            "description": playlist.get("description"),
            "owner": owner.get("display_name") or owner.get("id"),
            "public": playlist.get("public"),
            "collaborative": playlist.get("collaborative"),
            "track_count": (playlist.get("tracks") or {}).get("total"),
            "artwork": images[0]["url"] if images else None,
            "spotify_url": (playlist.get("external_urls") or {}).get("spotify"),
            "external": {"provider": "spotify", "id": playlist["id"], "type": "playlist"},
        }


def top_track_items(tracks: List[Dict[str, Any]]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for rank, track in enumerate(tracks, start=1):
        attributes = _track_attributes(track)
        attributes.update({
            "rank": rank,
            "time_range": "medium_term",
            "external": {"provider": "spotify", "id": track["id"], "type": "top_track"},
        })
        yield f"{track['name']} | Top Tracks", attributes


class SpotifyProvider(OAuthTokenMixin, BaseProvider):
    """Spotify Web API adapter."""

    name = "spotify"
    display_name = "Spotify"
    state_prefix = "spotify-"
    list_name = "Music"

    authorize_url = AUTHORIZE_URL
    token_url = TOKEN_URL
    scopes = SCOPES
    token_endpoint_auth_method = "client_secret_basic"

    def oauth_credentials(self) -> Tuple[Optional[str], Optional[str]]:
        return settings.spotify_client_id, settings.spotify_client_secret

    def redirect_uri(self) -> Optional[str]:
        return settings.spotify_redirect_uri

    def validate_config(self) -> None:
        self.require_settings(
            spotify_client_id=settings.spotify_client_id,
            spotify_client_secret=settings.spotify_client_secret,
            spotify_redirect_uri=settings.spotify_redirect_uri,
        )

    async def create_connection(self, user_id: uuid.UUID) -> ConnectResponse:
        self.validate_config()
        state = self.new_state(user_id)
        redirect_url = await self.authorization_url(state, show_dialog="true")
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

        token = token_from_payload(await self.exchange_code(code))

        profile = await run_best_effort(
            "spotify profile fetch", self._fetch_profile(token.access_token), user_id=str(user_id)
        )
        if profile.ok and profile.value:
            token.provider_user_id = profile.value.get("id")

        await self.token_store.set(user_id, self.name, token)
        await self.mark_connected(user_id)
        log_info("Spotify connected", user_id=str(user_id))

        await self.auto_sync(user_id)

    async def _fetch_profile(self, access_token: str) -> Dict[str, Any]:
        response = await self.request(
            "GET", f"{API_BASE}/me", "profile fetch",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return response.json()

    async def _get(self, path: str, access_token: str, operation: str, **params) -> Dict[str, Any]:
        response = await self.request(
            "GET", f"{API_BASE}{path}", operation,
            headers={"Authorization": f"Bearer {access_token}"},
            params=params,
        )
        return response.json()

    async def _paged(self, path: str, access_token: str, operation: str, cap: int) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        offset = 0
        while offset < cap:
            page = await self._get(path, access_token, operation, limit=PAGE_SIZE, offset=offset)
            batch = page.get("items") or []
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        return items

    async def sync(self, user_id: uuid.UUID) -> SyncResult:
        _, link, since = await self.sync_window(user_id, settings.spotify_default_days)
        access_token = await self.ensure_valid_access_token(user_id)
        details: Dict[str, Any] = {"since": since.isoformat()}

        async def recently_played() -> int:
            page = await self._get(
                "/me/player/recently-played", access_token, "recently played",
                limit=PAGE_SIZE, after=epoch_millis(since),
            )
            return await self.save_items(
                user_id, self.list_name, "Recently Played",
                recently_played_items(page.get("items") or []),
            )

        async def liked_songs() -> int:
            saved = await self._paged("/me/tracks", access_token, "saved tracks", MAX_SAVED_TRACKS)
            recent = [item for item in saved if _added_since(item.get("added_at"), since)]
            return await self.save_items(user_id, self.list_name, "Liked Songs", saved_track_items(recent))

        async def playlists() -> int:
            found = await self._paged("/me/playlists", access_token, "playlists", MAX_PLAYLISTS)
            return await self.save_items(user_id, self.list_name, "Playlists", playlist_items(found))

        async def top_tracks() -> int:
            page = await self._get(
                "/me/top/tracks", access_token, "top tracks", limit=PAGE_SIZE, time_range="medium_term"
            )
            return await self.save_items(
                user_id, self.list_name, "Top Tracks", top_track_items(page.get("items") or [])
            )

        total = 0
        total += await self.run_resource("recently_played", recently_played, details, user_id)
        total += await self.run_resource("liked_songs", liked_songs, details, user_id)
        total += await self.run_resource("playlists", playlists, details, user_id)
        total += await self.run_resource("top_tracks", top_tracks, details, user_id)
        details["total_items"] = total

        return await self.finish_sync(user_id, link, details)

    async def status_details(self, user_id: uuid.UUID) -> Dict[str, Any]:
        token = await self.token_store.get(user_id, self.name)
        return {
            "has_tokens": token is not None,
            "token_expiry": token.expires_at if token else None,
            "provider_user_id": token.provider_user_id if token else None,
        }


def _added_since(value: Any, since: datetime) -> bool:
    added_at = parse_optional_datetime(value)
    return added_at is None or added_at >= since
