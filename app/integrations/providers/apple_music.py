"""
Apple Music adapter.

Authorization happens on the device with MusicKit: the app receives a Music
User Token and posts it back together with the state from ``/connect``. API
calls carry that token plus an ES256 developer token signed with the team's
MusicKit key. Music User Tokens cannot be refreshed; they are stored with a
one year lifetime and the user reconnects when Apple rejects them.
"""
import uuid
from datetime import timedelta
from typing import Any, Dict, Iterator, List, Tuple
from urllib.parse import quote

from jose import jwt

from app.core.config import settings
from app.core.logging_config import log_info
from app.core.time_utils import epoch_seconds, parse_optional_datetime, utc_now
from app.integrations.base import BaseProvider
from app.integrations.exceptions import (
    InvalidCallbackException,
    InvalidTokenException,
    OAuthAuthenticationException,
)
from app.integrations.schemas import ConnectResponse, SyncResult
from app.integrations.token_store import StoredToken

AUTHORIZE_URL = "https://authorize.music.apple.com/woa"
API_BASE = "https://api.music.apple.com/v1"

USER_TOKEN_LIFETIME_SECONDS = 365 * 24 * 3600
DEVELOPER_TOKEN_LIFETIME_SECONDS = 15777000
PAGE_LIMIT = 100


def _artwork(attributes: Dict[str, Any]):
    return (attributes.get("artwork") or {}).get("url")


def recently_played_items(history: List[Dict[str, Any]]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for play in history:
        attributes = play["attributes"]
        track = attributes["track"]
        track_attributes = track["attributes"]
        yield f"{track_attributes['name']} | Recently Played", {
            "played_at": attributes.get("playedDate"),
            "track_name": track_attributes["name"],
            "artist_name": track_attributes.get("artistName"),
            "album_name": track_attributes.get("albumName"),
            "duration_ms": attributes.get("playDurationMillis") or track_attributes.get("durationInMillis"),
            "play_duration_ms": attributes.get("playDurationMillis"),
            "end_reason": attributes.get("endReasonType"),
            "genres": track_attributes.get("genreNames") or [],
            "artwork": _artwork(track_attributes),
            "isrc": track_attributes.get("isrc"),
            "external": {
                "provider": "apple_music",
                "id": play["id"],
                "type": "play_history",
                "track_id": track.get("id"),
            },
        }


def library_song_items(songs: List[Dict[str, Any]]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for song in songs:
        attributes = song["attributes"]
        yield f"{attributes['name']} | Library", {
            "added_at": attributes.get("dateAdded"),
            "track_name": attributes["name"],
            "artist_name": attributes.get("artistName"),
            "album_name": attributes.get("albumName"),
            "play_count": attributes.get("playCount") or 0,
            "artwork": _artwork(attributes),
            "external": {"provider": "apple_music", "id": song["id"], "type": "library_song"},
        }


def playlist_items(playlists: List[Dict[str, Any]]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for playlist in playlists:
        attributes = playlist["attributes"]
        tracks = ((playlist.get("relationships") or {}).get("tracks") or {}).get("data") or []
        yield f"{attributes['name']} | Playlists", {
            "created_at": attributes.get("dateAdded"),
            "last_modified_at": attributes.get("lastModifiedDate"),
            "playlist_name": attributes["name"],
            "description": (attributes.get("description") or {}).get("standard"),
            "is_public": attributes.get("isPublic"),
            "can_edit": attributes.get("canEdit"),
            "track_count": len(tracks),
            "tracks": [
                {
                    "id": track.get("id"),
                    "name": track["attributes"].get("name"),
                    "artist_name": track["attributes"].get("artistName"),
                    "album_name": track["attributes"].get("albumName"),
                    "duration_ms": track["attributes"].get("durationInMillis"),
                }
                for track in tracks
            ],
            "artwork": _artwork(attributes),
            "external": {"provider": "apple_music", "id": playlist["id"], "type": "playlist"},
        }


def _mock_history() -> List[Dict[str, Any]]:
    now = utc_now()
    plays = [
        ("mock-play-1", "Blinding Lights", "The Weeknd", "After Hours", 200040, 2),
        ("mock-play-2", "Levitating", "Dua Lipa", "Future Nostalgia", 203064, 5),
        ("mock-play-3", "As It Was", "Harry Styles", "Harry's House", 167303, 24),
    ]
    return [
        {
            "id": play_id,
            "type": "play-history",
            "attributes": {
                "playedDate": (now - timedelta(hours=hours_ago)).isoformat(),
                "playDurationMillis": duration,
                "endReasonType": "NATURAL_END_OF_TRACK",
                "track": {
                    "id": f"{play_id}-track",
                    "type": "songs",
                    "attributes": {
                        "name": name,
                        "artistName": artist,
                        "albumName": album,
                        "durationInMillis": duration,
                    },
                },
            },
        }
        for play_id, name, artist, album, duration, hours_ago in plays
    ]


def _mock_library() -> List[Dict[str, Any]]:
    now = utc_now()
    return [
        {
            "id": "mock-library-1",
            "type": "library-songs",
            "attributes": {
                "name": "Anti-Hero",
                "artistName": "Taylor Swift",
                "albumName": "Midnights",
                "dateAdded": (now - timedelta(days=1)).isoformat(),
                "playCount": 12,
            },
        },
    ]


def _mock_playlists() -> List[Dict[str, Any]]:
    now = utc_now().isoformat()
    return [
        {
            "id": "mock-playlist-1",
            "type": "library-playlists",
            "attributes": {
                "name": "Morning Run",
                "description": {"standard": "Upbeat tracks"},
                "dateAdded": now,
                "lastModifiedDate": now,
                "isPublic": False,
                "canEdit": True,
            },
        },
    ]


class AppleMusicProvider(BaseProvider):
    """Apple Music API adapter (MusicKit user token + developer token)."""

    name = "apple_music"
    display_name = "Apple Music"
    state_prefix = "apple-music-"
    list_name = "Music"

    def validate_config(self) -> None:
        self.require_settings(
            apple_music_team_id=settings.apple_music_team_id,
            apple_music_key_id=settings.apple_music_key_id,
            apple_music_private_key=settings.apple_music_private_key,
        )

    def developer_token(self) -> str:
        """ES256 JWT identifying the app to the Apple Music API."""
        self.validate_config()
        now = epoch_seconds()
        private_key = settings.apple_music_private_key.replace("\\n", "\n")
        return jwt.encode(
            {
                "iss": settings.apple_music_team_id,
                "iat": now,
                "exp": now + DEVELOPER_TOKEN_LIFETIME_SECONDS,
            },
            private_key,
            algorithm="ES256",
            headers={"kid": settings.apple_music_key_id},
        )

    async def create_connection(self, user_id: uuid.UUID) -> ConnectResponse:
        self.validate_config()
        state = self.new_state(user_id)
        developer_token = self.developer_token()
        await self.persistence.ensure_integration(self.name)

        redirect_url = (
            f"{AUTHORIZE_URL}?app_name={quote(settings.apple_music_app_name)}"
            f"&app_url={quote(settings.apple_music_callback_url, safe='')}"
            f"&developer_token={developer_token}&state={quote(state, safe='')}"
        )
        return ConnectResponse(
            provider=self.name,
            redirect_url=redirect_url,
            state=state,
            link_token=developer_token,
        )

    async def handle_callback(self, payload: Dict[str, Any]) -> None:
        if payload.get("error"):
            raise OAuthAuthenticationException(self.name, f"Apple Music OAuth error: {payload['error']}")
        if not payload.get("state"):
            raise InvalidCallbackException(self.name, "Missing required callback parameter: state")
        user_id = self.user_id_from_state(str(payload["state"]))

        music_user_token = payload.get("music_user_token")
        if not music_user_token:
            raise InvalidCallbackException(
                self.name, "Missing required callback parameter: music_user_token must be provided"
            )

        await self.token_store.set(user_id, self.name, StoredToken(
            access_token=music_user_token,
            expires_at=epoch_seconds() + USER_TOKEN_LIFETIME_SECONDS,
        ))
        await self.mark_connected(user_id)
        log_info("Apple Music connected", user_id=str(user_id))

        await self.auto_sync(user_id)

    async def _get(self, path: str, user_token: str, developer_token: str, operation: str, **params) -> List[Dict[str, Any]]:
        response = await self.request(
            "GET", f"{API_BASE}{path}", operation,
            headers={
                "Authorization": f"Bearer {developer_token}",
                "Music-User-Token": user_token,
            },
            params=params,
        )
        return response.json().get("data") or []

    async def sync(self, user_id: uuid.UUID) -> SyncResult:
        _, link, since = await self.sync_window(user_id, settings.apple_music_default_days)
        token = await self.token_store.get(user_id, self.name)
        if token is None:
            raise InvalidTokenException(self.name, "no stored music user token")
        if token.seconds_remaining() <= 0:
            raise InvalidTokenException(self.name, "music user token expired")

        use_mock = settings.apple_music_use_mock_data
        developer_token = "" if use_mock else self.developer_token()
        details: Dict[str, Any] = {"since": since.isoformat()}

        def added_since(value) -> bool:
            moment = parse_optional_datetime(value)
            return moment is not None and moment >= since

        async def recently_played() -> int:
            if use_mock:
                history = _mock_history()
            else:
                history = await self._get(
                    "/me/recent/played/tracks", token.access_token, developer_token,
                    "recently played", limit=PAGE_LIMIT,
                )
            history = [play for play in history if added_since(play["attributes"].get("playedDate"))]
            return await self.save_items(
                user_id, self.list_name, "Recently Played", recently_played_items(history)
            )

        async def library_songs() -> int:
            if use_mock:
                songs = _mock_library()
            else:
                songs = await self._get(
                    "/me/library/songs", token.access_token, developer_token,
                    "library songs", limit=PAGE_LIMIT,
                )
            songs = [song for song in songs if added_since(song["attributes"].get("dateAdded"))]
            return await self.save_items(user_id, self.list_name, "Library", library_song_items(songs))

        async def playlists() -> int:
            if use_mock:
                found = _mock_playlists()
            else:
                found = await self._get(
                    "/me/library/playlists", token.access_token, developer_token,
                    "playlists", limit=PAGE_LIMIT, include="tracks",
                )
            return await self.save_items(user_id, self.list_name, "Playlists", playlist_items(found))

        total = 0
        total += await self.run_resource("recently_played", recently_played, details, user_id)
        total += await self.run_resource("library_songs", library_songs, details, user_id)
        total += await self.run_resource("playlists", playlists, details, user_id)
        details["total_items"] = total

        return await self.finish_sync(user_id, link, details)

    async def status_details(self, user_id: uuid.UUID) -> Dict[str, Any]:
        token = await self.token_store.get(user_id, self.name)
        return {
            "has_user_token": token is not None,
            "has_developer_token": bool(
                settings.apple_music_team_id and settings.apple_music_key_id and settings.apple_music_private_key
            ),
            "user_token_expiry": token.expires_at if token else None,
        }
