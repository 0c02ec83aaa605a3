"""
Connect, callback and sync flows of the Strava, Plaid, Google and Apple Music
adapters against mocked provider APIs.
"""
import base64
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.core.config import settings
from app.integrations.exceptions import (
    ConfigurationException,
    InvalidCallbackException,
    InvalidTokenException,
)
from app.integrations.providers import build_default_providers
from app.integrations.providers import google
from app.integrations.providers.apple_music import AppleMusicProvider
from app.integrations.providers.contact_list import PEOPLE_CONNECTIONS_URL, ContactListProvider
from app.integrations.providers.email_scraper import GMAIL_API, EmailScraperProvider
from app.integrations.providers.plaid import PLAID_HOSTS, PlaidProvider
from app.integrations.providers.strava import API_BASE as STRAVA_API, DEAUTHORIZE_URL, StravaProvider
from app.integrations.token_store import StoredToken
from tests.lib import form_body, json_body, make_token


def encoded(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii")


@pytest.fixture(autouse=True)
def provider_settings(monkeypatch):
    for key, value in {
        "strava_client_id": "strava-id",
        "strava_client_secret": "strava-secret",
        "strava_redirect_uri": "https://app.example.com/strava",
        "plaid_client_id": "plaid-id",
        "plaid_secret": "plaid-secret",
        "plaid_env": "sandbox",
        "google_client_id": "google-id",
        "google_client_secret": "google-secret",
        "google_redirect_uri": "https://app.example.com/google",
    }.items():
        monkeypatch.setattr(settings, key, value)


def test_registry_has_every_provider(persistence, token_store, location_store):
    names = [provider.name for provider in build_default_providers(persistence, token_store, location_store)]
    assert sorted(names) == sorted([
        "spotify", "apple_music", "strava", "plaid", "apple_health",
        "email_scraper", "contact_list", "goodreads", "location_services",
    ])


class TestStrava:
    @pytest.mark.asyncio
    async def test_sync_files_activities_by_sport(self, persistence, token_store, routes, user_id):
        strava = StravaProvider(persistence, token_store, routes.transport)
        await token_store.set(user_id, "strava", make_token("s1"))
        routes.json("GET", f"{STRAVA_API}/athlete/activities", [
            {"id": 1, "sport_type": "Run", "start_date": "2024-06-01T06:00:00Z", "moving_time": 1800, "distance": 5000},
            {"id": 2, "sport_type": "Ride", "start_date": "2024-06-02T06:00:00Z", "moving_time": 3600, "distance": 20000},
        ])

        result = await strava.sync(user_id)

        assert result.details["activities_count"] == 2
        rows = await persistence.list_user_items(user_id, "Activity")
        assert sorted(category for _, category in rows) == ["Bike", "Run"]
        params = routes.calls("GET", f"{STRAVA_API}/athlete/activities")[0].url.params
        assert params["per_page"] == "100"

    @pytest.mark.asyncio
    async def test_callback_stores_athlete(self, persistence, token_store, routes, user_id):
        strava = StravaProvider(persistence, token_store, routes.transport)
        routes.json("POST", "https://www.strava.com/oauth/token", {
            "access_token": "s1", "refresh_token": "r1", "expires_at": 2000000000,
            "athlete": {"id": 777},
        })
        routes.json("GET", f"{STRAVA_API}/athlete/activities", [])

        await strava.handle_callback({"code": "c", "state": strava.new_state(user_id)})

        token = await token_store.get(user_id, "strava")
        assert token.expires_at == 2000000000
        assert token.provider_user_id == "777"
        body = form_body(routes.calls("POST", "https://www.strava.com/oauth/token")[0])
        assert body["grant_type"] == "authorization_code"
        assert (body["client_id"], body["client_secret"]) == ("strava-id", "strava-secret")
        assert body["redirect_uri"] == "https://app.example.com/strava"
        assert (await strava.status(user_id)).connected

    @pytest.mark.asyncio
    async def test_disconnect_deauthorizes(self, persistence, token_store, routes, user_id):
        strava = StravaProvider(persistence, token_store, routes.transport)
        await token_store.set(user_id, "strava", make_token("s1"))
        routes.json("POST", DEAUTHORIZE_URL, {})

        await strava.disconnect(user_id)

        assert routes.calls("POST", DEAUTHORIZE_URL)[0].headers["Authorization"] == "Bearer s1"


class TestPlaid:
    base = PLAID_HOSTS["sandbox"]

    @pytest.mark.asyncio
    async def test_connect_returns_link_token(self, persistence, token_store, routes, user_id):
        plaid = PlaidProvider(persistence, token_store, routes.transport)
        routes.json("POST", f"{self.base}/link/token/create", {"link_token": "link-sandbox-1"})

        connection = await plaid.create_connection(user_id)

        assert connection.link_token == "link-sandbox-1"
        body = json_body(routes.calls("POST", f"{self.base}/link/token/create")[0])
        assert body["client_id"] == "plaid-id"
        assert body["user"] == {"client_user_id": str(user_id)}

    @pytest.mark.asyncio
    async def test_bad_credentials_are_configuration_errors(self, persistence, token_store, routes, user_id):
        plaid = PlaidProvider(persistence, token_store, routes.transport)
        routes.json("POST", f"{self.base}/link/token/create", {"error_code": "INVALID_API_KEYS"}, status_code=401)

        with pytest.raises(ConfigurationException):
            await plaid.create_connection(user_id)

    @pytest.mark.asyncio
    async def test_sync_accounts_and_transactions(self, persistence, token_store, routes, user_id):
        plaid = PlaidProvider(persistence, token_store, routes.transport)
        await token_store.set(user_id, "plaid", StoredToken(access_token="access-sandbox", expires_at=2000000000))
        routes.json("POST", f"{self.base}/accounts/get", {
            "accounts": [{"account_id": "acc-1", "name": "Checking", "type": "depository", "balances": {}}],
        })
        routes.json("POST", f"{self.base}/transactions/get", {
            "total_transactions": 2,
            "transactions": [
                {"transaction_id": "t1", "account_id": "acc-1", "amount": 12.5, "name": "Uber trip"},
                {"transaction_id": "t2", "account_id": "acc-1", "amount": 40, "name": "Corner shop"},
            ],
        })

        result = await plaid.sync(user_id)

        assert result.details["counts"] == {"accounts": 1, "transactions": 2}
        assert len(await persistence.list_user_items(user_id, "Transport")) == 1
        assert [category for _, category in await persistence.list_user_items(user_id, "Places")] == [
            "General Expenses",
        ]

    @pytest.mark.asyncio
    async def test_login_required_is_invalid_token(self, persistence, token_store, routes, user_id):
        plaid = PlaidProvider(persistence, token_store, routes.transport)
        await token_store.set(user_id, "plaid", StoredToken(access_token="access-sandbox", expires_at=2000000000))
        routes.json("POST", f"{self.base}/accounts/get", {"error_code": "ITEM_LOGIN_REQUIRED"}, status_code=400)

        with pytest.raises(InvalidTokenException):
            await plaid.sync(user_id)


class TestGoogle:
    @pytest.mark.asyncio
    async def test_contacts_connect_and_sync(self, persistence, token_store, routes, user_id):
        contacts = ContactListProvider(persistence, token_store, routes.transport)
        routes.json("POST", google.TOKEN_URL, {"access_token": "g1", "refresh_token": "gr", "expires_in": 3600})
        routes.json("GET", google.USERINFO_URL, {"email": "ada@gmail.com"})
        routes.add(
            "GET", PEOPLE_CONNECTIONS_URL,
            httpx.Response(200, json={"connections": [_person("c1", "Grace Hopper")], "nextPageToken": "p2"}),
            httpx.Response(200, json={"connections": [_person("c2", "Alan Turing"), {"resourceName": "people/x"}]}),
        )

        connection = await contacts.create_connection(user_id)
        query = parse_qs(urlparse(connection.redirect_url).query)
        assert query["access_type"] == ["offline"]

        await contacts.handle_callback({"code": "c", "state": connection.state})

        assert (await token_store.get(user_id, "contact_list")).provider_user_id == "ada@gmail.com"
        titles = sorted(item.title for item, _ in await persistence.list_user_items(user_id, "Friends"))
        assert titles == ["Alan Turing | Friends", "Grace Hopper | Friends"]
        assert routes.calls("GET", PEOPLE_CONNECTIONS_URL)[1].url.params["pageToken"] == "p2"

    @pytest.mark.asyncio
    async def test_gmail_credentials_take_precedence(self, persistence, token_store, user_id, monkeypatch):
        monkeypatch.setattr(settings, "gmail_client_id", "gmail-id")
        gmail = EmailScraperProvider(persistence, token_store)

        connection = await gmail.create_connection(user_id)

        assert parse_qs(urlparse(connection.redirect_url).query)["client_id"] == ["gmail-id"]

    @pytest.mark.asyncio
    async def test_gmail_cursor_is_newest_email(self, persistence, token_store, routes, user_id):
        gmail = EmailScraperProvider(persistence, token_store, routes.transport)
        await token_store.set(user_id, "email_scraper", make_token("g1"))
        routes.json("GET", f"{GMAIL_API}/messages", {"messages": [{"id": "m1"}, {"id": "m2"}]})
        routes.json("GET", f"{GMAIL_API}/messages/m1", _message("m1", "Your order has shipped", "orders@amazon.com",
                                                                "Thu, 30 May 2024 10:00:00 +0000"))
        routes.json("GET", f"{GMAIL_API}/messages/m2", _message("m2", "Flight itinerary", "noreply@delta.com",
                                                                "Fri, 31 May 2024 08:00:00 +0000"))

        result = await gmail.sync(user_id)

        assert result.synced_at == datetime(2024, 5, 31, 8, 0, tzinfo=timezone.utc)
        assert result.details["category_stats"] == {"shopping": 1, "travel": 1}
        assert len(await persistence.list_user_items(user_id, "Travel")) == 1
        assert len(await persistence.list_user_items(user_id, "Places")) == 1

    @pytest.mark.asyncio
    async def test_gmail_missing_message_is_skipped(self, persistence, token_store, routes, user_id):
        gmail = EmailScraperProvider(persistence, token_store, routes.transport)
        await token_store.set(user_id, "email_scraper", make_token("g1"))
        routes.json("GET", f"{GMAIL_API}/messages", {"messages": [{"id": "gone"}]})

        result = await gmail.sync(user_id)

        assert result.details["skipped"] == 1
        assert result.details["total_processed"] == 0


class TestAppleMusic:
    @pytest.mark.asyncio
    async def test_authorization_with_mock_data(self, persistence, token_store, user_id, monkeypatch):
        monkeypatch.setattr(settings, "apple_music_use_mock_data", True)
        apple_music = AppleMusicProvider(persistence, token_store)

        await apple_music.handle_callback({"state": apple_music.new_state(user_id), "music_user_token": "mut"})

        status = await apple_music.status(user_id)
        assert status.connected
        assert status.details["has_user_token"] is True
        categories = {category for _, category in await persistence.list_user_items(user_id, "Music")}
        assert categories == {"Recently Played", "Library", "Playlists"}

    @pytest.mark.asyncio
    async def test_callback_requires_user_token(self, persistence, token_store, user_id):
        apple_music = AppleMusicProvider(persistence, token_store)

        with pytest.raises(InvalidCallbackException, match="music_user_token"):
            await apple_music.handle_callback({"state": apple_music.new_state(user_id)})

    @pytest.mark.asyncio
    async def test_connect_requires_musickit_key(self, persistence, token_store, user_id):
        apple_music = AppleMusicProvider(persistence, token_store)

        with pytest.raises(ConfigurationException):
            await apple_music.create_connection(user_id)


def _person(resource_id: str, name: str):
    return {"resourceName": f"people/{resource_id}", "names": [{"displayName": name}]}


def _message(message_id: str, subject: str, sender: str, date: str):
    return {
        "id": message_id,
        "snippet": subject,
        "labelIds": ["INBOX"],
        "payload": {
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": sender},
                {"name": "Date", "value": date},
            ],
            "body": {"data": encoded(f"{subject}. Total $10.00")},
        },
    }
