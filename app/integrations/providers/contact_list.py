"""
Google Contacts adapter.

Pulls the user's connections through the People API into the "Friends" list.
The address book is small and has no reliable change feed for our purposes,
so every sync reads it whole and relies on dedup to skip unchanged contacts.
"""
import uuid
from typing import Any, Dict, Iterator, List, Optional, Tuple

from app.core.config import settings
from app.core.logging_config import log_info
from app.integrations.base import BaseProvider, run_best_effort, token_from_payload
from app.integrations.exceptions import InvalidCallbackException, OAuthAuthenticationException
from app.integrations.providers.google import GoogleOAuthMixin
from app.integrations.schemas import ConnectResponse, SyncResult

PEOPLE_CONNECTIONS_URL = "https://people.googleapis.com/v1/people/me/connections"
SCOPES = " ".join([
    "https://www.googleapis.com/auth/contacts.readonly",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
])
PERSON_FIELDS = "names,emailAddresses,phoneNumbers,birthdays,addresses,biographies,photos,memberships,metadata"
PAGE_SIZE = 1000
MAX_PAGES = 10


def parse_person(person: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Contact attributes from a People API person; None when it has no display name."""
    names = (person.get("names") or [{}])[0]
    if not names.get("displayName"):
        return None

    birthday = ((person.get("birthdays") or [{}])[0]).get("date")
    biographies = person.get("biographies") or []
    photos = person.get("photos") or []
    return {
        "name": {
            "first_name": names.get("givenName"),
            "last_name": names.get("familyName"),
            "full_name": names["displayName"],
        },
        "phone_numbers": [
            {"type": phone.get("type") or "other", "number": phone.get("value")}
            for phone in person.get("phoneNumbers") or []
        ],
        "emails": [
            {"type": email.get("type") or "other", "address": email.get("value")}
            for email in person.get("emailAddresses") or []
        ],
        "birthday": {
            "month": birthday.get("month"),
            "day": birthday.get("day"),
            "year": birthday.get("year"),
        } if birthday else None,
        "addresses": [
            {
                "type": address.get("type") or "other",
                "street": address.get("streetAddress"),
                "city": address.get("city"),
                "state": address.get("region"),
                "postal_code": address.get("postalCode"),
                "country": address.get("country"),
            }
            for address in person.get("addresses") or []
        ],
        "notes": biographies[0].get("value") if biographies else None,
        "photo_url": photos[0].get("url") if photos else None,
        "groups": [
            group for group in (
                (membership.get("contactGroupMembership") or {}).get("contactGroupResourceName")
                for membership in person.get("memberships") or []
            ) if group
        ],
        "external": {"provider": "contact_list", "id": person["resourceName"]},
    }


def contact_items(people: List[Dict[str, Any]]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for person in people:
        contact = parse_person(person)
        if contact is not None:
            yield f"{contact['name']['full_name']} | Friends", contact


class ContactListProvider(GoogleOAuthMixin, BaseProvider):
    """Google People API adapter."""

    name = "contact_list"
    display_name = "Google Contacts"
    state_prefix = "contacts-"
    list_name = "Friends"
    scopes = SCOPES

    def redirect_uri(self) -> Optional[str]:
        return settings.google_contacts_redirect_uri or settings.google_redirect_uri

    async def create_connection(self, user_id: uuid.UUID) -> ConnectResponse:
        self.validate_config()
        state = self.new_state(user_id)
        await self.persistence.ensure_integration(self.name)
        redirect_url = await self.authorization_url(state)
        return ConnectResponse(provider=self.name, redirect_url=redirect_url, state=state)

    async def handle_callback(self, payload: Dict[str, Any]) -> None:
        if payload.get("error"):
            raise OAuthAuthenticationException(self.name, f"Google Contacts OAuth error: {payload['error']}")
        code = payload.get("code")
        state = payload.get("state")
        if not code or not state:
            raise InvalidCallbackException(self.name, "Missing required callback parameters: code or state")
        user_id = self.user_id_from_state(str(state))

        data = await self.exchange_code(code)
        if not data.get("access_token"):
            raise OAuthAuthenticationException(self.name, "No access token received from Google")
        token = token_from_payload(data)
        profile = await run_best_effort(
            "google profile fetch", self.fetch_userinfo(token.access_token), user_id=str(user_id)
        )
        if profile.ok and profile.value:
            token.provider_user_id = profile.value.get("email")

        await self.token_store.set(user_id, self.name, token)
        await self.mark_connected(user_id)
        log_info("Google Contacts connected", user_id=str(user_id))

        await self.auto_sync(user_id)

    async def _fetch_connections(self, access_token: str) -> List[Dict[str, Any]]:
        people: List[Dict[str, Any]] = []
        page_token = None
        for _ in range(MAX_PAGES):
            params = {"pageSize": PAGE_SIZE, "personFields": PERSON_FIELDS}
            if page_token:
                params["pageToken"] = page_token
            response = await self.request(
                "GET", PEOPLE_CONNECTIONS_URL, "connections",
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
            )
            data = response.json()
            people.extend(data.get("connections") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return people

    async def sync(self, user_id: uuid.UUID) -> SyncResult:
        _, link = await self.link_for(user_id)
        access_token = await self.ensure_valid_access_token(user_id)
        details: Dict[str, Any] = {}

        async def contacts() -> int:
            people = await self._fetch_connections(access_token)
            details["contacts_processed"] = len(people)
            return await self.save_items(user_id, self.list_name, "Contact", contact_items(people))

        details["contacts_stored"] = await self.run_resource("contacts", contacts, details, user_id)
        return await self.finish_sync(user_id, link, details)

    async def status_details(self, user_id: uuid.UUID) -> Dict[str, Any]:
        token = await self.token_store.get(user_id, self.name)
        return {"has_token": token is not None}

    async def disconnect(self, user_id: uuid.UUID) -> None:
        await self.revoke(user_id)
