"""
Provider adapters and the default registry.

Each module holds one adapter plus the pure functions that map provider
payloads onto list items. ``build_default_providers`` wires every adapter to
the same persistence, token store and HTTP client.
"""
from typing import List, Optional

import httpx

from app.integrations.base import BaseProvider
from app.integrations.location_store import LocationDataStore
from app.integrations.persistence import IntegrationPersistence
from app.integrations.providers.apple_health import AppleHealthProvider
from app.integrations.providers.apple_music import AppleMusicProvider
from app.integrations.providers.contact_list import ContactListProvider
from app.integrations.providers.email_scraper import EmailScraperProvider
from app.integrations.providers.goodreads import GoodreadsProvider
from app.integrations.providers.location_services import LocationServicesProvider
from app.integrations.providers.plaid import PlaidProvider
from app.integrations.providers.spotify import SpotifyProvider
from app.integrations.providers.strava import StravaProvider
from app.integrations.token_store import TokenStore

PROVIDER_CLASSES = (
    SpotifyProvider,
    AppleMusicProvider,
    StravaProvider,
    PlaidProvider,
    AppleHealthProvider,
    EmailScraperProvider,
    ContactListProvider,
    GoodreadsProvider,
)


def build_default_providers(
    persistence: IntegrationPersistence,
    token_store: TokenStore,
    location_store: LocationDataStore,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[BaseProvider]:
    providers: List[BaseProvider] = [
        provider_class(persistence, token_store, transport) for provider_class in PROVIDER_CLASSES
    ]
    providers.append(LocationServicesProvider(persistence, token_store, location_store, transport))
    return providers


__all__ = [
    "AppleHealthProvider",
    "AppleMusicProvider",
    "ContactListProvider",
    "EmailScraperProvider",
    "GoodreadsProvider",
    "LocationServicesProvider",
    "PlaidProvider",
    "SpotifyProvider",
    "StravaProvider",
    "build_default_providers",
]
