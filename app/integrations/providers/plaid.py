"""
Plaid adapter.

Plaid Link runs on the client: ``/connect`` creates a link token, the client
completes Link and posts back a public token, which is exchanged for a
long-lived item access token. Sync stores accounts in "Financial" and files
each transaction under a spending list (Travel, Transport, Food, Places).
"""
import uuid
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type

import httpx

from app.core.config import settings
from app.core.logging_config import log_info
from app.core.time_utils import epoch_seconds, utc_now
from app.integrations.base import BaseProvider, classify_http_error
from app.integrations.exceptions import (
    ConfigurationException,
    IntegrationException,
    InvalidCallbackException,
    InvalidTokenException,
    OAuthAuthenticationException,
)
from app.integrations.schemas import ConnectResponse, SyncResult
from app.integrations.token_store import StoredToken

PLAID_HOSTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

# Item access tokens do not expire; the stored expiry only drives bookkeeping
ITEM_TOKEN_LIFETIME_SECONDS = 365 * 24 * 3600
TRANSACTIONS_PAGE_SIZE = 500
MAX_TRANSACTION_PAGES = 10

# Plaid answers 400 with these codes when the item needs the user again
REAUTH_ERROR_CODES = {"ITEM_LOGIN_REQUIRED", "INVALID_ACCESS_TOKEN", "ITEM_NOT_FOUND"}

# (list, category, category keywords, merchant keywords), first match wins
SPENDING_RULES = [
    ("Travel", "Travel Expenses",
     ("travel", "airlines", "hotels"),
     ("airline", "hotel", "airbnb", "booking", "expedia")),
    ("Transport", "Transportation",
     ("transportation", "gas", "taxi", "uber", "lyft"),
     ("uber", "lyft", "taxi", "gas", "shell", "exxon", "chevron")),
    ("Food", "Dining",
     ("food", "restaurants", "fast food", "coffee"),
     ("restaurant", "starbucks", "mcdonald", "pizza", "cafe")),
    ("Food", "Groceries",
     ("groceries", "supermarket"),
     ("grocery", "walmart", "target", "safeway", "kroger")),
    ("Places", "Entertainment",
     ("entertainment", "recreation", "gyms", "movie"),
     ("gym", "fitness", "cinema", "theater")),
    ("Places", "Shopping",
     ("shops", "retail", "clothing"),
     ("amazon", "store")),
]
DEFAULT_SPENDING = ("Places", "General Expenses")


def categorize_transaction(transaction: Dict[str, Any]) -> Tuple[str, str]:
    """(list name, category name) for a transaction."""
    categories = transaction.get("category") or []
    primary = (categories[0] if categories else "").lower()
    merchant = (transaction.get("merchant_name") or transaction.get("name") or "").lower()

    for list_name, category_name, category_words, merchant_words in SPENDING_RULES:
        if any(word in primary for word in category_words) or any(word in merchant for word in merchant_words):
            return list_name, category_name
    return DEFAULT_SPENDING


def _currency(source: Dict[str, Any]) -> str:
    return source.get("iso_currency_code") or source.get("unofficial_currency_code") or "USD"


def account_items(accounts: List[Dict[str, Any]]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for account in accounts:
        balances = account.get("balances") or {}
        yield f"{account['name']} | Accounts", {
            "account_id": account["account_id"],
            "account_name": account["name"],
            "official_name": account.get("official_name"),
            "account_type": account.get("type"),
            "account_subtype": account.get("subtype"),
            "mask": account.get("mask"),
            "balances": {
                "available": balances.get("available"),
                "current": balances.get("current"),
                "limit": balances.get("limit"),
                "currency": _currency(balances),
            },
            "external": {"provider": "plaid", "id": account["account_id"], "type": "account"},
        }


def _location(location: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not location:
        return None
    has_coordinates = location.get("lat") is not None and location.get("lon") is not None
    return {
        "address": location.get("address"),
        "city": location.get("city"),
        "region": location.get("region"),
        "postal_code": location.get("postal_code"),
        "country": location.get("country"),
        "coordinates": {"lat": location["lat"], "lon": location["lon"]} if has_coordinates else None,
        "store_number": location.get("store_number"),
    }


def transaction_items(
    transactions: List[Dict[str, Any]], accounts: List[Dict[str, Any]]
) -> Iterator[Tuple[str, str, str, Dict[str, Any]]]:
    """``(list, category, title, attributes)`` for each transaction."""
    accounts_by_id = {account["account_id"]: account for account in accounts}
    for transaction in transactions:
        account = accounts_by_id.get(transaction["account_id"]) or {}
        list_name, category_name = categorize_transaction(transaction)
        account_name = account.get("name") or "Account"
        yield list_name, category_name, f"{account_name} | Transactions", {
            "transaction_date": transaction.get("date"),
            "transaction_name": transaction.get("name"),
            "merchant_name": transaction.get("merchant_name"),
            # Plaid reports debits as positive and credits as negative
            "amount": abs(transaction.get("amount") or 0),
            "currency": _currency(transaction),
            "category": transaction.get("category"),
            "category_id": transaction.get("category_id"),
            "account_name": account.get("name"),
            "account_type": account.get("type"),
            "account_subtype": account.get("subtype"),
            "payment_channel": transaction.get("payment_channel"),
            "pending": bool(transaction.get("pending")),
            "location": _location(transaction.get("location")),
            "external": {
                "provider": "plaid",
                "id": transaction["transaction_id"],
                "account_id": transaction["account_id"],
                "type": "transaction",
            },
        }


class PlaidProvider(BaseProvider):
    """Plaid adapter (link token / public token exchange)."""

    name = "plaid"
    display_name = "Plaid"
    state_prefix = "plaid-"
    list_name = "Financial"

    def validate_config(self) -> None:
        self.require_settings(plaid_client_id=settings.plaid_client_id, plaid_secret=settings.plaid_secret)

    @property
    def base_url(self) -> str:
        return PLAID_HOSTS[settings.plaid_env]

    async def _call(
        self,
        path: str,
        operation: str,
        body: Dict[str, Any],
        auth_error: Type[IntegrationException] = InvalidTokenException,
    ) -> Dict[str, Any]:
        """POST to the Plaid API with client credentials in the body."""
        client = await self.http()
        payload = {"client_id": settings.plaid_client_id, "secret": settings.plaid_secret, **body}
        try:
            response = await client.post(f"{self.base_url}{path}", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            error_code = _plaid_error_code(exc.response)
            if error_code in REAUTH_ERROR_CODES:
                raise auth_error(self.name, error_code) from exc
            raise classify_http_error(self.name, exc, operation, auth_error) from exc
        except httpx.HTTPError as exc:
            raise classify_http_error(self.name, exc, operation, auth_error) from exc
        return response.json()

    async def create_connection(self, user_id: uuid.UUID) -> ConnectResponse:
        self.validate_config()
        state = self.new_state(user_id)
        body: Dict[str, Any] = {
            "user": {"client_user_id": str(user_id)},
            "client_name": settings.plaid_client_name,
            "products": ["transactions"],
            "country_codes": ["US"],
            "language": "en",
        }
        if settings.plaid_webhook_url:
            body["webhook"] = settings.plaid_webhook_url
        if settings.plaid_redirect_uri:
            body["redirect_uri"] = settings.plaid_redirect_uri

        try:
            data = await self._call("/link/token/create", "link token creation", body)
        except InvalidTokenException as exc:
            raise ConfigurationException(
                self.name, "Invalid Plaid credentials. Please check PLAID_CLIENT_ID and PLAID_SECRET."
            ) from exc

        link_token = data["link_token"]
        await self.persistence.ensure_integration(self.name)
        return ConnectResponse(
            provider=self.name,
            link_token=link_token,
            state=state,
            redirect_url=f"plaid://link?token={link_token}",
        )

    async def handle_callback(self, payload: Dict[str, Any]) -> None:
        if payload.get("error"):
            raise OAuthAuthenticationException(self.name, f"Plaid Link error: {payload['error']}")

        public_token = payload.get("public_token")
        state = payload.get("state")
        if not public_token or not state:
            raise InvalidCallbackException(self.name, "Missing public_token or state parameter")
        user_id = self.user_id_from_state(str(state))

        data = await self._call(
            "/item/public_token/exchange", "public token exchange",
            {"public_token": public_token},
            auth_error=OAuthAuthenticationException,
        )
        await self.token_store.set(user_id, self.name, StoredToken(
            access_token=data["access_token"],
            provider_user_id=data.get("item_id"),
            expires_at=epoch_seconds() + ITEM_TOKEN_LIFETIME_SECONDS,
        ))
        await self.mark_connected(user_id)
        log_info("Plaid item linked", user_id=str(user_id), item_id=data.get("item_id"))

        await self.auto_sync(user_id)

    async def _fetch_transactions(self, access_token: str, since) -> List[Dict[str, Any]]:
        start_date = since.date().isoformat()
        end_date = utc_now().date().isoformat()
        transactions: List[Dict[str, Any]] = []
        for _ in range(MAX_TRANSACTION_PAGES):
            data = await self._call("/transactions/get", "transactions", {
                "access_token": access_token,
                "start_date": start_date,
                "end_date": end_date,
                "options": {"count": TRANSACTIONS_PAGE_SIZE, "offset": len(transactions)},
            })
            batch = data.get("transactions") or []
            transactions.extend(batch)
            if not batch or len(transactions) >= data.get("total_transactions", 0):
                break
        return transactions

    async def sync(self, user_id: uuid.UUID) -> SyncResult:
        self.validate_config()
        _, link, since = await self.sync_window(user_id, settings.plaid_default_days)
        token = await self.token_store.get(user_id, self.name)
        if token is None:
            raise InvalidTokenException(self.name, "no stored item access token")
        details: Dict[str, Any] = {"since": since.isoformat()}
        accounts: List[Dict[str, Any]] = []

        async def fetch_accounts() -> int:
            data = await self._call("/accounts/get", "accounts", {"access_token": token.access_token})
            accounts.extend(data.get("accounts") or [])
            return await self.save_items(user_id, self.list_name, "Accounts", account_items(accounts))

        async def fetch_transactions() -> int:
            found = await self._fetch_transactions(token.access_token, since)
            count = 0
            for list_name, category_name, title, attributes in transaction_items(found, accounts):
                count += await self.save_items(user_id, list_name, category_name, [(title, attributes)])
            return count

        total = 0
        total += await self.run_resource("accounts", fetch_accounts, details, user_id)
        total += await self.run_resource("transactions", fetch_transactions, details, user_id)
        details["total_items"] = total

        return await self.finish_sync(user_id, link, details)

    async def status_details(self, user_id: uuid.UUID) -> Dict[str, Any]:
        token = await self.token_store.get(user_id, self.name)
        return {
            "has_tokens": token is not None,
            "item_id": token.provider_user_id if token else None,
        }

    async def disconnect(self, user_id: uuid.UUID) -> None:
        token = await self.token_store.get(user_id, self.name)
        if token is None:
            return
        await self._call("/item/remove", "item removal", {"access_token": token.access_token})


def _plaid_error_code(response: httpx.Response) -> Optional[str]:
    try:
        return response.json().get("error_code")
    except ValueError:
        return None
