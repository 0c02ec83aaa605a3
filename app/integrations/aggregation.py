"""
Read-side views of synced data, returned after a callback or on demand.

Each builder reads one list for a user and sorts items into named buckets by
a lowercase substring match on the category name. Builders never raise: a
failed read yields the empty buckets plus an ``error`` message.
"""
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from app.core.logging_config import log_error
from app.core.time_utils import serialize_datetime
from app.integrations.persistence import IntegrationPersistence
from app.models.lists import ListItem

# (bucket, category substrings); the first rule whose substring occurs wins
BucketRules = Sequence[Tuple[str, Tuple[str, ...]]]
ItemFilter = Callable[[Dict[str, Any]], bool]

MUSIC_RULES: BucketRules = (
    ("recently_played", ("recently played",)),
    ("liked_songs", ("liked", "saved")),
    ("playlists", ("playlist",)),
    ("top_tracks", ("top",)),
)

ACTIVITY_RULES: BucketRules = (
    ("runs", ("run",)),
    ("bikes", ("bike", "ride")),
    ("swims", ("swim",)),
    ("walks", ("walk",)),
    ("hikes", ("hike",)),
    ("strength", ("strength", "workout")),
)

EMAIL_RULES: BucketRules = (
    ("travel", ("travel", "booking")),
    ("food", ("food", "dining")),
    ("shopping", ("shopping", "purchase")),
    ("transport", ("transport",)),
    ("bills", ("bill", "utilit")),
    ("subscriptions", ("subscription", "membership")),
    ("social", ("social", "media")),
    ("work", ("work", "professional")),
    ("finance", ("financ", "transaction")),
    ("health", ("health", "medical")),
    ("education", ("education", "learning")),
)

APPLE_MUSIC_RULES: BucketRules = (
    ("recently_played", ("recently played", "recent")),
    ("library_songs", ("library", "saved")),
    ("playlists", ("playlist",)),
)

TRANSACTION_LISTS = ("Travel", "Transport", "Food", "Places")


def serialize_item(item: ListItem) -> Dict[str, Any]:
    return {
        "id": str(item.id),
        "title": item.title,
        "attributes": item.attributes,
        "created_at": serialize_datetime(item.created_at),
        "updated_at": serialize_datetime(item.updated_at),
    }


def bucket_for(category_name: Optional[str], rules: BucketRules, default: Optional[str]) -> Optional[str]:
    name = (category_name or "").lower()
    for bucket, needles in rules:
        if any(needle in name for needle in needles):
            return bucket
    return default


def external_is(provider: str, item_type: Optional[str] = None) -> ItemFilter:
    def check(attributes: Dict[str, Any]) -> bool:
        external = (attributes or {}).get("external") or {}
        if external.get("provider") != provider:
            return False
        return item_type is None or external.get("type") == item_type
    return check


def bucket_items(
    rows: Iterable[Tuple[ListItem, Optional[str]]],
    rules: BucketRules,
    default: Optional[str] = None,
    per_category: Optional[int] = None,
    item_filter: Optional[ItemFilter] = None,
) -> Tuple[Dict[str, List[Dict[str, Any]]], int]:
    """
    Sort ``(item, category_name)`` rows into buckets.

    Rows arrive newest first; ``per_category`` caps each category. Rows that
    match no rule go to ``default`` or are dropped when it is None.

    Returns:
        (buckets, number of items placed)
    """
    buckets: Dict[str, List[Dict[str, Any]]] = {bucket: [] for bucket, _ in rules}
    if default:
        buckets[default] = []
    seen: Dict[Optional[str], int] = {}
    placed = 0
    for item, category_name in rows:
        if item_filter is not None and not item_filter(item.attributes):
            continue
        if per_category is not None and seen.get(category_name, 0) >= per_category:
            continue
        seen[category_name] = seen.get(category_name, 0) + 1
        bucket = bucket_for(category_name, rules, default)
        if bucket is None:
            continue
        buckets[bucket].append(serialize_item(item))
        placed += 1
    return buckets, placed


def _empty(rules: BucketRules, default: Optional[str] = None, **totals) -> Dict[str, Any]:
    data: Dict[str, Any] = {bucket: [] for bucket, _ in rules}
    if default:
        data[default] = []
    data.update(totals)
    return data


async def _guarded(label: str, user_id: uuid.UUID, build, fallback: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return await build()
    except Exception as exc:
        log_error(exc, user_id=str(user_id), view=label)
        return {**fallback, "error": f"Failed to fetch synced {label} data"}


# ================================================================================
# PROVIDER VIEWS
# ================================================================================

async def spotify_music_data(persistence: IntegrationPersistence, user_id: uuid.UUID) -> Dict[str, Any]:
    async def build():
        rows = await persistence.list_user_items(user_id, "Music")
        buckets, _ = bucket_items(rows, MUSIC_RULES, per_category=10, item_filter=external_is("spotify"))
        return buckets

    return await _guarded("music", user_id, build, _empty(MUSIC_RULES))


async def strava_activity_data(persistence: IntegrationPersistence, user_id: uuid.UUID) -> Dict[str, Any]:
    async def build():
        rows = await persistence.list_user_items(user_id, "Activity")
        buckets, total = bucket_items(
            rows, ACTIVITY_RULES, default="other", per_category=50, item_filter=external_is("strava")
        )
        return {**buckets, "total_activities": total}

    return await _guarded("activity", user_id, build, _empty(ACTIVITY_RULES, "other", total_activities=0))


async def plaid_financial_data(persistence: IntegrationPersistence, user_id: uuid.UUID) -> Dict[str, Any]:
    async def build():
        accounts, total_accounts = bucket_items(
            await persistence.list_user_items(user_id, "Financial"),
            (("accounts", ("account",)),),
        )
        transactions: List[Dict[str, Any]] = []
        for list_name in TRANSACTION_LISTS:
            buckets, _ = bucket_items(
                await persistence.list_user_items(user_id, list_name),
                (),
                default="transactions",
                per_category=100,
                item_filter=external_is("plaid", "transaction"),
            )
            transactions.extend(buckets["transactions"])
        return {
            "accounts": accounts["accounts"],
            "transactions": transactions,
            "total_accounts": total_accounts,
            "total_transactions": len(transactions),
        }

    fallback = {"accounts": [], "transactions": [], "total_accounts": 0, "total_transactions": 0}
    return await _guarded("financial", user_id, build, fallback)


async def email_data(persistence: IntegrationPersistence, user_id: uuid.UUID) -> Dict[str, Any]:
    async def build():
        rows = await persistence.list_user_items(user_id, "Email")
        buckets, total = bucket_items(rows, EMAIL_RULES, default="other", per_category=100)
        return {**buckets, "total_emails": total}

    return await _guarded("email", user_id, build, _empty(EMAIL_RULES, "other", total_emails=0))


async def apple_music_data(persistence: IntegrationPersistence, user_id: uuid.UUID) -> Dict[str, Any]:
    async def build():
        rows = await persistence.list_user_items(user_id, "Music")
        buckets, total = bucket_items(
            rows, APPLE_MUSIC_RULES, per_category=50, item_filter=external_is("apple_music")
        )
        return {**buckets, "total_items": total}

    return await _guarded("Apple Music", user_id, build, _empty(APPLE_MUSIC_RULES, total_items=0))


SYNCED_DATA_VIEWS = {
    "spotify": spotify_music_data,
    "strava": strava_activity_data,
    "plaid": plaid_financial_data,
    "email_scraper": email_data,
    "apple_music": apple_music_data,
}
