"""
Goodreads adapter.

Goodreads has no public API any more. A user connects by handing over the RSS
feed URL of their shelves; sync reads that feed. A library export (CSV) can be
imported at any time through ``import_csv``. Books land in the "Books" list
under Read / Currently Reading / To Read.
"""
import csv
import io
import json
import re
import uuid
import xml.etree.ElementTree as ET
from typing import Any, Dict, Iterator, List, Optional, Tuple

from app.core.config import settings
from app.core.logging_config import log_info
from app.core.time_utils import epoch_seconds, parse_optional_datetime, serialize_datetime
from app.integrations.base import BaseProvider
from app.integrations.exceptions import (
    DataValidationException,
    InvalidCallbackException,
    InvalidTokenException,
    OAuthAuthenticationException,
    ProviderAPIException,
)
from app.integrations.schemas import ConnectResponse, SyncResult
from app.integrations.token_store import StoredToken

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
CREDENTIAL_LIFETIME_SECONDS = 10 * 365 * 24 * 3600

SHELF_CATEGORIES = {
    "read": "Read",
    "currently-reading": "Currently Reading",
    "to-read": "To Read",
}

_ADDED_PREFIX = re.compile(r"^.+? (?:added|wants to read|is currently reading|has read):\s*")
_BOOK_ID = re.compile(r"/book/show/(\d+)")
_AUTHOR = re.compile(r"author:\s*([^<\n]+)", re.IGNORECASE)
_RATING = re.compile(r"rating:\s*(\d+)", re.IGNORECASE)


def _int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _csv_date(value: Optional[str]):
    """Goodreads exports dates as YYYY/MM/DD."""
    if not value or not value.strip():
        return None
    return parse_optional_datetime(value.strip().replace("/", "-"))


class _Item:
    """Stripped child text of an RSS item."""

    def __init__(self, element: ET.Element):
        self.element = element

    def __call__(self, tag: str) -> str:
        return (self.element.findtext(tag) or "").strip()


def reading_status(shelf: Optional[str]) -> str:
    shelf = (shelf or "").strip().lower()
    return shelf if shelf in SHELF_CATEGORIES else "to-read"


# ================================================================================
# PARSING
# ================================================================================

def parse_rss_feed(xml_text: str) -> List[Dict[str, Any]]:
    """
    Books from a Goodreads shelf RSS feed.

    Uses the structured ``book_id``/``author_name``/``user_rating`` elements
    Goodreads emits and falls back to the description text for older feeds.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise DataValidationException("goodreads", f"Unreadable RSS feed: {exc}") from exc

    books = []
    for item in root.iter("item"):
        text = _Item(item)
        description = text("description")
        guid = text("guid") or text("link")

        book_id = text("book_id")
        if not book_id:
            match = _BOOK_ID.search(guid)
            book_id = match.group(1) if match else guid
        if not book_id:
            continue

        author = text("author_name")
        if not author:
            match = _AUTHOR.search(description)
            author = match.group(1).strip() if match else ""
        rating = _int(text("user_rating"))
        if rating is None:
            match = _RATING.search(description)
            rating = int(match.group(1)) if match else None

        shelves = [shelf.strip() for shelf in text("user_shelves").split(",") if shelf.strip()]
        status = next((shelf for shelf in shelves if shelf in SHELF_CATEGORIES), "read")
        books.append({
            "id": book_id,
            "title": _ADDED_PREFIX.sub("", text("title")),
            "authors": [author] if author else [],
            "isbn": text("isbn") or None,
            "publication_year": _int(text("book_published")),
            "user_rating": rating or None,
            "reading_status": status,
            "date_added": parse_optional_datetime(text("user_date_added") or text("pubDate")),
            "date_finished": parse_optional_datetime(text("user_read_at")),
            "number_of_pages": _int(text("num_pages")),
            "cover_image_url": text("book_image_url") or None,
            "shelves": shelves,
        })
    return books


def parse_library_csv(csv_data: str) -> List[Dict[str, Any]]:
    """Books from a Goodreads library export."""
    reader = csv.DictReader(io.StringIO(csv_data.lstrip("\ufeff")))
    if not reader.fieldnames or "Title" not in reader.fieldnames:
        raise DataValidationException("goodreads", "CSV must start with the Goodreads export header row")

    books = []
    for index, row in enumerate(reader, start=1):
        title = (row.get("Title") or "").strip()
        if not title:
            continue
        isbn = (row.get("ISBN13") or row.get("ISBN") or "").strip().strip('="')
        author = (row.get("Author") or "").strip()
        books.append({
            "id": (row.get("Book Id") or "").strip() or f"csv-{index}",
            "title": title,
            "authors": [author] if author else [],
            "isbn": isbn or None,
            "publication_year": _int(row.get("Year Published")),
            "user_rating": _int(row.get("My Rating")) or None,
            "user_review": (row.get("My Review") or "").strip() or None,
            "reading_status": reading_status(row.get("Exclusive Shelf")),
            "date_added": _csv_date(row.get("Date Added")),
            "date_finished": _csv_date(row.get("Date Read")),
            "number_of_pages": _int(row.get("Number of Pages")),
            "shelves": [s.strip() for s in (row.get("Bookshelves") or "").split(",") if s.strip()],
        })
    return books


def book_items(books: List[Dict[str, Any]]) -> Iterator[Tuple[str, str, Dict[str, Any]]]:
    """``(category, title, attributes)`` for each book."""
    for book in books:
        attributes = {key: value for key, value in book.items() if key not in ("id", "title")}
        for key in ("date_added", "date_finished"):
            attributes[key] = serialize_datetime(book.get(key)) if book.get(key) else None
        attributes["external"] = {"provider": "goodreads", "id": str(book["id"]), "type": "book"}
        yield SHELF_CATEGORIES[book["reading_status"]], book["title"], attributes


class GoodreadsProvider(BaseProvider):
    """Goodreads shelf RSS feed and CSV export."""

    name = "goodreads"
    display_name = "Goodreads"
    state_prefix = "goodreads-"
    list_name = "Books"

    async def create_connection(self, user_id: uuid.UUID) -> ConnectResponse:
        await self.persistence.ensure_integration(self.name)
        return ConnectResponse(provider=self.name, state=self.new_state(user_id))

    async def fetch_feed(self, rss_feed_url: str, auth_error=InvalidTokenException) -> str:
        response = await self.request(
            "GET", rss_feed_url, "rss feed",
            auth_error=auth_error,
            headers={"User-Agent": USER_AGENT},
        )
        return response.text

    async def handle_callback(self, payload: Dict[str, Any]) -> None:
        state = payload.get("state")
        if not state:
            raise InvalidCallbackException(self.name, "Missing required callback parameter: state")
        user_id = self.user_id_from_state(str(state))

        rss_feed_url = payload.get("rss_feed_url") or payload.get("rssFeedUrl")
        if not rss_feed_url:
            raise InvalidCallbackException(self.name, "Missing rssFeedUrl")
        if not str(rss_feed_url).startswith(("https://", "http://")):
            raise InvalidCallbackException(self.name, "rssFeedUrl must be an http(s) URL")

        try:
            body = await self.fetch_feed(rss_feed_url, auth_error=OAuthAuthenticationException)
        except ProviderAPIException as exc:
            raise InvalidCallbackException(self.name, f"Invalid RSS feed URL: {exc.message}") from exc
        if "<rss" not in body and "<feed" not in body:
            raise InvalidCallbackException(self.name, "Invalid RSS feed format")

        await self.token_store.set(user_id, self.name, StoredToken(
            access_token=json.dumps({"rss_feed_url": rss_feed_url}),
            expires_at=epoch_seconds() + CREDENTIAL_LIFETIME_SECONDS,
        ))
        await self.mark_connected(user_id)
        log_info("Goodreads connected", user_id=str(user_id))

        await self.auto_sync(user_id)

    async def _feed_url(self, user_id: uuid.UUID) -> str:
        token = await self.token_store.get(user_id, self.name)
        if token is None:
            raise InvalidTokenException(self.name, "No Goodreads feed stored")
        try:
            credentials = json.loads(token.access_token)
        except ValueError as exc:
            raise InvalidTokenException(self.name, "Stored Goodreads credentials are unreadable") from exc
        if not isinstance(credentials, dict) or not credentials.get("rss_feed_url"):
            raise InvalidTokenException(self.name, "No Goodreads feed stored")
        return credentials["rss_feed_url"]

    async def store_books(self, user_id: uuid.UUID, books: List[Dict[str, Any]]) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for category, title, attributes in book_items(books):
            counts[category] = counts.get(category, 0) + await self.save_items(
                user_id, self.list_name, category, [(title, attributes)]
            )
        return counts

    async def sync(self, user_id: uuid.UUID) -> SyncResult:
        _, link, since = await self.sync_window(user_id, settings.goodreads_default_days)
        rss_feed_url = await self._feed_url(user_id)
        details: Dict[str, Any] = {"since": since.isoformat()}

        async def shelves() -> int:
            books = [
                book for book in parse_rss_feed(await self.fetch_feed(rss_feed_url))
                if book["date_added"] is None or book["date_added"] >= since
            ]
            details["books_processed"] = len(books)
            details["category_stats"] = await self.store_books(user_id, books)
            return sum(details["category_stats"].values())

        details["books_stored"] = await self.run_resource("shelves", shelves, details, user_id)
        return await self.finish_sync(user_id, link, details)

    async def import_csv(self, user_id: uuid.UUID, csv_data: str) -> Dict[str, Any]:
        """Import a library export; does not require a connected feed."""
        books = parse_library_csv(csv_data)
        counts = await self.store_books(user_id, books)
        log_info("Goodreads CSV imported", user_id=str(user_id), books=len(books))
        return {"ok": True, "details": {"books_imported": len(books), "category_stats": counts}}

    async def status_details(self, user_id: uuid.UUID) -> Dict[str, Any]:
        token = await self.token_store.get(user_id, self.name)
        return {"has_valid_credentials": token is not None, "sync_method": "rss" if token else None}
