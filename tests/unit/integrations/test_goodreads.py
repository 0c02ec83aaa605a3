"""
Goodreads RSS feed connect and sync, and library CSV import.
"""
import httpx
import pytest

from app.integrations.exceptions import DataValidationException, InvalidCallbackException, InvalidTokenException
from app.integrations.providers.goodreads import (
    GoodreadsProvider,
    book_items,
    parse_library_csv,
    parse_rss_feed,
    reading_status,
)

FEED_URL = "https://www.goodreads.com/review/list_rss/42?shelf=%23ALL%23"

FEED = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Ada's bookshelf</title>
<item>
  <guid>https://www.goodreads.com/review/show/1</guid>
  <title>Dune</title>
  <book_id>234225</book_id>
  <author_name>Frank Herbert</author_name>
  <isbn>0441013597</isbn>
  <user_rating>5</user_rating>
  <user_shelves>read, favourites</user_shelves>
  <user_date_added>Sat, 01 Jun 2099 10:00:00 +0000</user_date_added>
  <book_published>1965</book_published>
  <num_pages>604</num_pages>
</item>
<item>
  <guid>https://www.goodreads.com/book/show/5107.The_Catcher</guid>
  <title>Ada wants to read: The Catcher in the Rye</title>
  <description>author: J.D. Salinger
rating: 0</description>
  <user_shelves>to-read</user_shelves>
</item>
</channel></rss>"""

CSV_EXPORT = (
    "\ufeffBook Id,Title,Author,ISBN,ISBN13,My Rating,Year Published,Number of Pages,"
    "Date Read,Date Added,Bookshelves,Exclusive Shelf,My Review\n"
    '11,Neuromancer,William Gibson,"=""0441569595""","=""9780441569595""",4,1984,271,'
    "2023/05/02,2023/04/01,sci-fi,read,Loved it\n"
    "12,Snow Crash,Neal Stephenson,,,0,1992,480,,2024/01/15,,currently-reading,\n"
    ",,,,,,,,,,,,\n"
)


@pytest.fixture
def goodreads(persistence, token_store, routes):
    return GoodreadsProvider(persistence, token_store, routes.transport)


class TestParsing:
    def test_rss_structured_fields(self):
        dune, _ = parse_rss_feed(FEED)

        assert dune["id"] == "234225"
        assert dune["authors"] == ["Frank Herbert"]
        assert dune["user_rating"] == 5
        assert dune["reading_status"] == "read"
        assert dune["shelves"] == ["read", "favourites"]
        assert dune["publication_year"] == 1965
        assert dune["date_added"].year == 2099

    def test_rss_description_fallback(self):
        _, catcher = parse_rss_feed(FEED)

        assert catcher["id"] == "5107"
        assert catcher["title"] == "The Catcher in the Rye"
        assert catcher["authors"] == ["J.D. Salinger"]
        assert catcher["user_rating"] is None
        assert catcher["reading_status"] == "to-read"

    def test_rss_unreadable(self):
        with pytest.raises(DataValidationException):
            parse_rss_feed("<rss><channel>")

    def test_csv_export(self):
        neuromancer, snow_crash = parse_library_csv(CSV_EXPORT)

        assert neuromancer["isbn"] == "9780441569595"
        assert neuromancer["user_rating"] == 4
        assert neuromancer["user_review"] == "Loved it"
        assert neuromancer["date_finished"].isoformat().startswith("2023-05-02")
        assert neuromancer["shelves"] == ["sci-fi"]
        assert snow_crash["user_rating"] is None
        assert snow_crash["reading_status"] == "currently-reading"
        assert snow_crash["date_finished"] is None

    def test_csv_without_header_rejected(self):
        with pytest.raises(DataValidationException):
            parse_library_csv("just,some,values\n1,2,3\n")

    @pytest.mark.parametrize("shelf,status", [
        ("read", "read"),
        (" Currently-Reading ", "currently-reading"),
        ("wishlist", "to-read"),
        (None, "to-read"),
    ])
    def test_reading_status(self, shelf, status):
        assert reading_status(shelf) == status

    def test_book_items(self):
        [(category, title, attributes)] = book_items(parse_library_csv(CSV_EXPORT)[:1])

        assert (category, title) == ("Read", "Neuromancer")
        assert attributes["date_added"] == "2023-04-01T00:00:00Z"
        assert attributes["external"] == {"provider": "goodreads", "id": "11", "type": "book"}
        assert "title" not in attributes


class TestConnect:
    @pytest.mark.asyncio
    async def test_callback_validates_feed_and_syncs(self, goodreads, persistence, routes, user_id):
        routes.add("GET", FEED_URL, httpx.Response(200, text=FEED))

        await goodreads.handle_callback({"state": goodreads.new_state(user_id), "rssFeedUrl": FEED_URL})

        status = await goodreads.status(user_id)
        assert status.connected
        assert status.details["sync_method"] == "rss"
        rows = await persistence.list_user_items(user_id, "Books")
        assert sorted(category for _, category in rows) == ["Read", "To Read"]

    @pytest.mark.asyncio
    async def test_callback_requires_feed_url(self, goodreads, user_id):
        with pytest.raises(InvalidCallbackException, match="rssFeedUrl"):
            await goodreads.handle_callback({"state": goodreads.new_state(user_id)})

    @pytest.mark.asyncio
    async def test_callback_rejects_non_http_url(self, goodreads, user_id):
        with pytest.raises(InvalidCallbackException, match="http"):
            await goodreads.handle_callback({"state": goodreads.new_state(user_id), "rssFeedUrl": "file:///etc/passwd"})

    @pytest.mark.asyncio
    async def test_callback_rejects_unreachable_feed(self, goodreads, routes, user_id):
        routes.add("GET", FEED_URL, httpx.Response(404))

        with pytest.raises(InvalidCallbackException, match="Invalid RSS feed URL"):
            await goodreads.handle_callback({"state": goodreads.new_state(user_id), "rssFeedUrl": FEED_URL})

    @pytest.mark.asyncio
    async def test_callback_rejects_non_feed_body(self, goodreads, routes, user_id):
        routes.add("GET", FEED_URL, httpx.Response(200, text="<html>login</html>"))

        with pytest.raises(InvalidCallbackException, match="format"):
            await goodreads.handle_callback({"state": goodreads.new_state(user_id), "rssFeedUrl": FEED_URL})


class TestSyncAndImport:
    @pytest.mark.asyncio
    async def test_sync_without_feed(self, goodreads, user_id):
        with pytest.raises(InvalidTokenException):
            await goodreads.sync(user_id)

    @pytest.mark.asyncio
    async def test_import_csv_needs_no_connection(self, goodreads, persistence, user_id):
        response = await goodreads.import_csv(user_id, CSV_EXPORT)

        assert response["details"]["books_imported"] == 2
        assert response["details"]["category_stats"] == {"Read": 1, "Currently Reading": 1}
        assert len(await persistence.list_user_items(user_id, "Books")) == 2

    @pytest.mark.asyncio
    async def test_reimport_does_not_duplicate(self, goodreads, persistence, user_id):
        await goodreads.import_csv(user_id, CSV_EXPORT)
        await goodreads.import_csv(user_id, CSV_EXPORT)

        assert len(await persistence.list_user_items(user_id, "Books")) == 2
