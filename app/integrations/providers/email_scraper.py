"""
Gmail adapter ("email scraper").

Reads recent inbox messages, classifies each by sender, subject and body
into a bucket (travel, food, shopping ...), pulls a few structured fields out
of the text and files the message under the list the bucket maps to. The sync
cursor advances to the newest message seen, not to the wall clock.
"""
import base64
import binascii
import re
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from app.core.config import settings
from app.core.logging_config import log_info
from app.core.time_utils import epoch_seconds, from_epoch_millis, parse_optional_datetime, serialize_datetime
from app.integrations.base import BaseProvider, is_systemic, run_best_effort, token_from_payload
from app.integrations.exceptions import (
    IntegrationException,
    InvalidCallbackException,
    OAuthAuthenticationException,
)
from app.integrations.providers.google import GoogleOAuthMixin
from app.integrations.schemas import ConnectResponse, SyncResult

GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"
SCOPES = "https://mail.google.com/ openid email profile"

LIST_PAGE_SIZE = 100
MAX_MESSAGES_PER_SYNC = 50
BODY_LIMIT = 1000


# ================================================================================
# CLASSIFICATION
# ================================================================================

AIRLINE_DOMAINS = {
    "delta.com": "Delta Airlines",
    "united.com": "United Airlines",
    "american.com": "American Airlines",
    "southwest.com": "Southwest Airlines",
    "jetblue.com": "JetBlue",
    "spirit.com": "Spirit Airlines",
}

# (bucket, sender patterns, subject patterns, both required), first match wins
EMAIL_RULES = [
    ("travel",
     ["booking.com", "expedia.com", "airbnb.com", "hotels.com", "kayak.com",
      "priceline.com", "tripadvisor.com", *AIRLINE_DOMAINS],
     ["flight", "hotel", "booking", "reservation", "itinerary"], False),
    ("food",
     ["doordash.com", "ubereats.com", "grubhub.com", "postmates.com",
      "seamless.com", "opentable.com", "resy.com", "yelp.com", "zomato.com"],
     ["food delivery", "restaurant", "order confirmed"], False),
    ("shopping",
     ["amazon.com", "ebay.com", "etsy.com", "walmart.com", "target.com",
      "bestbuy.com", "apple.com", "shopify.com", "aliexpress.com"],
     ["order", "purchase", "receipt", "confirmation", "shipped"], True),
    ("transport",
     ["uber.com", "lyft.com", "zipcar.com", "car2go.com", "lime.com",
      "bird.com", "metro.com", "bart.gov", "mta.info"],
     [], False),
    ("bills",
     ["billing", "invoice", "utility", "electric", "gas", "water", "internet", "phone"],
     ["bill", "invoice", "payment due", "statement"], False),
    ("subscriptions",
     ["netflix.com", "spotify.com", "hulu.com", "disney", "prime", "youtube"],
     ["subscription", "membership", "renewal", "auto-renew"], False),
    ("social",
     ["facebook.com", "twitter.com", "instagram.com", "linkedin.com",
      "tiktok.com", "snapchat.com", "reddit.com", "pinterest.com"],
     [], False),
    ("work",
     ["slack.com", "teams.microsoft.com", "zoom.us", "meet.google.com"],
     ["meeting", "calendar", "reminder", "task"], False),
    ("finance",
     ["bank", "paypal.com", "venmo.com", "stripe.com", "square.com"],
     ["transaction", "payment", "transfer", "deposit", "withdrawal"], False),
    ("health",
     ["health", "medical", "doctor", "hospital", "pharmacy", "cvs.com", "walgreens.com"],
     ["appointment", "prescription", "health"], False),
    ("education",
     ["edu", "university", "college", "school", "coursera.com", "udemy.com"],
     ["course", "class", "assignment", "grade"], False),
    ("events",
     ["ticketmaster.com", "eventbrite.com", "stubhub.com", "seatgeek.com",
      "livenation.com", "axs.com", "ticketweb.com", "etix.com", "universe.com"],
     ["ticket", "event", "concert", "show", "game", "festival", "admission"], False),
]

# bucket -> (list, category)
EMAIL_DESTINATIONS = {
    "travel": ("Travel", "Travel & Bookings"),
    "food": ("Food", "Food & Dining"),
    "shopping": ("Places", "Online Purchases"),
    "transport": ("Transport", "Transportation"),
    "bills": ("Email", "Bills & Utilities"),
    "subscriptions": ("Email", "Subscriptions & Memberships"),
    "social": ("Email", "Social Media"),
    "work": ("Email", "Work & Professional"),
    "finance": ("Email", "Financial Transactions"),
    "health": ("Health", "Health & Medical"),
    "education": ("Email", "Education & Learning"),
    "events": ("Events", "Event Tickets"),
    "other": ("Email", "Other Emails"),
}

FOOD_SENDERS = {
    "doordash.com": ("food_delivery", "doordash"),
    "ubereats.com": ("food_delivery", "uber_eats"),
    "grubhub.com": ("food_delivery", "grubhub"),
    "postmates.com": ("food_delivery", "postmates"),
    "opentable.com": ("restaurant_reservation", "opentable"),
    "resy.com": ("restaurant_reservation", "resy"),
}

RIDE_SENDERS = {
    "uber.com": ("RideShare", "ride_share", "uber", "Uber"),
    "lyft.com": ("RideShare", "ride_share", "lyft", "Lyft"),
    "zipcar.com": ("Car", "car_rental", "zipcar", "Zipcar"),
}

DATE_PATTERN = r"(\d{1,2}/\d{1,2}/\d{4}|\d{4}-\d{2}-\d{2})"
AMOUNT_RE = re.compile(r"\$(\d+(?:\.\d{2})?)")
DATE_RE = re.compile(DATE_PATTERN)
TIME_RE = re.compile(r"(\d{1,2}:\d{2}\s*(?:am|pm)?)", re.IGNORECASE)
CONFIRMATION_RE = re.compile(r"confirmation\s*(?:number|code|#)?:\s*([A-Z0-9-]+)", re.IGNORECASE)
CHECK_IN_RE = re.compile(r"check-?in(?:\s+date)?:\s*" + DATE_PATTERN, re.IGNORECASE)
CHECK_OUT_RE = re.compile(r"check-?out(?:\s+date)?:\s*" + DATE_PATTERN, re.IGNORECASE)
DEPARTURE_RE = re.compile(r"depart(?:ure)?(?:\s+date)?:\s*" + DATE_PATTERN, re.IGNORECASE)
ARRIVAL_RE = re.compile(r"arrival(?:\s+date)?:\s*" + DATE_PATTERN, re.IGNORECASE)
ORDER_RE = re.compile(r"order\s*#?\s*([a-zA-Z0-9-]+)", re.IGNORECASE)
WITH_WHO_RE = re.compile(
    r"(?:with|guests?|passengers?|travell?ers?|attendees?|accompanied by|traveling with|joined by):\s*"
    r"([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)"
)
CUISINES = ("italian", "chinese", "japanese", "mexican", "thai", "indian",
            "french", "american", "mediterranean", "korean", "vietnamese")


def _matches(text: str, patterns: List[str]) -> bool:
    return any(pattern in text for pattern in patterns)


def classify_email(email: Dict[str, Any]) -> str:
    """Bucket name for a parsed message."""
    sender = email["from"].lower()
    subject = email["subject"].lower()
    for bucket, senders, subjects, both in EMAIL_RULES:
        from_hit = _matches(sender, senders)
        subject_hit = bool(subjects) and _matches(subject, subjects)
        if (from_hit and subject_hit) if both else (from_hit or subject_hit):
            return bucket
    return "other"


def destination_for(bucket: str) -> Tuple[str, str]:
    return EMAIL_DESTINATIONS.get(bucket, EMAIL_DESTINATIONS["other"])


def extract_email_info(email: Dict[str, Any], list_name: str) -> Dict[str, Any]:
    """Structured fields recognisable in the message text."""
    body = email["body"]
    sender = email["from"].lower()
    lowered = body.lower()
    info: Dict[str, Any] = {}

    amount = AMOUNT_RE.search(body)
    if amount:
        info["amount"] = float(amount.group(1))
    date = DATE_RE.search(body)
    if date:
        info["date"] = date.group(1)
    time = TIME_RE.search(body)
    if time:
        info["time"] = time.group(1)
    with_who = WITH_WHO_RE.search(body)
    if with_who:
        info["with_who"] = with_who.group(1).strip()

    if list_name == "Travel":
        airline = next((name for domain, name in AIRLINE_DOMAINS.items() if domain in sender), None)
        if airline:
            info.update(type="flight", provider="airline", company_name=airline)
        elif "airbnb.com" in sender:
            info.update(type="accommodation", provider="airbnb")
        elif "booking.com" in sender or "hotels.com" in sender:
            info.update(type="hotel_booking", provider="booking_platform")
        for pattern, key in ((CHECK_IN_RE, "start_date"), (DEPARTURE_RE, "start_date"),
                             (CHECK_OUT_RE, "end_date"), (ARRIVAL_RE, "end_date")):
            match = pattern.search(body)
            if match:
                info[key] = match.group(1)
        confirmation = CONFIRMATION_RE.search(body)
        if confirmation:
            info["confirmation_number"] = confirmation.group(1)

    elif list_name == "Food":
        sender_kind = next((kind for domain, kind in FOOD_SENDERS.items() if domain in sender), None)
        if sender_kind:
            info["type"], info["provider"] = sender_kind
        cuisine = next((c for c in CUISINES if c in lowered), None)
        if cuisine:
            info["cuisine_type"] = cuisine.capitalize()

    elif list_name == "Transport":
        ride = next((kind for domain, kind in RIDE_SENDERS.items() if domain in sender), None)
        if ride:
            info["transport_type"], info["type"], info["provider"], info["company_name"] = ride

    elif list_name == "Places":
        order = ORDER_RE.search(body)
        if order:
            info["order_number"] = order.group(1)

    return info


# ================================================================================
# MESSAGE PARSING
# ================================================================================

def _decode_body(data: Optional[str]) -> str:
    if not data:
        return ""
    try:
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4)).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def parse_gmail_message(message: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a Gmail ``format=full`` message."""
    payload = message.get("payload") or {}
    headers = {h["name"].lower(): h["value"] for h in payload.get("headers") or []}
    parts = payload.get("parts") or []

    body = _decode_body((payload.get("body") or {}).get("data"))
    if not body:
        plain = next((p for p in parts if p.get("mimeType") == "text/plain" and (p.get("body") or {}).get("data")), None)
        if plain:
            body = _decode_body(plain["body"]["data"])

    date = parse_optional_datetime(headers.get("date"))
    if date is None and message.get("internalDate"):
        date = from_epoch_millis(message["internalDate"])

    return {
        "id": message["id"],
        "subject": headers.get("subject", ""),
        "from": headers.get("from", ""),
        "to": headers.get("to", ""),
        "date": date,
        "body": body[:BODY_LIMIT],
        "snippet": message.get("snippet", ""),
        "labels": message.get("labelIds") or [],
        "attachments": [
            {
                "filename": part["filename"],
                "mime_type": part.get("mimeType"),
                "size": (part.get("body") or {}).get("size"),
            }
            for part in parts if part.get("filename")
        ],
    }


def email_attributes(email: Dict[str, Any], list_name: str) -> Dict[str, Any]:
    attributes = {
        "email_date": serialize_datetime(email["date"]),
        "subject": email["subject"],
        "from": email["from"],
        "to": email["to"],
        "snippet": email["snippet"],
        "body": email["body"],
        "attachment_count": len(email["attachments"]),
        "attachments": email["attachments"],
        "labels": email["labels"],
    }
    attributes.update(extract_email_info(email, list_name))
    attributes["external"] = {"provider": "gmail", "id": email["id"], "type": "email"}
    return attributes


# ================================================================================
# PROVIDER
# ================================================================================

class EmailScraperProvider(GoogleOAuthMixin, BaseProvider):
    """Gmail adapter."""

    name = "email_scraper"
    display_name = "Gmail"
    state_prefix = "email-"
    list_name = "Email"
    scopes = SCOPES

    def redirect_uri(self) -> Optional[str]:
        return settings.gmail_redirect_uri or settings.google_redirect_uri

    async def create_connection(self, user_id: uuid.UUID) -> ConnectResponse:
        self.validate_config()
        state = self.new_state(user_id)
        await self.persistence.ensure_integration(self.name)
        redirect_url = await self.authorization_url(state)
        return ConnectResponse(provider=self.name, redirect_url=redirect_url, state=state)

    async def handle_callback(self, payload: Dict[str, Any]) -> None:
        if payload.get("error"):
            raise OAuthAuthenticationException(self.name, f"Gmail OAuth error: {payload['error']}")
        code = payload.get("code")
        state = payload.get("state")
        if not code or not state:
            raise InvalidCallbackException(self.name, "Missing required callback parameters: code or state")
        user_id = self.user_id_from_state(str(state))

        token = token_from_payload(await self.exchange_code(code))
        profile = await run_best_effort(
            "gmail profile fetch", self.fetch_userinfo(token.access_token), user_id=str(user_id)
        )
        if profile.ok and profile.value:
            token.provider_user_id = profile.value.get("email")

        await self.token_store.set(user_id, self.name, token)
        await self.mark_connected(user_id)
        log_info("Gmail connected", user_id=str(user_id))

        await self.auto_sync(user_id)

    async def _fetch_messages(self, access_token: str, since: datetime, details: Dict[str, Any]) -> List[Dict[str, Any]]:
        headers = {"Authorization": f"Bearer {access_token}"}
        listing = await self.request(
            "GET", f"{GMAIL_API}/messages", "message list",
            headers=headers,
            params={"q": f"in:inbox after:{epoch_seconds(since)}", "maxResults": LIST_PAGE_SIZE},
        )
        emails: List[Dict[str, Any]] = []
        for stub in (listing.json().get("messages") or [])[:MAX_MESSAGES_PER_SYNC]:
            try:
                response = await self.request(
                    "GET", f"{GMAIL_API}/messages/{stub['id']}", "message fetch",
                    headers=headers, params={"format": "full"},
                )
                emails.append(parse_gmail_message(response.json()))
            except IntegrationException as exc:
                if is_systemic(exc):
                    raise
                details["skipped"] = details.get("skipped", 0) + 1
            except (KeyError, TypeError, ValueError):
                details["skipped"] = details.get("skipped", 0) + 1
        return emails

    async def sync(self, user_id: uuid.UUID) -> SyncResult:
        _, link, since = await self.sync_window(user_id, settings.gmail_default_days)
        access_token = await self.ensure_valid_access_token(user_id)
        details: Dict[str, Any] = {"since": since.isoformat()}
        newest: List[datetime] = []

        async def inbox() -> int:
            emails = await self._fetch_messages(access_token, since, details)
            details["total_emails_fetched"] = len(emails)
            stats: Dict[str, int] = {}
            count = 0
            for email in emails:
                bucket = classify_email(email)
                list_name, category_name = destination_for(bucket)
                title = f"{email['subject']} | {list_name} | Emails"
                count += await self.save_items(
                    user_id, list_name, category_name, [(title, email_attributes(email, list_name))]
                )
                stats[bucket] = stats.get(bucket, 0) + 1
                if email["date"] is not None:
                    newest.append(email["date"])
            details["category_stats"] = stats
            return count

        total = await self.run_resource("inbox", inbox, details, user_id)
        details["total_processed"] = total

        synced_at = max(newest) if newest else None
        if synced_at is not None:
            details["next_sync_from"] = synced_at.isoformat()
        return await self.finish_sync(user_id, link, details, synced_at=synced_at)

    async def status_details(self, user_id: uuid.UUID) -> Dict[str, Any]:
        token = await self.token_store.get(user_id, self.name)
        return {
            "has_tokens": token is not None,
            "token_expiry": token.expires_at if token else None,
            "email": token.provider_user_id if token else None,
        }

    async def disconnect(self, user_id: uuid.UUID) -> None:
        await self.revoke(user_id)
