"""
Pure mapping and classification helpers of the provider adapters.
"""
import base64
from datetime import datetime, timezone

import pytest

from app.integrations.providers.contact_list import contact_items, parse_person
from app.integrations.providers.email_scraper import (
    classify_email,
    destination_for,
    email_attributes,
    extract_email_info,
    parse_gmail_message,
)
from app.integrations.providers.plaid import (
    DEFAULT_SPENDING,
    account_items,
    categorize_transaction,
    transaction_items,
)
from app.integrations.providers.strava import activity_items, category_for


def encoded(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def email(sender: str, subject: str, body: str = "") -> dict:
    return {
        "id": "m1",
        "from": sender,
        "to": "ada@example.com",
        "subject": subject,
        "body": body,
        "snippet": body[:20],
        "date": datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc),
        "labels": ["INBOX"],
        "attachments": [],
    }


class TestStrava:
    @pytest.mark.parametrize("sport,category", [
        ("Run", "Run"),
        ("Ride", "Bike"),
        ("Swim", "Swim"),
        ("Workout", "Strength"),
        ("Kitesurf", "Other"),
        ("", "Other"),
    ])
    def test_category_for(self, sport, category):
        assert category_for(sport) == category

    def test_activity_item(self):
        [(category, title, attributes)] = activity_items([{
            "id": 99,
            "name": "Morning Run",
            "sport_type": "Run",
            "start_date": "2024-06-01T06:00:00Z",
            "moving_time": 1800,
            "distance": 5000.0,
        }])

        assert category == "Run"
        assert title == "Run | 2024-06-01T06:00:00Z - 2024-06-01T06:30:00Z"
        assert attributes["duration_minutes"] == 30
        assert attributes["miles"] == pytest.approx(3.107, rel=1e-3)
        assert attributes["yards"] is None
        assert attributes["external"] == {"provider": "strava", "id": "99"}

    def test_swim_reports_yards_and_missing_distance(self):
        [(_, _, swim)] = activity_items([{
            "id": 1, "type": "Swim", "start_date": "2024-06-01T06:00:00Z", "distance": 1000,
        }])
        [(_, _, yoga)] = activity_items([{"id": 2, "type": "Yoga", "start_date": "2024-06-01T06:00:00Z"}])

        assert swim["yards"] == pytest.approx(1093.61)
        assert yoga["miles"] is None


class TestPlaid:
    @pytest.mark.parametrize("transaction,expected", [
        ({"category": ["Travel", "Airlines"], "name": "DL 123"}, ("Travel", "Travel Expenses")),
        ({"category": [], "merchant_name": "Uber"}, ("Transport", "Transportation")),
        ({"category": ["Food and Drink", "Restaurants"], "name": "Luigi"}, ("Food", "Dining")),
        ({"category": None, "name": "SAFEWAY #12"}, ("Food", "Groceries")),
        ({"category": ["Recreation", "Gyms"], "name": "Club"}, ("Places", "Entertainment")),
        ({"category": ["Transfer"], "name": "Venmo"}, DEFAULT_SPENDING),
    ])
    def test_categorize_transaction(self, transaction, expected):
        assert categorize_transaction(transaction) == expected

    def test_account_item(self):
        [(title, attributes)] = account_items([{
            "account_id": "acc-1",
            "name": "Checking",
            "type": "depository",
            "balances": {"current": 120.5, "iso_currency_code": "EUR"},
        }])

        assert title == "Checking | Accounts"
        assert attributes["balances"]["currency"] == "EUR"
        assert attributes["external"] == {"provider": "plaid", "id": "acc-1", "type": "account"}

    def test_transaction_amount_is_absolute(self):
        accounts = [{"account_id": "acc-1", "name": "Checking", "type": "depository"}]
        [(list_name, category, title, attributes)] = transaction_items([{
            "transaction_id": "tx-1",
            "account_id": "acc-1",
            "amount": -42.0,
            "date": "2024-06-01",
            "name": "Starbucks",
            "category": ["Food and Drink", "Coffee Shop"],
            "location": {"city": "Seattle", "lat": 47.6, "lon": -122.3},
        }], accounts)

        assert (list_name, category, title) == ("Food", "Dining", "Checking | Transactions")
        assert attributes["amount"] == 42.0
        assert attributes["currency"] == "USD"
        assert attributes["pending"] is False
        assert attributes["location"]["coordinates"] == {"lat": 47.6, "lon": -122.3}
        assert attributes["external"]["type"] == "transaction"


class TestEmail:
    @pytest.mark.parametrize("sender,subject,bucket", [
        ("Delta <noreply@delta.com>", "Your trip", "travel"),
        ("friend@example.com", "Hotel reservation details", "travel"),
        ("orders@doordash.com", "Hi", "food"),
        ("orders@amazon.com", "Your order has shipped", "shopping"),
        ("news@amazon.com", "Deals for you", "other"),
        ("receipts@uber.com", "Thanks for riding", "transport"),
        ("tickets@ticketmaster.com", "Hello", "events"),
        ("someone@example.com", "Lunch?", "other"),
    ])
    def test_classify(self, sender, subject, bucket):
        assert classify_email(email(sender, subject)) == bucket

    def test_destinations(self):
        assert destination_for("shopping") == ("Places", "Online Purchases")
        assert destination_for("events") == ("Events", "Event Tickets")
        assert destination_for("unknown") == ("Email", "Other Emails")

    def test_travel_extraction(self):
        info = extract_email_info(email(
            "noreply@booking.com", "Booking confirmed",
            "Total $249.99. Check-in: 2024-07-01 Check-out: 2024-07-04 Confirmation number: AB-123",
        ), "Travel")

        assert info["amount"] == 249.99
        assert info["type"] == "hotel_booking"
        assert info["start_date"] == "2024-07-01"
        assert info["end_date"] == "2024-07-04"
        assert info["confirmation_number"] == "AB-123"

    def test_transport_and_food_extraction(self):
        ride = extract_email_info(email("receipts@uber.com", "Trip", "Fare $12.00 at 8:15 pm"), "Transport")
        food = extract_email_info(email("orders@doordash.com", "Order", "Your Thai food is here"), "Food")

        assert ride["company_name"] == "Uber"
        assert ride["time"] == "8:15 pm"
        assert food["provider"] == "doordash"
        assert food["cuisine_type"] == "Thai"

    def test_parse_gmail_message(self):
        parsed = parse_gmail_message({
            "id": "abc",
            "snippet": "Your order",
            "labelIds": ["INBOX"],
            "internalDate": "1717232400000",
            "payload": {
                "headers": [
                    {"name": "Subject", "value": "Order shipped"},
                    {"name": "From", "value": "orders@amazon.com"},
                ],
                "parts": [
                    {"mimeType": "text/html", "body": {"data": encoded("<p>hi</p>")}},
                    {"mimeType": "text/plain", "body": {"data": encoded("Order #A-77 shipped")}},
                    {"mimeType": "application/pdf", "filename": "invoice.pdf", "body": {"size": 2048}},
                ],
            },
        })

        assert parsed["subject"] == "Order shipped"
        assert parsed["body"] == "Order #A-77 shipped"
        assert parsed["date"] == datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)
        assert parsed["attachments"] == [{"filename": "invoice.pdf", "mime_type": "application/pdf", "size": 2048}]

    def test_email_attributes(self):
        attributes = email_attributes(email("orders@amazon.com", "Order shipped", "Order #A-77"), "Places")

        assert attributes["email_date"] == "2024-06-01T09:00:00Z"
        assert attributes["order_number"] == "A-77"
        assert attributes["external"] == {"provider": "gmail", "id": "m1", "type": "email"}


class TestContacts:
    def test_person_without_display_name_is_skipped(self):
        assert parse_person({"resourceName": "people/1", "names": [{"givenName": "X"}]}) is None
        assert list(contact_items([{"resourceName": "people/1"}])) == []

    def test_person(self):
        [(title, contact)] = contact_items([{
            "resourceName": "people/c42",
            "names": [{"displayName": "Grace Hopper", "givenName": "Grace", "familyName": "Hopper"}],
            "phoneNumbers": [{"value": "+1555"}],
            "emailAddresses": [{"value": "grace@example.com", "type": "work"}],
            "birthdays": [{"date": {"month": 12, "day": 9}}],
            "memberships": [{"contactGroupMembership": {"contactGroupResourceName": "contactGroups/friends"}}],
        }])

        assert title == "Grace Hopper | Friends"
        assert contact["phone_numbers"] == [{"type": "other", "number": "+1555"}]
        assert contact["emails"][0]["type"] == "work"
        assert contact["birthday"] == {"month": 12, "day": 9, "year": None}
        assert contact["groups"] == ["contactGroups/friends"]
        assert contact["external"] == {"provider": "contact_list", "id": "people/c42"}
