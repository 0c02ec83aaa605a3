"""
Timezone-safe datetime utilities.

All timestamps are stored in UTC. Provider payloads arrive as ISO8601 strings,
RFC 2822 mail dates, or Unix epochs in seconds or milliseconds; these helpers
normalise all of them to aware UTC datetimes.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from dateutil import parser as date_parser


def utc_now() -> datetime:
    """
    Return current UTC datetime with timezone info attached.

    Example:
        >>> now = utc_now()
        >>> now.tzinfo
        datetime.timezone.utc
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Convert any datetime to UTC.

    If the datetime is naive (no timezone info), it's assumed to be UTC.
    If it has timezone info, it's converted to UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def epoch_seconds(dt: Optional[datetime] = None) -> int:
    """Unix epoch seconds for dt (defaults to now)."""
    return int(ensure_utc(dt or utc_now()).timestamp())


def epoch_millis(dt: Optional[datetime] = None) -> int:
    """Unix epoch milliseconds for dt (defaults to now)."""
    return int(ensure_utc(dt or utc_now()).timestamp() * 1000)


def from_epoch_seconds(value: Union[int, float]) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def from_epoch_millis(value: Union[int, float, str]) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def sync_window_start(
    last_synced_at: Optional[datetime],
    default_days: int,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Start of an incremental sync window.

    The later of the last successful sync and ``now - default_days``, so a
    long-dormant link never backfills more than the default window.

    Example:
        >>> now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        >>> sync_window_start(None, 30, now)
        datetime.datetime(2024, 1, 31, 0, 0, tzinfo=datetime.timezone.utc)
    """
    now = ensure_utc(now or utc_now())
    floor = now - timedelta(days=default_days)
    if last_synced_at is None:
        return floor
    return max(ensure_utc(last_synced_at), floor)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """
    Convert datetime to ISO8601 UTC string with 'Z' suffix.

    Example:
        >>> dt = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        >>> serialize_datetime(dt)
        '2024-01-01T12:00:00Z'
    """
    if dt is None:
        return None

    iso_string = ensure_utc(dt).isoformat()
    if iso_string.endswith('+00:00'):
        iso_string = iso_string[:-6] + 'Z'
    return iso_string


def parse_iso_datetime(value: Union[str, datetime]) -> datetime:
    """
    Parse ISO8601 string to UTC datetime.

    Handles both string and datetime inputs. If datetime is passed,
    ensures it's converted to UTC.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)

    return ensure_utc(date_parser.isoparse(value))


def parse_optional_datetime(value) -> Optional[datetime]:
    """
    Best-effort parse of a provider timestamp.

    Accepts ISO8601 (fractional seconds, compact offsets), RFC 2822 mail
    Date headers and epoch milliseconds. Returns None for anything
    unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return from_epoch_millis(value)
    if not isinstance(value, str):
        return None
    try:
        return ensure_utc(date_parser.isoparse(value))
    except (ValueError, OverflowError):
        pass
    try:
        return ensure_utc(date_parser.parse(value))
    except (ValueError, OverflowError):
        return None
