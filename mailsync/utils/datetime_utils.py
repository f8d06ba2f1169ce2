"""
Datetime utility functions for consistent timezone handling.

All functions return timezone-aware datetime objects in UTC. Provider APIs
hand back a mix of ISO 8601 strings (Graph, Pub/Sub), epoch milliseconds
(Gmail) and RFC 2822 headers (IMAP); everything is normalised here before it
reaches the domain model.

Examples:
    >>> from mailsync.utils.datetime_utils import utc_now
    >>> current_time = utc_now()
"""

from datetime import datetime, timezone, timedelta
from email.utils import parsedate_to_datetime
from typing import Optional, Union


def utc_now() -> datetime:
    """
    Get current UTC time as a timezone-aware datetime object.

    Returns:
        datetime: Current time in UTC with timezone information.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC timezone.

    Notes:
        - If dt is naive (no timezone), it's assumed to be UTC
        - If dt has a timezone, it's converted to UTC
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_utc_iso(dt: Optional[datetime] = None) -> str:
    """Format a datetime as ISO 8601 string in UTC (current time if None)."""
    if dt is None:
        dt = utc_now()
    return to_utc(dt).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp into an aware UTC datetime.

    Handles the trailing ``Z`` and the 7-digit fractional seconds that
    Microsoft Graph emits (``2025-10-20T12:30:45.1234567Z``).

    Returns:
        datetime or None when the value is empty or unparseable.
    """
    if not value:
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    # Trim fractional seconds to microseconds
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for index, char in enumerate(tail):
            if not char.isdigit():
                rest = tail[index:]
                break
            digits += char
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"

    try:
        return to_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def from_epoch_millis(value: Union[str, int, None]) -> Optional[datetime]:
    """Convert epoch milliseconds (as Gmail returns them) to an aware datetime."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_rfc2822(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 2822 ``Date`` header; naive results are assumed UTC."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    return to_utc(parsed)


def add_days(dt: datetime, days: int) -> datetime:
    """Add days to a datetime, preserving timezone."""
    return dt + timedelta(days=days)


def is_expired(expiry_time: datetime, now: Optional[datetime] = None) -> bool:
    """Check whether ``expiry_time`` is in the past."""
    return to_utc(expiry_time) <= (now or utc_now())


def expires_within(expiry_time: Optional[datetime], window: timedelta, now: Optional[datetime] = None) -> bool:
    """
    Check whether ``expiry_time`` falls within ``window`` from now.

    A missing expiry counts as expiring: there is nothing to keep alive.
    """
    if expiry_time is None:
        return True
    return to_utc(expiry_time) - (now or utc_now()) <= window


def age_seconds(dt: datetime, now: Optional[datetime] = None) -> float:
    """Seconds elapsed since ``dt``."""
    return ((now or utc_now()) - to_utc(dt)).total_seconds()
