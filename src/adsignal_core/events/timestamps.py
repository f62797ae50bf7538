"""Timestamp normalization for stored tracking events.

All occurred_at values are written as UTC ISO-8601 strings with millisecond
precision and a trailing 'Z' (e.g. 2024-12-01T14:03:22.120Z). SQLite's
julianday() understands this format, so range filters stay in SQL.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Union


logger = logging.getLogger(__name__)


def to_utc(value: datetime) -> datetime:
    """Convert a datetime to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as the canonical stored string."""
    value = to_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a stored or inbound timestamp.

    Returns None for empty or unparseable input instead of raising, so callers
    can treat the age of a malformed row as unknown.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)

    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable timestamp: %r", value)
        return None

    return to_utc(parsed)


def hours_between(earlier: Optional[datetime], later: Optional[datetime]) -> Optional[float]:
    """Non-negative hours from earlier to later, None if either is unknown."""
    if earlier is None or later is None:
        return None
    return max(0.0, (later - earlier).total_seconds() / 3600.0)
