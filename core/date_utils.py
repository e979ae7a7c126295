"""
Centralized date and time utilities.

Trip state stores instants as integer epoch milliseconds; these helpers
convert between that representation and timezone-aware datetimes, and
wrap ``dateutil`` for parsing timestamps returned by remote services.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser

logger = logging.getLogger(__name__)


def get_current_utc_time() -> datetime:
    """Return the current time as a timezone-aware datetime object in UTC."""
    return datetime.now(UTC)


def now_ms() -> int:
    """Return the current wall-clock time as epoch milliseconds."""
    return int(get_current_utc_time().timestamp() * 1000)


def ms_to_datetime(epoch_ms: int, tz_name: str = "UTC") -> datetime:
    """Convert epoch milliseconds to a datetime in the named timezone."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; falling back to UTC", tz_name)
        tz = UTC
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=tz)


def datetime_to_ms(dt: datetime) -> int:
    """Convert a datetime to epoch milliseconds, treating naive values as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return int(dt.timestamp() * 1000)


def parse_timestamp(ts: str | datetime | None) -> datetime | None:
    """
    Parse a timestamp string (or datetime object) and ensure it is
    timezone-aware, defaulting to UTC.

    Returns:
        A timezone-aware datetime object, or None if parsing fails.
    """
    if not ts:
        return None

    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            return ts.replace(tzinfo=UTC)
        return ts

    try:
        parsed_time = parser.isoparse(ts)
    except (ValueError, TypeError) as e:
        logger.warning("Failed to parse timestamp '%s': %s", ts, e)
        return None
    if parsed_time.tzinfo is None:
        return parsed_time.replace(tzinfo=UTC)
    return parsed_time


def format_ms_iso(epoch_ms: int | None) -> str | None:
    """Serialize epoch milliseconds to an ISO 8601 UTC string."""
    if epoch_ms is None:
        return None
    return ms_to_datetime(epoch_ms).isoformat().replace("+00:00", "Z")
