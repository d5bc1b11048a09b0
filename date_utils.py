"""
Centralized date and time utilities for the application.

All visit timestamps are handled as timezone-aware UTC datetimes. This
module is the single place where external timestamps (ISO strings from the
ingestion path, naive datetimes from legacy documents) are normalized, and
where minute-based durations used by the visit thresholds are computed.
"""

import logging
from datetime import UTC, datetime

from dateutil import parser

logger = logging.getLogger(__name__)


def get_current_utc_time() -> datetime:
    """Return the current time as a timezone-aware datetime object in UTC."""
    return datetime.now(UTC)


def parse_timestamp(ts: str | datetime) -> datetime | None:
    """
    Parse a timestamp string (or datetime object) and ensure it is
    timezone-aware, defaulting to UTC.

    Args:
        ts: The timestamp to parse, either as an ISO 8601 string or a
            datetime object.

    Returns:
        A timezone-aware datetime object, or None if parsing fails.
    """
    if not ts:
        logger.debug("Received empty timestamp; returning None.")
        return None

    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            return ts.replace(tzinfo=UTC)
        return ts

    try:
        parsed_time = parser.isoparse(ts)
        if parsed_time.tzinfo is None:
            return parsed_time.replace(tzinfo=UTC)
        return parsed_time
    except (ValueError, TypeError) as e:
        logger.warning("Failed to parse timestamp '%s': %s", ts, e)
        return None


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Return the datetime as an explicit UTC-aware value."""

    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)

    return dt.astimezone(UTC)


def minutes_between(start: datetime, end: datetime) -> float:
    """Return (end - start) in minutes, treating naive values as UTC."""
    start_utc = ensure_utc(start)
    end_utc = ensure_utc(end)
    return (end_utc - start_utc).total_seconds() / 60.0
