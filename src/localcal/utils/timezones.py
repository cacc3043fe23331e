"""Date/time helpers shared by providers, the reconciler and the store.

Responsibilities
- Resolve TZIDs using stdlib zoneinfo (tzdata fallback on platforms without a tz database).
- Parse Google Calendar start/end payloads into ``date`` (all-day) or aware ``datetime``.
- Normalize ICS DTSTART/DTEND values (date, naive or aware datetime).
- Serialize event times for storage and produce a UTC ordering key.

Google Calendar payloads (examples)
- All-day:
  {"date": "2024-01-03"}
- Timed:
  {"dateTime": "2024-01-01T10:00:00-04:00", "timeZone": "America/New_York"}
  {"dateTime": "2024-01-01T10:00:00", "timeZone": "UTC"}  # naive dt with explicit tzid

All-day values are kept as dates end to end; no time-of-day component is ever introduced.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as dtparser

from ..models import When

__all__ = [
    "ensure_tz",
    "format_when",
    "get_zoneinfo",
    "parse_google_when",
    "parse_when",
    "sort_key",
    "to_utc_iso",
    "utc_now",
]

# Fixed-width UTC format so stored ordering keys compare lexicographically
UTC_KEY_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def get_zoneinfo(tzid: str | None) -> ZoneInfo | None:
    """Resolve a TZID to ZoneInfo, returning None if not found or not provided."""
    if not tzid:
        return None
    try:
        return ZoneInfo(tzid)
    except (ZoneInfoNotFoundError, ValueError):
        if tzid.upper() in {"UTC", "Z", "GMT"}:
            return ZoneInfo("UTC")
        return None


def ensure_tz(dt: datetime, tzid: str | None, default_tz: str = "UTC") -> datetime:
    """Attach tzid (or default_tz, or UTC) to a naive datetime; aware values pass through."""
    if dt.tzinfo is not None:
        return dt
    z = get_zoneinfo(tzid) or get_zoneinfo(default_tz) or ZoneInfo("UTC")
    return dt.replace(tzinfo=z)


def parse_google_when(payload: Mapping[str, object], default_tz: str = "UTC") -> When:
    """Parse a Google 'start'/'end' payload.

    ``dateTime`` wins over ``date``. A date-only payload returns a ``date``.
    Raises ValueError when neither is present or the value does not parse.
    """
    raw_dt = payload.get("dateTime")
    if raw_dt:
        tzid = payload.get("timeZone")
        dt = dtparser.isoparse(str(raw_dt))
        return ensure_tz(dt, str(tzid) if tzid else None, default_tz=default_tz)
    raw_date = payload.get("date")
    if raw_date:
        return date.fromisoformat(str(raw_date))
    raise ValueError("Google datetime payload must contain either 'date' or 'dateTime'.")


def format_when(value: When) -> str:
    """Serialize for storage: 'YYYY-MM-DD' for dates, ISO 8601 with offset for datetimes."""
    if isinstance(value, datetime):
        return ensure_tz(value, None).isoformat()
    return value.isoformat()


def parse_when(raw: str) -> When:
    """Inverse of format_when."""
    s = raw.strip()
    if "T" not in s:
        return date.fromisoformat(s)
    return ensure_tz(dtparser.isoparse(s), None)


def _as_utc_datetime(value: When) -> datetime:
    if isinstance(value, datetime):
        return ensure_tz(value, None).astimezone(UTC)
    # All-day dates order as UTC midnight
    return datetime.combine(value, time.min, tzinfo=UTC)


def to_utc_iso(value: When) -> str:
    """Fixed-width UTC key used for range queries and ordering."""
    return _as_utc_datetime(value).strftime(UTC_KEY_FORMAT)


def sort_key(value: When) -> datetime:
    return _as_utc_datetime(value)
