"""ICS feed adapter (iCloud public calendars and any other iCalendar URL).

Flow
- GET the feed (webcal:// is rewritten to https://) through the shared httpx helpers.
- Parse with icalendar; expand recurring series into concrete occurrences inside the
  fetch window with recurring_ical_events.
- Normalize each occurrence to a CalendarEvent.

Identity
- Non-recurring VEVENT: source_event_id = UID.
- Occurrence of a recurring series (RRULE/RDATE, or an overridden RECURRENCE-ID instance):
  source_event_id = "<UID>_<start>", start as YYYYMMDD (all-day) or YYYYMMDDTHHMMSSZ.
  <start> is the original slot (RECURRENCE-ID) when present, so a moved instance
  keeps its id, as Google instance ids do with singleEvents.

Error mapping
- 401/403 -> ProviderAuthExpired (a private feed was revoked and must be relinked)
- any other non-200, transport error or timeout -> ProviderUnavailable
- unparseable body, or a VEVENT without UID/DTSTART -> MalformedProviderPayload
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any

import httpx
import recurring_ical_events
from icalendar import Calendar

from ..errors import MalformedProviderPayload, ProviderAuthExpired, ProviderUnavailable
from ..models import CalendarConnection, CalendarEvent, EventSource, When, provider_event_id
from ..utils.http import create_client, get_with_retries
from ..utils.timezones import ensure_tz, sort_key
from .base import NO_TITLE, FetchContext, FetchWindow

__all__ = ["feed_url", "fetch_ics_events", "parse_ics_feed"]

log = logging.getLogger(__name__)

_RECURRENCE_PROPS = ("RRULE", "RDATE", "RECURRENCE-ID")


def feed_url(connection: CalendarConnection) -> str:
    raw = str(connection.config.get("url") or "").strip()
    if not raw:
        raise ValueError(f"connection {connection.id} has no feed url")
    if raw.lower().startswith("webcal://"):
        return "https://" + raw[len("webcal://") :]
    if raw.lower().startswith("webcals://"):
        return "https://" + raw[len("webcals://") :]
    return raw


def _text(component: Any, name: str) -> str | None:
    value = component.get(name)
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _instance_suffix(start: When) -> str:
    if isinstance(start, datetime):
        return start.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")
    return start.strftime("%Y%m%d")


def _original_start(occurrence: Any, start_at: When, default_tz: str) -> When:
    if occurrence.get("RECURRENCE-ID") is None:
        return start_at
    return _normalize_when(occurrence.decoded("RECURRENCE-ID"), default_tz)


def _normalize_when(value: Any, default_tz: str) -> When:
    if isinstance(value, datetime):
        return ensure_tz(value, None, default_tz=default_tz)
    if isinstance(value, date):
        return value
    raise MalformedProviderPayload(f"unsupported date value {type(value).__name__}")


def _end_of(component: Any, start: When, default_tz: str) -> When:
    if component.get("DTEND") is not None:
        return _normalize_when(component.decoded("DTEND"), default_tz)
    if component.get("DURATION") is not None:
        return start + component.decoded("DURATION")
    # RFC 5545: no DTEND/DURATION means one day for DATE starts, zero length otherwise
    if isinstance(start, datetime):
        return start
    return start + timedelta(days=1)


def parse_ics_feed(
    text: str,
    *,
    user_id: str,
    connection_id: str | None,
    window: FetchWindow,
    now: datetime,
    source: EventSource = EventSource.ICLOUD,
) -> list[CalendarEvent]:
    """Parse an ICS document into normalized events overlapping `window`."""
    if not text or not text.strip():
        raise MalformedProviderPayload("ICS feed is empty")
    try:
        cal = Calendar.from_ical(text)
    except (ValueError, IndexError, KeyError) as exc:
        raise MalformedProviderPayload("ICS feed could not be parsed") from exc
    if getattr(cal, "name", None) != "VCALENDAR":
        raise MalformedProviderPayload("ICS feed is not a VCALENDAR")

    default_tz = str(cal.get("X-WR-TIMEZONE") or "UTC")

    recurring_uids: set[str] = set()
    for vevent in cal.walk("VEVENT"):
        if vevent.get("UID") is None or vevent.get("DTSTART") is None:
            raise MalformedProviderPayload("VEVENT without UID or DTSTART")
        if any(vevent.get(p) is not None for p in _RECURRENCE_PROPS):
            recurring_uids.add(str(vevent.get("UID")))

    try:
        occurrences = recurring_ical_events.of(cal).between(window.start, window.end)
    except (ValueError, TypeError, KeyError) as exc:
        raise MalformedProviderPayload("ICS recurrence expansion failed") from exc

    events: list[CalendarEvent] = []
    seen: set[str] = set()
    for occ in occurrences:
        status = str(occ.get("STATUS") or "").upper()
        if status == "CANCELLED":
            continue
        uid = str(occ.get("UID"))
        start_at = _normalize_when(occ.decoded("DTSTART"), default_tz)
        end_at = _end_of(occ, start_at, default_tz)
        source_event_id = uid
        if uid in recurring_uids:
            slot = _original_start(occ, start_at, default_tz)
            source_event_id = f"{uid}_{_instance_suffix(slot)}"
        if source_event_id in seen:
            log.debug("ics-duplicate-event-skipped", extra={"connection_id": connection_id})
            continue
        seen.add(source_event_id)
        events.append(
            CalendarEvent(
                id=provider_event_id(user_id, source, source_event_id),
                user_id=user_id,
                title=_text(occ, "SUMMARY") or NO_TITLE,
                start_at=start_at,
                end_at=end_at,
                source=source,
                updated_at=now,
                description=_text(occ, "DESCRIPTION"),
                location=_text(occ, "LOCATION"),
                source_event_id=source_event_id,
                connection_id=connection_id,
            )
        )

    events.sort(key=lambda e: (sort_key(e.start_at), e.source_event_id or ""))
    return events


def fetch_ics_events(connection: CalendarConnection, ctx: FetchContext) -> list[CalendarEvent]:
    """Download and parse the connection's feed over ctx.window."""
    url = feed_url(connection)
    client = ctx.http or create_client(timeout=ctx.timeout)
    try:
        resp = get_with_retries(client, url, retry=ctx.retry)
    except httpx.TimeoutException as exc:
        raise ProviderUnavailable("ICS feed timed out") from exc
    except httpx.HTTPError as exc:
        raise ProviderUnavailable(f"ICS feed unreachable: {type(exc).__name__}") from exc
    finally:
        if ctx.http is None:
            client.close()

    if resp.status_code in (401, 403):
        raise ProviderAuthExpired(f"ICS feed refused access ({resp.status_code})")
    if resp.status_code != 200:
        raise ProviderUnavailable("ICS feed returned an error", status_code=resp.status_code)

    return parse_ics_feed(
        resp.text,
        user_id=connection.user_id,
        connection_id=connection.id,
        window=ctx.window,
        now=ctx.now(),
        source=connection.source,
    )
