"""Google Calendar adapter (Events: list with singleEvents expansion).

Features
- Lists a bounded window [timeMin, timeMax) with singleEvents=True, so recurring
  series come back as concrete instances ordered by start time.
- Follows pagination; returns the full normalized list or raises.
- Maps summary -> title ("(No title)" when missing), start.dateTime ?? start.date
  (same for end) keeping date-only values as dates, description, location.

Error mapping
- HTTP 401, or a non-retryable token refresh failure -> ProviderAuthExpired
- any other non-success status -> ProviderUnavailable(status_code=...)
- transport errors / timeouts -> ProviderUnavailable
- unexpected response shape -> MalformedProviderPayload (whole fetch rejected; a
  partial list would read as deletions downstream)

Refs:
- https://developers.google.com/calendar/api/v3/reference/events/list
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import build as gapi_build
from googleapiclient.errors import HttpError

from ..errors import MalformedProviderPayload, ProviderAuthExpired, ProviderUnavailable
from ..models import CalendarConnection, CalendarEvent, EventSource, provider_event_id
from ..utils.timezones import parse_google_when
from .base import NO_TITLE, FetchContext
from .google_auth import authorized_http, credentials_for

__all__ = ["fetch_google_events", "normalize_google_event"]

log = logging.getLogger(__name__)

PAGE_SIZE = 250


def _status_of(exc: Exception) -> int | None:
    code = getattr(exc, "status_code", None) or getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def normalize_google_event(
    item: Mapping[str, Any],
    *,
    user_id: str,
    connection_id: str | None,
    now: datetime,
) -> CalendarEvent:
    """Map one Events resource to a CalendarEvent; raises MalformedProviderPayload."""
    if not isinstance(item, Mapping):
        raise MalformedProviderPayload("event item is not an object")
    event_id = item.get("id")
    if not event_id:
        raise MalformedProviderPayload("event item missing 'id'")
    start_payload = item.get("start")
    end_payload = item.get("end")
    if not isinstance(start_payload, Mapping) or not isinstance(end_payload, Mapping):
        raise MalformedProviderPayload(f"event {event_id} missing start/end")
    try:
        start_at = parse_google_when(start_payload)
        end_at = parse_google_when(end_payload)
    except ValueError as exc:
        raise MalformedProviderPayload(f"event {event_id} has unparseable start/end") from exc

    return CalendarEvent(
        id=provider_event_id(user_id, EventSource.GOOGLE, str(event_id)),
        user_id=user_id,
        title=_optional_text(item.get("summary")) or NO_TITLE,
        start_at=start_at,
        end_at=end_at,
        source=EventSource.GOOGLE,
        updated_at=now,
        description=_optional_text(item.get("description")),
        location=_optional_text(item.get("location")),
        source_event_id=str(event_id),
        connection_id=connection_id,
    )


def _list_page(service: Any, params: dict[str, Any]) -> dict[str, Any]:
    try:
        resp = service.events().list(**params).execute()  # type: ignore[no-untyped-call]
    except HttpError as he:
        code = _status_of(he)
        if code == 401:
            raise ProviderAuthExpired("Google rejected the access token (401)") from he
        raise ProviderUnavailable("Google Calendar API error", status_code=code) from he
    except RefreshError as re_:
        if getattr(re_, "retryable", False):
            raise ProviderUnavailable("Google token endpoint temporarily failed") from re_
        raise ProviderAuthExpired("Google refresh token is invalid or revoked") from re_
    except (TransportError, httplib2.HttpLib2Error, TimeoutError, OSError) as exc:
        raise ProviderUnavailable(f"Google Calendar unreachable: {type(exc).__name__}") from exc
    if not isinstance(resp, Mapping):
        raise MalformedProviderPayload("Google Calendar response is not an object")
    return dict(resp)


def fetch_google_events(connection: CalendarConnection, ctx: FetchContext) -> list[CalendarEvent]:
    """Fetch the connection's calendar over ctx.window as normalized events."""
    creds = credentials_for(connection, ctx.google)
    service = gapi_build(
        "calendar",
        "v3",
        http=authorized_http(creds, timeout=ctx.timeout),
        cache_discovery=False,
    )
    calendar_id = str(connection.config.get("calendar_id") or ctx.google.default_calendar_id)
    now = ctx.now()

    events: list[CalendarEvent] = []
    page_token: str | None = None
    while True:
        params: dict[str, Any] = {
            "calendarId": calendar_id,
            "timeMin": ctx.window.start.isoformat(),
            "timeMax": ctx.window.end.isoformat(),
            "singleEvents": True,
            "orderBy": "startTime",
            "maxResults": PAGE_SIZE,
        }
        if page_token:
            params["pageToken"] = page_token
        resp = _list_page(service, params)

        items = resp.get("items", [])
        if not isinstance(items, list):
            raise MalformedProviderPayload("Google Calendar 'items' is not a list")
        for item in items:
            if isinstance(item, Mapping) and item.get("status") == "cancelled":
                continue
            events.append(
                normalize_google_event(
                    item, user_id=connection.user_id, connection_id=connection.id, now=now
                )
            )

        page_token = resp.get("nextPageToken")
        if not page_token:
            break

    log.debug(
        "google-fetch-complete",
        extra={"connection_id": connection.id, "count": len(events)},
    )
    return events
