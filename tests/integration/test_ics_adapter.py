from __future__ import annotations

from datetime import UTC, date, datetime

import httpx
import pytest

from localcal.errors import MalformedProviderPayload, ProviderAuthExpired, ProviderUnavailable
from localcal.models import CalendarConnection, EventSource, Provider
from localcal.providers.base import FetchContext, FetchWindow
from localcal.providers.ics import feed_url, fetch_ics_events, parse_ics_feed
from localcal.utils.http import create_client

NOW = datetime(2024, 1, 1, tzinfo=UTC)
WINDOW = FetchWindow.upcoming(30, now=NOW)


def _ics(*vevents: str, tz: str = "Europe/Berlin") -> str:
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//localcal tests//EN", f"X-WR-TIMEZONE:{tz}"]
    for block in vevents:
        lines.extend(block.strip().splitlines())
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


SINGLE = """
BEGIN:VEVENT
UID:single@test
DTSTAMP:20240101T000000Z
DTSTART:20240105T090000Z
DTEND:20240105T100000Z
SUMMARY:Review
LOCATION:Office
DESCRIPTION:Bring notes
END:VEVENT
"""

WEEKLY = """
BEGIN:VEVENT
UID:weekly@test
DTSTAMP:20240101T000000Z
DTSTART:20240102T080000Z
DTEND:20240102T083000Z
RRULE:FREQ=WEEKLY;COUNT=3
SUMMARY:Sync
END:VEVENT
"""

HOLIDAY = """
BEGIN:VEVENT
UID:holiday@test
DTSTAMP:20240101T000000Z
DTSTART;VALUE=DATE:20240110
DTEND;VALUE=DATE:20240111
END:VEVENT
"""

CANCELLED = """
BEGIN:VEVENT
UID:cancelled@test
DTSTAMP:20240101T000000Z
DTSTART:20240106T090000Z
DTEND:20240106T100000Z
STATUS:CANCELLED
SUMMARY:Called off
END:VEVENT
"""

PAST = """
BEGIN:VEVENT
UID:past@test
DTSTAMP:20230101T000000Z
DTSTART:20230105T090000Z
DTEND:20230105T100000Z
SUMMARY:Last year
END:VEVENT
"""


def _connection(url: str = "https://cal.example.com/feed.ics") -> CalendarConnection:
    return CalendarConnection(id="conn-i", user_id="u1", provider=Provider.ICLOUD_ICS, config={"url": url})


def _ctx(handler) -> FetchContext:
    return FetchContext(
        window=WINDOW,
        http=create_client(transport=httpx.MockTransport(handler)),
        now=lambda: NOW,
    )


def test_parse_expands_recurrences_inside_window() -> None:
    events = parse_ics_feed(
        _ics(SINGLE, WEEKLY, HOLIDAY, CANCELLED, PAST),
        user_id="u1",
        connection_id="conn-i",
        window=WINDOW,
        now=NOW,
    )

    assert [e.source_event_id for e in events] == [
        "weekly@test_20240102T080000Z",
        "single@test",
        "weekly@test_20240109T080000Z",
        "holiday@test",
        "weekly@test_20240116T080000Z",
    ]
    single = events[1]
    assert single.title == "Review"
    assert single.location == "Office"
    assert single.description == "Bring notes"
    assert single.start_at == datetime(2024, 1, 5, 9, 0, tzinfo=UTC)
    assert all(e.source == EventSource.ICLOUD and e.connection_id == "conn-i" for e in events)


MOVED_SECOND_WEEK = """
BEGIN:VEVENT
UID:weekly@test
DTSTAMP:20240101T000000Z
RECURRENCE-ID:20240109T080000Z
DTSTART:20240110T090000Z
DTEND:20240110T093000Z
SUMMARY:Sync (moved)
END:VEVENT
"""


def test_moved_occurrence_keeps_its_instance_id() -> None:
    def parse(text: str):
        return {
            e.source_event_id: e
            for e in parse_ics_feed(text, user_id="u1", connection_id="c", window=WINDOW, now=NOW)
        }

    before = parse(_ics(WEEKLY))
    after = parse(_ics(WEEKLY, MOVED_SECOND_WEEK))

    assert before.keys() == after.keys()
    moved = after["weekly@test_20240109T080000Z"]
    assert moved.id == before["weekly@test_20240109T080000Z"].id
    assert moved.start_at == datetime(2024, 1, 10, 9, 0, tzinfo=UTC)
    assert moved.title == "Sync (moved)"


def test_all_day_feed_event_stays_a_date_with_title_fallback() -> None:
    (holiday,) = parse_ics_feed(
        _ics(HOLIDAY), user_id="u1", connection_id="c", window=WINDOW, now=NOW
    )

    assert holiday.start_at == date(2024, 1, 10)
    assert holiday.end_at == date(2024, 1, 11)
    assert holiday.all_day
    assert holiday.title == "(No title)"


def test_floating_times_use_calendar_timezone() -> None:
    floating = """
BEGIN:VEVENT
UID:floating@test
DTSTAMP:20240101T000000Z
DTSTART:20240112T090000
DTEND:20240112T100000
SUMMARY:Local time
END:VEVENT
"""
    (ev,) = parse_ics_feed(_ics(floating), user_id="u1", connection_id="c", window=WINDOW, now=NOW)

    assert isinstance(ev.start_at, datetime)
    assert ev.start_at.astimezone(UTC) == datetime(2024, 1, 12, 8, 0, tzinfo=UTC)


def test_event_without_uid_rejects_feed() -> None:
    no_uid = """
BEGIN:VEVENT
DTSTAMP:20240101T000000Z
DTSTART:20240105T090000Z
SUMMARY:Anonymous
END:VEVENT
"""
    with pytest.raises(MalformedProviderPayload):
        parse_ics_feed(_ics(SINGLE, no_uid), user_id="u1", connection_id="c", window=WINDOW, now=NOW)


@pytest.mark.parametrize(
    "body",
    [
        "",
        "<html><body>Oops</body></html>",
        "BEGIN:VCARD\r\nVERSION:3.0\r\nFN:Someone\r\nEND:VCARD\r\n",
    ],
)
def test_unparseable_bodies_are_malformed(body: str) -> None:
    with pytest.raises(MalformedProviderPayload):
        parse_ics_feed(body, user_id="u1", connection_id="c", window=WINDOW, now=NOW)


def test_webcal_url_is_fetched_over_https() -> None:
    seen: list[httpx.URL] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(200, text=_ics(SINGLE))

    events = fetch_ics_events(_connection("webcal://p01-caldav.icloud.com/published/2/abc"), _ctx(handler))

    assert [e.source_event_id for e in events] == ["single@test"]
    assert seen[0].scheme == "https"
    assert seen[0].host == "p01-caldav.icloud.com"


def test_feed_url_requires_url() -> None:
    conn = CalendarConnection(id="c", user_id="u1", provider=Provider.ICLOUD_ICS, config={})
    with pytest.raises(ValueError):
        feed_url(conn)


@pytest.mark.parametrize("status", [401, 403])
def test_refused_feed_is_auth_expired(status: int) -> None:
    ctx = _ctx(lambda request: httpx.Response(status))

    with pytest.raises(ProviderAuthExpired):
        fetch_ics_events(_connection(), ctx)


def test_server_error_is_unavailable_with_status() -> None:
    ctx = _ctx(lambda request: httpx.Response(503))

    with pytest.raises(ProviderUnavailable) as ei:
        fetch_ics_events(_connection(), ctx)
    assert ei.value.status_code == 503


def test_timeout_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderUnavailable):
        fetch_ics_events(_connection(), _ctx(handler))
