"""Event reconciliation (stored provider events vs freshly fetched ones).

`reconcile` is a pure function: it reads two event collections and returns a
Changeset; it performs no I/O and holds no state.

Rules
- Match on source_event_id within one (user, source).
- fetched only            -> insert
- both, content differs   -> update (stored id kept, updated_at = now)
- stored only             -> delete (the provider is authoritative for its namespace);
  with `connection_id` given, only rows that connection owns are deleted, so a
  row another connection of the same source also reports is matched, not churned
- Local events, events of other users/sources, and fetched items lacking a
  source_event_id never enter the changeset.
- "Differs" compares the content fingerprint (title, start, end, description, location).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime

from ..models import CalendarEvent, Changeset, EventSource
from ..utils.hashing import event_fingerprint
from ..utils.timezones import utc_now

__all__ = ["reconcile"]

log = logging.getLogger(__name__)


def _in_scope(event: CalendarEvent, user_id: str, source: EventSource) -> bool:
    return (
        not event.is_local
        and event.source == source
        and event.user_id == user_id
        and bool(event.source_event_id)
    )


def reconcile(
    stored: Iterable[CalendarEvent],
    fetched: Iterable[CalendarEvent],
    *,
    user_id: str,
    source: EventSource,
    connection_id: str | None = None,
    now: datetime | None = None,
) -> Changeset:
    """Compute the changeset that brings `stored` in line with `fetched`."""
    if source == EventSource.LOCAL:
        # Nothing to reconcile: local events have no upstream
        return Changeset(user_id=user_id, source=source)

    ts = now or utc_now()

    stored_by_key: dict[str, CalendarEvent] = {}
    for ev in stored:
        if _in_scope(ev, user_id, source):
            stored_by_key.setdefault(ev.source_event_id, ev)  # type: ignore[arg-type]

    fetched_by_key: dict[str, CalendarEvent] = {}
    for ev in fetched:
        if not _in_scope(ev, user_id, source):
            log.debug("reconcile-skip-out-of-scope", extra={"event_id": ev.id})
            continue
        key = ev.source_event_id
        if key in fetched_by_key:
            log.debug("reconcile-duplicate-fetched", extra={"source_event_id": key})
            continue
        fetched_by_key[key] = ev  # type: ignore[index]

    to_insert: list[CalendarEvent] = []
    to_update: list[CalendarEvent] = []
    for key, incoming in fetched_by_key.items():
        existing = stored_by_key.get(key)
        if existing is None:
            to_insert.append(replace(incoming, updated_at=ts))
        elif event_fingerprint(existing) != event_fingerprint(incoming):
            to_update.append(
                replace(
                    incoming,
                    id=existing.id,
                    connection_id=incoming.connection_id or existing.connection_id,
                    updated_at=ts,
                )
            )

    to_delete = [
        key
        for key, ev in stored_by_key.items()
        if key not in fetched_by_key and (connection_id is None or ev.connection_id == connection_id)
    ]

    return Changeset(
        user_id=user_id,
        source=source,
        to_insert=to_insert,
        to_update=to_update,
        to_delete=to_delete,
    )
