"""Deterministic content fingerprints for calendar events.

Goals
- Produce a stable hash over the fields the reconciler compares
  (title, start, end, description, location) so "changed or not" is a single comparison.
- Text fields hash verbatim: a whitespace or line-ending edit upstream is an update.
  Only an absent field and an empty one hash alike.
- Keep all-day and timed values distinct ('2024-01-03' never equals a midnight timestamp).

Public API
- event_fingerprint(event: CalendarEvent) -> str
- sha256_hex(data: str | bytes) -> str
"""

from __future__ import annotations

import json
from datetime import datetime
from hashlib import sha256

from ..models import CalendarEvent, When
from .timezones import format_when, to_utc_iso

__all__ = ["event_fingerprint", "sha256_hex"]


def _field_text(value: str | None) -> str:
    return value or ""


def sha256_hex(data: str | bytes) -> str:
    """Compute sha256 hex digest."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return sha256(data).hexdigest()


def _when_token(value: When) -> str:
    # Timed values compare by instant, so the same moment in another offset is not
    # an update. The 'D:'/'T:' prefix keeps all-day values distinct.
    if isinstance(value, datetime):
        return "T:" + to_utc_iso(value)
    return "D:" + format_when(value)


def event_fingerprint(event: CalendarEvent) -> str:
    """Stable hash of the reconciled fields of an event."""
    return sha256_hex(
        json.dumps(
            [
                _field_text(event.title),
                _when_token(event.start_at),
                _when_token(event.end_at),
                _field_text(event.description),
                _field_text(event.location),
            ],
            ensure_ascii=False,
        )
    )
