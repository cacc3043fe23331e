"""Core data model for the sync engine.

Types
- CalendarEvent: one normalized event (local or provider-sourced)
- CalendarConnection: one user's link to an external provider
- Changeset: inserts/updates/deletes produced by reconciliation
- ConnectionResult / SyncReport: per-connection outcomes of a sync run

Time values
- Timed events carry timezone-aware datetimes.
- All-day events carry a plain ``date`` (never coerced to a timestamp).
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum
from typing import Any

__all__ = [
    "CalendarConnection",
    "CalendarEvent",
    "Changeset",
    "ConnectionResult",
    "EventSource",
    "Provider",
    "SyncReport",
    "SyncStatus",
    "When",
    "provider_event_id",
    "source_for_provider",
]

When = date | datetime

# Namespace for deterministic provider event ids (uuid5)
_EVENT_NAMESPACE = uuid.UUID("6f1c1b8e-3f55-4a8e-9d0e-6c0d4f1c2a77")


class EventSource(StrEnum):
    LOCAL = "local"
    GOOGLE = "google"
    ICLOUD = "icloud"


class Provider(StrEnum):
    GOOGLE = "google"
    ICLOUD_ICS = "icloud_ics"


_SOURCE_BY_PROVIDER: dict[Provider, EventSource] = {
    Provider.GOOGLE: EventSource.GOOGLE,
    Provider.ICLOUD_ICS: EventSource.ICLOUD,
}


def source_for_provider(provider: Provider) -> EventSource:
    return _SOURCE_BY_PROVIDER[provider]


def provider_event_id(user_id: str, source: EventSource, source_event_id: str) -> str:
    """Stable event id for a provider event, unique per (user, source, source_event_id)."""
    return str(uuid.uuid5(_EVENT_NAMESPACE, f"{user_id}\x1f{source.value}\x1f{source_event_id}"))


@dataclass(frozen=True)
class CalendarEvent:
    id: str
    user_id: str
    title: str
    start_at: When
    end_at: When
    source: EventSource
    updated_at: datetime
    description: str | None = None
    location: str | None = None
    source_event_id: str | None = None
    connection_id: str | None = None

    def __post_init__(self) -> None:
        if self.source == EventSource.LOCAL:
            if self.source_event_id is not None:
                raise ValueError("local events must not carry a source_event_id")
            if self.connection_id is not None:
                raise ValueError("local events must not carry a connection_id")
        elif not self.source_event_id:
            raise ValueError(f"{self.source.value} events require a source_event_id")

    @property
    def all_day(self) -> bool:
        return not isinstance(self.start_at, datetime)

    @property
    def is_local(self) -> bool:
        return self.source == EventSource.LOCAL


@dataclass(frozen=True)
class CalendarConnection:
    id: str
    user_id: str
    provider: Provider
    config: Mapping[str, Any] = field(default_factory=dict)
    last_synced_at: datetime | None = None
    last_status: str | None = None
    last_error: str | None = None
    last_attempt_at: datetime | None = None

    @property
    def source(self) -> EventSource:
        return source_for_provider(self.provider)


@dataclass(frozen=True)
class Changeset:
    user_id: str
    source: EventSource
    to_insert: list[CalendarEvent] = field(default_factory=list)
    to_update: list[CalendarEvent] = field(default_factory=list)
    to_delete: list[str] = field(default_factory=list)  # source_event_ids

    @property
    def is_empty(self) -> bool:
        return not (self.to_insert or self.to_update or self.to_delete)

    @property
    def changed_count(self) -> int:
        return len(self.to_insert) + len(self.to_update) + len(self.to_delete)


class SyncStatus(StrEnum):
    SUCCESS = "success"
    AUTH_EXPIRED = "auth_expired"
    UNAVAILABLE = "unavailable"
    MALFORMED = "malformed"
    PERSISTENCE_FAILED = "persistence_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ConnectionResult:
    connection_id: str
    status: SyncStatus
    events_changed: int = 0
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SUCCESS


@dataclass(frozen=True)
class SyncReport:
    results: list[ConnectionResult]

    def aggregate(self) -> dict[str, int]:
        total = {"connections": len(self.results), "changed": 0, "inserted": 0, "updated": 0, "deleted": 0}
        for status in SyncStatus:
            total[status.value] = 0
        for res in self.results:
            total["changed"] += res.events_changed
            total["inserted"] += res.inserted
            total["updated"] += res.updated
            total["deleted"] += res.deleted
            total[res.status.value] += 1
        return total

    @property
    def exit_code(self) -> int:
        """0 when every connection succeeded, 2 when some did not."""
        return 0 if all(r.ok for r in self.results) else 2
