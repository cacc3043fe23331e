"""Provider adapter contract.

A provider adapter is a plain function

    fetch(connection: CalendarConnection, ctx: FetchContext) -> list[CalendarEvent]

returning normalized events tagged with `source`, `source_event_id` and the
connection's id, restricted to `ctx.window`. Adapters raise the provider errors
from `localcal.errors`; they never read ambient request/session state.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import httpx

from ..config import GoogleConfig
from ..models import CalendarConnection, CalendarEvent
from ..utils.http import RetryConfig
from ..utils.timezones import utc_now

__all__ = ["FetchContext", "FetchWindow", "ProviderFetcher", "NO_TITLE"]

NO_TITLE = "(No title)"


@dataclass(frozen=True)
class FetchWindow:
    start: datetime
    end: datetime

    @classmethod
    def upcoming(cls, days: int = 90, *, now: datetime | None = None) -> FetchWindow:
        begin = now or utc_now()
        return cls(start=begin, end=begin + timedelta(days=days))


@dataclass
class FetchContext:
    window: FetchWindow
    timeout: float = 30.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    # Shared client for feed fetches; adapters create a short-lived one when absent
    http: httpx.Client | None = None
    now: Callable[[], datetime] = utc_now


ProviderFetcher = Callable[[CalendarConnection, FetchContext], list[CalendarEvent]]
