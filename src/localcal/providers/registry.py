"""Provider dispatch.

Providers are a tagged variant: each `Provider` member maps to one fetch function.
Adding a provider means adding a function and a FETCHERS entry; the reconciler and
orchestrator stay untouched.
"""

from __future__ import annotations

from ..errors import ProviderUnavailable
from ..models import CalendarConnection, CalendarEvent, Provider
from .base import FetchContext, ProviderFetcher
from .google import fetch_google_events
from .ics import fetch_ics_events

__all__ = ["FETCHERS", "fetch"]

FETCHERS: dict[Provider, ProviderFetcher] = {
    Provider.GOOGLE: fetch_google_events,
    Provider.ICLOUD_ICS: fetch_ics_events,
}


def fetch(connection: CalendarConnection, ctx: FetchContext) -> list[CalendarEvent]:
    """Fetch normalized events for one connection with its provider's adapter."""
    fetcher = FETCHERS.get(connection.provider)
    if fetcher is None:
        raise ProviderUnavailable(f"no adapter registered for provider {connection.provider}")
    return fetcher(connection, ctx)
