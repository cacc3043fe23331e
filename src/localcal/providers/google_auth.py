"""Google OAuth credentials for a calendar connection.

Responsibilities
- Build google-auth Credentials from the refresh token (and optional cached access
  token) stored in a connection's config, plus the app's OAuth client id/secret.
- Wrap them in an authorized httplib2 transport with the request timeout, so
  google-auth refreshes the bearer token transparently before/after requests.

Notes
- Issuing tokens (the consent flow) happens elsewhere; connections arrive here
  already holding a refresh token.
- Never log raw tokens; the logging filter masks token-like strings.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials

from ..config import GoogleConfig
from ..errors import ProviderAuthExpired
from ..models import CalendarConnection

__all__ = ["SCOPES_CALENDAR", "authorized_http", "credentials_for"]

log = logging.getLogger(__name__)

SCOPES_CALENDAR: list[str] = [
    "https://www.googleapis.com/auth/calendar.readonly",
]


def credentials_for(
    connection: CalendarConnection,
    google_cfg: GoogleConfig,
    scopes: Sequence[str] = SCOPES_CALENDAR,
) -> Credentials:
    """Credentials for one connection; raises ProviderAuthExpired when none are stored."""
    refresh_token = connection.config.get("refresh_token")
    access_token = connection.config.get("access_token")
    if not refresh_token and not access_token:
        raise ProviderAuthExpired(f"connection {connection.id} holds no Google credential")

    client: dict[str, str | None] = {"client_id": None, "client_secret": None, "token_uri": google_cfg.token_uri}
    if refresh_token:
        client = google_cfg.client_config()
        if not (client["client_id"] and client["client_secret"]):
            log.warning(
                "google-client-config-missing; refresh will fail",
                extra={"connection_id": connection.id},
            )

    return Credentials(  # type: ignore[no-untyped-call]
        token=access_token,
        refresh_token=refresh_token,
        token_uri=client["token_uri"],
        client_id=client["client_id"],
        client_secret=client["client_secret"],
        scopes=list(scopes),
    )


def authorized_http(credentials: Credentials, *, timeout: float) -> google_auth_httplib2.AuthorizedHttp:
    """httplib2 transport that injects the bearer token and honours `timeout`."""
    return google_auth_httplib2.AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
