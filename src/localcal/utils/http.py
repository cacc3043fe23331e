"""httpx client factory and bounded retries for feed downloads.

Provider fetches are read-only GETs, so only GET is ever retried. The default
is a single attempt: a provider that is down is retried by the next scheduled
run, and the current run moves on to other connections.
"""

from __future__ import annotations

import logging
import os
import random
import time
from collections.abc import Mapping
from dataclasses import dataclass

import httpx

log = logging.getLogger(__name__)

__all__ = [
    "RetryConfig",
    "backoff_delay",
    "create_client",
    "get_with_retries",
    "is_transient",
]

_USER_AGENT = "localcal/0.1 (+calendar-sync)"
_ACCEPT = "text/calendar, application/json;q=0.9, */*;q=0.5"


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 1
    backoff_initial_sec: float = 1.0
    backoff_factor: float = 2.0
    jitter_frac: float = 0.2
    max_delay_sec: float = 30.0
    transient_statuses: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})


def is_transient(status_code: int, retry: RetryConfig | None = None) -> bool:
    return status_code in (retry or RetryConfig()).transient_statuses


def create_client(
    timeout: float = 30.0,
    headers: Mapping[str, str] | None = None,
    verify: bool | str = True,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Build the client shared by a sync run's workers.

    Pass `transport=httpx.MockTransport(...)` to serve canned responses.
    """
    if verify is False:
        if os.getenv("LOCALCAL_ENVIRONMENT") == "production":
            raise ValueError(
                "TLS verification cannot be disabled in production "
                "(LOCALCAL_ENVIRONMENT=production)"
            )
        log.warning("tls-verification-disabled")

    merged = {"User-Agent": _USER_AGENT, "Accept": _ACCEPT}
    merged.update(headers or {})
    return httpx.Client(
        timeout=timeout,
        headers=merged,
        verify=verify,
        limits=httpx.Limits(max_keepalive_connections=5, max_connections=20),
        follow_redirects=True,
        transport=transport,
    )


def _retry_after(response: httpx.Response | None) -> float | None:
    if response is None:
        return None
    raw = response.headers.get("Retry-After", "").strip()
    # HTTP-date values are ignored; feeds send seconds in practice
    if raw.isdigit():
        return float(raw)
    return None


def backoff_delay(attempt: int, retry: RetryConfig, response: httpx.Response | None = None) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based).

    A numeric Retry-After header wins over exponential backoff. Both are capped
    at `max_delay_sec`.
    """
    hinted = _retry_after(response)
    if hinted is not None:
        return min(hinted, retry.max_delay_sec)
    base = retry.backoff_initial_sec * retry.backoff_factor ** (attempt - 1)
    spread = base * retry.jitter_frac
    return max(0.0, min(base + random.uniform(-spread, spread), retry.max_delay_sec))


def get_with_retries(
    client: httpx.Client,
    url: str,
    *,
    retry: RetryConfig | None = None,
    headers: Mapping[str, str] | None = None,
) -> httpx.Response:
    """GET `url`, retrying transport errors and transient statuses.

    Returns the final response whatever its status. Re-raises the last
    `httpx.HTTPError` when no response arrived on the final attempt.
    """
    cfg = retry or RetryConfig()
    for attempt in range(1, max(1, cfg.max_attempts)):
        response: httpx.Response | None = None
        try:
            response = client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            log.debug("http-retry", extra={"attempt": attempt, "error": type(exc).__name__})
        else:
            if not is_transient(response.status_code, cfg):
                return response
            log.debug("http-retry", extra={"attempt": attempt, "status": response.status_code})
        delay = backoff_delay(attempt, cfg, response)
        if delay > 0:
            time.sleep(delay)
    return client.get(url, headers=headers)
