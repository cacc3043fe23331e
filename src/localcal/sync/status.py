"""Human-readable connection status for UIs and the `status` command."""

from __future__ import annotations

from ..models import CalendarConnection, SyncStatus

__all__ = ["connection_status"]

_RETRYABLE = {
    SyncStatus.UNAVAILABLE.value,
    SyncStatus.MALFORMED.value,
    SyncStatus.PERSISTENCE_FAILED.value,
}


def connection_status(connection: CalendarConnection) -> str:
    """Derive the status label shown next to a connection.

    Precedence: an expired credential beats everything, then a failed last attempt,
    then the last successful sync time.
    """
    if connection.last_status == SyncStatus.AUTH_EXPIRED.value:
        return "needs reauthorization"
    if connection.last_status in _RETRYABLE:
        return "sync failed, will retry"
    if connection.last_synced_at is not None:
        return f"last synced {connection.last_synced_at.isoformat()}"
    return "never synced"
