"""Sync orchestrator.

Responsibilities
- Select connections (one user's, every connection, or only those due)
- Run fetch -> reconcile -> persist per connection on a bounded worker pool
- Isolate failures: one connection's error is recorded against it and never aborts
  the batch or rolls back connections already synced
- Advance last_synced_at only after the changeset has been persisted
- Honour cooperative cancellation (threading.Event) up to the point persistence begins
- Enforce a single batch run per host via a filesystem lock

Exit codes (run)
- 0: every connection synced
- 2: partial (some connections failed)
- 3: fatal (could not start/run)
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path
from types import TracebackType

import httpx

from ..config import AppConfig
from ..errors import (
    MalformedProviderPayload,
    PersistenceFailure,
    ProviderAuthExpired,
    ProviderUnavailable,
)
from ..models import CalendarConnection, ConnectionResult, SyncReport, SyncStatus
from ..providers.base import FetchContext, FetchWindow, ProviderFetcher
from ..providers.registry import fetch as registry_fetch
from ..store import ConnectionStore
from ..utils.http import RetryConfig, create_client
from ..utils.timezones import utc_now
from .reconciler import reconcile

log = logging.getLogger(__name__)

__all__ = ["FileLock", "Orchestrator", "SyncCancelled"]


class SyncCancelled(Exception):
    """Internal signal: the caller cancelled before persistence began."""


class FileLock:
    """Host-wide guard against overlapping batch runs.

    The lock file is created exclusively and holds the owner's PID. A file whose
    PID is missing, garbled or no longer running is taken over.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._fd: int | None = None

    def _holder_alive(self) -> bool:
        try:
            content = Path(self.path).read_text(encoding="utf-8").strip()
        except OSError:
            return False
        if not content.isdigit():
            return False
        try:
            os.kill(int(content), 0)
        except PermissionError:
            # Running under another user
            return True
        except OSError:
            return False
        return True

    def _open_exclusive(self) -> None:
        fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        os.write(fd, f"{os.getpid()}\n".encode())
        os.fsync(fd)
        self._fd = fd

    def acquire(self) -> None:
        try:
            self._open_exclusive()
            return
        except FileExistsError as exc:
            busy = exc
        if not self._holder_alive():
            log.warning("stale-lock-reclaimed", extra={"lock_path": self.path})
            Path(self.path).unlink(missing_ok=True)
            try:
                self._open_exclusive()
                return
            except FileExistsError:
                pass
        raise RuntimeError(f"Another sync run is active (lock exists at {self.path})") from busy

    def release(self) -> None:
        fd, self._fd = self._fd, None
        if fd is not None:
            os.close(fd)
        Path(self.path).unlink(missing_ok=True)

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class Orchestrator:
    def __init__(
        self,
        cfg: AppConfig,
        store: ConnectionStore,
        *,
        fetcher: ProviderFetcher = registry_fetch,
        clock: Callable[[], datetime] = utc_now,
        http: httpx.Client | None = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.fetcher = fetcher
        self.clock = clock
        self.http = http

    # -----------------
    # Selection
    # -----------------

    def _select(self, user_id: str | None, due_only: bool, now: datetime) -> list[CalendarConnection]:
        if not due_only:
            return self.store.get_connections(user_id)
        cutoff = now - timedelta(minutes=self.cfg.sync.interval_minutes)
        due = self.store.get_due_connections(cutoff)
        if user_id is None:
            return due
        return [c for c in due if c.user_id == user_id]

    def _context(self, now: datetime, http: httpx.Client | None) -> FetchContext:
        sync = self.cfg.sync
        return FetchContext(
            window=FetchWindow.upcoming(sync.window_days, now=now),
            timeout=sync.request_timeout_sec,
            retry=RetryConfig(
                max_attempts=sync.http_attempts,
                backoff_initial_sec=sync.backoff_initial_sec,
            ),
            google=self.cfg.google,
            http=http,
            now=self.clock,
        )

    # -----------------
    # Entry points
    # -----------------

    def sync_all(
        self,
        user_id: str | None = None,
        *,
        due_only: bool = False,
        cancel: threading.Event | None = None,
        dry_run: bool | None = None,
    ) -> SyncReport:
        """Sync a user's connections (or all of them); returns one result per connection."""
        now = self.clock()
        connections = self._select(user_id, due_only, now)
        if not connections:
            log.info("sync-nothing-to-do", extra={"user_id": user_id, "due_only": due_only})
            return SyncReport(results=[])

        owns_http = self.http is None
        http = self.http or create_client(timeout=self.cfg.sync.request_timeout_sec)
        ctx = self._context(now, http)
        workers = min(self.cfg.sync.max_workers, len(connections))
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="localcal-sync") as pool:
                futures = [
                    pool.submit(self.sync_connection, conn, cancel=cancel, ctx=ctx, dry_run=dry_run)
                    for conn in connections
                ]
                results = [f.result() for f in futures]
        finally:
            if owns_http:
                http.close()

        report = SyncReport(results=results)
        log.info("sync-run-complete", extra={"user_id": user_id, "totals": report.aggregate()})
        return report

    def sync_connection(
        self,
        connection: CalendarConnection,
        *,
        cancel: threading.Event | None = None,
        ctx: FetchContext | None = None,
        dry_run: bool | None = None,
    ) -> ConnectionResult:
        """Sync one connection. Never raises; every failure becomes a ConnectionResult."""
        started = self.clock()
        dry = self.cfg.sync.dry_run if dry_run is None else dry_run
        try:
            result = self._sync_one(connection, started, cancel, ctx, dry)
        except SyncCancelled:
            log.info("connection-sync-cancelled", extra={"connection_id": connection.id})
            return ConnectionResult(connection_id=connection.id, status=SyncStatus.CANCELLED)
        except ProviderAuthExpired as exc:
            result = self._failure(connection, SyncStatus.AUTH_EXPIRED, exc)
        except ProviderUnavailable as exc:
            result = self._failure(connection, SyncStatus.UNAVAILABLE, exc)
        except MalformedProviderPayload as exc:
            result = self._failure(connection, SyncStatus.MALFORMED, exc)
        except (PersistenceFailure, sqlite3.Error) as exc:
            result = self._failure(connection, SyncStatus.PERSISTENCE_FAILED, exc)
        except Exception as exc:
            log.exception("connection-sync-unexpected-error", extra={"connection_id": connection.id})
            result = self._failure(connection, SyncStatus.UNAVAILABLE, exc)

        if not dry:
            self._record(connection, result, started)
        return result

    def _sync_one(
        self,
        connection: CalendarConnection,
        now: datetime,
        cancel: threading.Event | None,
        ctx: FetchContext | None,
        dry_run: bool,
    ) -> ConnectionResult:
        if cancel is not None and cancel.is_set():
            raise SyncCancelled()

        fetch_ctx = ctx or self._context(now, self.http)
        fetched = self.fetcher(connection, fetch_ctx)

        # Match across every connection of this source; deletes stay with the owner
        stored = self.store.get_events(connection.user_id, connection.source)
        changeset = reconcile(
            stored,
            fetched,
            user_id=connection.user_id,
            source=connection.source,
            connection_id=connection.id,
            now=now,
        )

        # Last point at which cancellation leaves the connection untouched
        if cancel is not None and cancel.is_set():
            raise SyncCancelled()

        if not dry_run:
            self.store.apply_changeset(connection.id, changeset)
            self.store.update_last_synced(connection.id, now)

        log.info(
            "connection-synced",
            extra={
                "connection_id": connection.id,
                "provider": connection.provider.value,
                "fetched": len(fetched),
                "inserted": len(changeset.to_insert),
                "updated": len(changeset.to_update),
                "deleted": len(changeset.to_delete),
                "dry_run": dry_run,
            },
        )
        return ConnectionResult(
            connection_id=connection.id,
            status=SyncStatus.SUCCESS,
            events_changed=changeset.changed_count,
            inserted=len(changeset.to_insert),
            updated=len(changeset.to_update),
            deleted=len(changeset.to_delete),
        )

    def _failure(
        self, connection: CalendarConnection, status: SyncStatus, exc: Exception
    ) -> ConnectionResult:
        log.warning(
            "connection-sync-failed",
            extra={
                "connection_id": connection.id,
                "provider": connection.provider.value,
                "status": status.value,
                "error": str(exc),
            },
        )
        return ConnectionResult(connection_id=connection.id, status=status, error=str(exc))

    def _record(self, connection: CalendarConnection, result: ConnectionResult, at: datetime) -> None:
        try:
            self.store.record_outcome(
                connection.id, result.status, error=result.error, attempted_at=at
            )
        except PersistenceFailure:
            log.exception("connection-outcome-not-recorded", extra={"connection_id": connection.id})

    def run(
        self,
        *,
        user_id: str | None = None,
        due_only: bool = True,
        cancel: threading.Event | None = None,
        dry_run: bool | None = None,
    ) -> tuple[int, SyncReport]:
        """Locked batch run for schedulers; returns exit code and report."""
        lock = FileLock(self.cfg.runtime.lock_path)
        try:
            lock.acquire()
        except (RuntimeError, OSError) as exc:
            log.error("lock-failed", extra={"lock_path": lock.path, "error": str(exc)})
            return 3, SyncReport(results=[])

        try:
            report = self.sync_all(user_id, due_only=due_only, cancel=cancel, dry_run=dry_run)
        except Exception:
            log.exception("sync-run-fatal")
            return 3, SyncReport(results=[])
        finally:
            lock.release()
        return report.exit_code, report
