"""SQLite-backed connection and event store.

Tables
- connections: one row per user/provider link (config JSON, last sync + last outcome)
- events: normalized events of every source; provider events carry connection lineage

Design notes
- UNIQUE (user_id, source, source_event_id) guarantees at most one stored copy of a
  provider event; local events have a NULL source_event_id and are exempt.
- A changeset is applied in a single transaction, deletes last.
- Deleting a connection cascades to the events it produced (ON DELETE CASCADE).
- The sqlite connection is shared by the orchestrator's worker threads; every access
  goes through one lock, which serializes writes per connection changeset.
- Timestamps are stored as fixed-width UTC ISO 8601 so they compare as strings.

Example
  from localcal.store import ConnectionStore
  with ConnectionStore("/data/localcal.sqlite") as store:
      conn = store.add_connection("u1", Provider.ICLOUD_ICS, {"url": "https://example.com/cal.ics"})
      print(store.get_connections("u1"))
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import stat
import threading
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import PersistenceFailure
from .models import (
    CalendarConnection,
    CalendarEvent,
    Changeset,
    EventSource,
    Provider,
    SyncStatus,
    When,
)
from .utils.hashing import event_fingerprint
from .utils.timezones import format_when, parse_when, to_utc_iso, utc_now

__all__ = ["ConnectionStore"]

log = logging.getLogger(__name__)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_EVENT_COLUMNS = (
    "id, user_id, connection_id, source, source_event_id, title, start_at, end_at, "
    "description, location, updated_at"
)
# Order matches ConnectionStore._event_params
_INSERT_EVENT_SQL = """
    INSERT INTO events(id, user_id, connection_id, source, source_event_id, title,
                       start_at, end_at, start_key, end_key, description, location,
                       content_hash, updated_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _ts(value: datetime) -> str:
    return value.astimezone(UTC).strftime(ISO_FORMAT)


def _parse_ts(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return datetime.strptime(raw, ISO_FORMAT).replace(tzinfo=UTC)


class ConnectionStore:
    """Persistence for calendar connections and their events."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def __enter__(self) -> ConnectionStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: object | None,
    ) -> None:
        self.close()

    # -------------
    # Connection
    # -------------

    def _connect(self, db_path: str) -> sqlite3.Connection:
        path = Path(db_path)
        in_memory = db_path == ":memory:"
        if not in_memory and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)

        if not in_memory:
            # Owner read/write only; connection configs hold refresh tokens and feed secrets
            try:
                if os.access(path, os.W_OK):
                    path.chmod(stat.S_IRUSR | stat.S_IWUSR)
                else:
                    log.warning("Database file %s is not writable by current user.", path)
            except OSError as e:
                log.warning("Could not set restrictive permissions on %s: %s", path, e)

        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise PersistenceFailure("store is closed")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -------------
    # Schema
    # -------------

    def _init_schema(self) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS connections (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  provider TEXT NOT NULL,          -- 'google' | 'icloud_ics'
                  config TEXT NOT NULL,            -- JSON, opaque to the orchestrator
                  last_synced_at TEXT,
                  last_status TEXT,
                  last_error TEXT,
                  last_attempt_at TEXT,
                  created_at TEXT NOT NULL
                );
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_connections_user ON connections(user_id);"
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  connection_id TEXT REFERENCES connections(id) ON DELETE CASCADE,
                  source TEXT NOT NULL,            -- 'local' | 'google' | 'icloud'
                  source_event_id TEXT,
                  title TEXT NOT NULL,
                  start_at TEXT NOT NULL,          -- 'YYYY-MM-DD' (all-day) or ISO datetime
                  end_at TEXT NOT NULL,
                  start_key TEXT NOT NULL,         -- UTC ordering key
                  end_key TEXT NOT NULL,
                  description TEXT,
                  location TEXT,
                  content_hash TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )
            self.conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_events_source_identity
                ON events(user_id, source, source_event_id);
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_user_start ON events(user_id, start_key);"
            )

    # -------------
    # Row mapping
    # -------------

    @staticmethod
    def _row_to_connection(row: sqlite3.Row) -> CalendarConnection:
        return CalendarConnection(
            id=row["id"],
            user_id=row["user_id"],
            provider=Provider(row["provider"]),
            config=json.loads(row["config"] or "{}"),
            last_synced_at=_parse_ts(row["last_synced_at"]),
            last_status=row["last_status"],
            last_error=row["last_error"],
            last_attempt_at=_parse_ts(row["last_attempt_at"]),
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> CalendarEvent:
        return CalendarEvent(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            start_at=parse_when(row["start_at"]),
            end_at=parse_when(row["end_at"]),
            source=EventSource(row["source"]),
            updated_at=_parse_ts(row["updated_at"]) or utc_now(),
            description=row["description"],
            location=row["location"],
            source_event_id=row["source_event_id"],
            connection_id=row["connection_id"],
        )

    @staticmethod
    def _event_params(event: CalendarEvent, connection_id: str | None) -> tuple[Any, ...]:
        return (
            event.id,
            event.user_id,
            connection_id,
            event.source.value,
            event.source_event_id,
            event.title,
            format_when(event.start_at),
            format_when(event.end_at),
            to_utc_iso(event.start_at),
            to_utc_iso(event.end_at),
            event.description,
            event.location,
            event_fingerprint(event),
            _ts(event.updated_at),
        )

    # -------------
    # Connections
    # -------------

    def add_connection(
        self,
        user_id: str,
        provider: Provider,
        config: Mapping[str, Any],
        *,
        connection_id: str | None = None,
    ) -> CalendarConnection:
        cid = connection_id or uuid.uuid4().hex
        try:
            with self._lock, self.conn:
                self.conn.execute(
                    """
                    INSERT INTO connections(id, user_id, provider, config, created_at)
                    VALUES (?, ?, ?, ?, ?);
                    """,
                    (cid, user_id, provider.value, json.dumps(dict(config)), _ts(utc_now())),
                )
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not add connection: {exc}") from exc
        return CalendarConnection(id=cid, user_id=user_id, provider=provider, config=dict(config))

    def get_connection(self, connection_id: str) -> CalendarConnection | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM connections WHERE id = ?;", (connection_id,)
            ).fetchone()
        return self._row_to_connection(row) if row else None

    def get_connections(self, user_id: str | None = None) -> list[CalendarConnection]:
        with self._lock:
            if user_id is None:
                rows = self.conn.execute("SELECT * FROM connections ORDER BY created_at, id;")
            else:
                rows = self.conn.execute(
                    "SELECT * FROM connections WHERE user_id = ? ORDER BY created_at, id;",
                    (user_id,),
                )
            return [self._row_to_connection(r) for r in rows.fetchall()]

    def get_due_connections(self, older_than: datetime) -> list[CalendarConnection]:
        """Connections never synced or last synced before `older_than`.

        Connections whose last outcome was auth_expired wait for re-authorization
        (see update_connection_config) instead of being retried automatically.
        """
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM connections
                WHERE (last_synced_at IS NULL OR last_synced_at < ?)
                  AND (last_status IS NULL OR last_status != ?)
                ORDER BY last_synced_at IS NOT NULL, last_synced_at, id;
                """,
                (_ts(older_than), SyncStatus.AUTH_EXPIRED.value),
            ).fetchall()
        return [self._row_to_connection(r) for r in rows]

    def update_connection_config(self, connection_id: str, config: Mapping[str, Any]) -> None:
        """Replace a connection's config (e.g. after re-authorization) and clear its last outcome."""
        try:
            with self._lock, self.conn:
                cur = self.conn.execute(
                    """
                    UPDATE connections SET config = ?, last_status = NULL, last_error = NULL
                    WHERE id = ?;
                    """,
                    (json.dumps(dict(config)), connection_id),
                )
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not update connection {connection_id}: {exc}") from exc
        if cur.rowcount == 0:
            raise PersistenceFailure(f"connection {connection_id} does not exist")

    def update_last_synced(self, connection_id: str, timestamp: datetime) -> None:
        try:
            with self._lock, self.conn:
                cur = self.conn.execute(
                    "UPDATE connections SET last_synced_at = ? WHERE id = ?;",
                    (_ts(timestamp), connection_id),
                )
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not update last_synced_at: {exc}") from exc
        if cur.rowcount == 0:
            raise PersistenceFailure(f"connection {connection_id} does not exist")

    def record_outcome(
        self,
        connection_id: str,
        status: SyncStatus,
        *,
        error: str | None = None,
        attempted_at: datetime | None = None,
    ) -> None:
        """Remember the most recent sync outcome for status display."""
        try:
            with self._lock, self.conn:
                self.conn.execute(
                    """
                    UPDATE connections SET last_status = ?, last_error = ?, last_attempt_at = ?
                    WHERE id = ?;
                    """,
                    (status.value, error, _ts(attempted_at or utc_now()), connection_id),
                )
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not record outcome: {exc}") from exc

    def delete_connection(self, connection_id: str) -> int:
        """Delete a connection and the events it produced; returns the number of events removed."""
        try:
            with self._lock, self.conn:
                (count,) = self.conn.execute(
                    "SELECT COUNT(*) FROM events WHERE connection_id = ?;", (connection_id,)
                ).fetchone()
                self.conn.execute("DELETE FROM connections WHERE id = ?;", (connection_id,))
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not delete connection {connection_id}: {exc}") from exc
        return int(count)

    # -------------
    # Events
    # -------------

    def get_events(
        self,
        user_id: str,
        source: EventSource,
        connection_id: str | None = None,
    ) -> list[CalendarEvent]:
        sql = f"SELECT {_EVENT_COLUMNS} FROM events WHERE user_id = ? AND source = ?"
        params: list[Any] = [user_id, source.value]
        if connection_id is not None:
            sql += " AND connection_id = ?"
            params.append(connection_id)
        with self._lock:
            rows = self.conn.execute(sql + " ORDER BY start_key, id;", params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def apply_changeset(self, connection_id: str, changeset: Changeset) -> None:
        """Apply inserts, updates and deletes for one connection in a single transaction.

        Deletes run last. On any storage error the transaction is rolled back and
        PersistenceFailure is raised, leaving the connection's events untouched.
        """
        if changeset.is_empty:
            return
        upsert = (
            _INSERT_EVENT_SQL
            + """
            ON CONFLICT(user_id, source, source_event_id) DO UPDATE SET
                connection_id = excluded.connection_id,
                title = excluded.title,
                start_at = excluded.start_at,
                end_at = excluded.end_at,
                start_key = excluded.start_key,
                end_key = excluded.end_key,
                description = excluded.description,
                location = excluded.location,
                content_hash = excluded.content_hash,
                updated_at = excluded.updated_at;
            """
        )
        try:
            with self._lock, self.conn:
                for event in [*changeset.to_insert, *changeset.to_update]:
                    if event.is_local or event.user_id != changeset.user_id:
                        raise PersistenceFailure(
                            f"refusing to write event {event.id} outside changeset scope"
                        )
                    self.conn.execute(upsert, self._event_params(event, connection_id))
                self.conn.executemany(
                    """
                    DELETE FROM events
                    WHERE user_id = ? AND source = ? AND source_event_id = ? AND connection_id = ?;
                    """,
                    [
                        (changeset.user_id, changeset.source.value, sid, connection_id)
                        for sid in changeset.to_delete
                    ],
                )
        except sqlite3.Error as exc:
            raise PersistenceFailure(
                f"could not apply changeset for connection {connection_id}: {exc}"
            ) from exc

    def add_local_event(
        self,
        user_id: str,
        title: str,
        start_at: When,
        end_at: When,
        *,
        description: str | None = None,
        location: str | None = None,
    ) -> CalendarEvent:
        """Store a user-authored event. Local events are never touched by sync."""
        event = CalendarEvent(
            id=uuid.uuid4().hex,
            user_id=user_id,
            title=title,
            start_at=start_at,
            end_at=end_at,
            source=EventSource.LOCAL,
            updated_at=utc_now(),
            description=description,
            location=location,
        )
        try:
            with self._lock, self.conn:
                self.conn.execute(_INSERT_EVENT_SQL, self._event_params(event, None))
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"could not add local event: {exc}") from exc
        return event

    def delete_local_event(self, user_id: str, event_id: str) -> bool:
        """Delete one of the user's local events. Provider events cannot be deleted here."""
        with self._lock:
            row = self.conn.execute(
                "SELECT source FROM events WHERE id = ? AND user_id = ?;", (event_id, user_id)
            ).fetchone()
            if row is None:
                return False
            if row["source"] != EventSource.LOCAL.value:
                raise ValueError(
                    f"event {event_id} belongs to {row['source']}; it is managed by sync"
                )
            try:
                with self.conn:
                    self.conn.execute("DELETE FROM events WHERE id = ?;", (event_id,))
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"could not delete event {event_id}: {exc}") from exc
        return True

    def list_events(
        self, user_id: str, from_time: datetime, to_time: datetime
    ) -> list[CalendarEvent]:
        """Events of every source overlapping [from_time, to_time), ordered by start."""
        lo, hi = to_utc_iso(from_time), to_utc_iso(to_time)
        with self._lock:
            rows = self.conn.execute(
                f"""
                SELECT {_EVENT_COLUMNS} FROM events
                WHERE user_id = ? AND start_key < ? AND (end_key > ? OR start_key >= ?)
                ORDER BY start_key, title, id;
                """,
                (user_id, hi, lo, lo),
            ).fetchall()
        return [self._row_to_event(r) for r in rows]
