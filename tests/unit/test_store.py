from __future__ import annotations

import sqlite3
from datetime import UTC, date, datetime, timedelta

import pytest
from factories import NOW, make_event

from localcal.errors import PersistenceFailure
from localcal.models import Changeset, EventSource, Provider, SyncStatus
from localcal.store import ConnectionStore
from localcal.sync.reconciler import reconcile


def _apply(store: ConnectionStore, cid: str, fetched, now=NOW) -> Changeset:
    stored = store.get_events("u1", EventSource.GOOGLE, cid)
    cs = reconcile(stored, fetched, user_id="u1", source=EventSource.GOOGLE, now=now)
    store.apply_changeset(cid, cs)
    return cs


def test_connection_roundtrip_and_listing(store: ConnectionStore) -> None:
    a = store.add_connection("u1", Provider.GOOGLE, {"refresh_token": "r"}, connection_id="ca")
    store.add_connection("u2", Provider.ICLOUD_ICS, {"url": "https://x.example/cal.ics"})

    got = store.get_connection("ca")
    assert got is not None
    assert got.provider == Provider.GOOGLE
    assert got.config == {"refresh_token": "r"}
    assert got.last_synced_at is None
    assert [c.id for c in store.get_connections("u1")] == [a.id]
    assert len(store.get_connections()) == 2
    assert store.get_connection("missing") is None


def test_apply_changeset_persists_and_is_idempotent(store: ConnectionStore) -> None:
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="c1")
    fetched = [make_event("g1"), make_event("g2", title="Lunch")]

    first = _apply(store, "c1", fetched)
    second = _apply(store, "c1", fetched)

    assert len(first.to_insert) == 2
    assert second.is_empty
    stored = store.get_events("u1", EventSource.GOOGLE, "c1")
    assert sorted(e.source_event_id for e in stored) == ["g1", "g2"]


def test_repeated_syncs_keep_one_row_per_source_event(store: ConnectionStore) -> None:
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="c1")
    for title in ("A", "B", "C"):
        _apply(store, "c1", [make_event("g1", title=title)])

    (count,) = store.conn.execute(
        "SELECT COUNT(*) FROM events WHERE source_event_id = 'g1';"
    ).fetchone()
    assert count == 1
    assert store.get_events("u1", EventSource.GOOGLE)[0].title == "C"


def test_all_day_values_survive_storage(store: ConnectionStore) -> None:
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="c1")
    _apply(store, "c1", [make_event("g1", start_at=date(2024, 1, 3), end_at=date(2024, 1, 4))])

    (ev,) = store.get_events("u1", EventSource.GOOGLE, "c1")
    assert ev.start_at == date(2024, 1, 3)
    assert not isinstance(ev.start_at, datetime)
    assert ev.all_day


def test_delete_removes_only_missing_events(store: ConnectionStore) -> None:
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="c1")
    _apply(store, "c1", [make_event("g1"), make_event("g2")])

    cs = _apply(store, "c1", [make_event("g1")])

    assert cs.to_delete == ["g2"]
    assert [e.source_event_id for e in store.get_events("u1", EventSource.GOOGLE)] == ["g1"]


def test_failed_changeset_rolls_back_entirely(store: ConnectionStore) -> None:
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="c1")
    _apply(store, "c1", [make_event("g1")])
    # A foreign user's event in the changeset aborts the whole transaction
    bad = Changeset(
        user_id="u1",
        source=EventSource.GOOGLE,
        to_insert=[make_event("g2"), make_event("g3", user_id="u2")],
        to_delete=["g1"],
    )

    with pytest.raises(PersistenceFailure):
        store.apply_changeset("c1", bad)

    assert [e.source_event_id for e in store.get_events("u1", EventSource.GOOGLE)] == ["g1"]


def test_sqlite_error_is_wrapped(store: ConnectionStore) -> None:
    cs = Changeset(user_id="u1", source=EventSource.GOOGLE, to_insert=[make_event("g1")])

    # connection_id references a connection that does not exist
    with pytest.raises(PersistenceFailure) as ei:
        store.apply_changeset("nope", cs)
    assert isinstance(ei.value.__cause__, sqlite3.Error)


def test_local_events_are_isolated_from_sync(store: ConnectionStore) -> None:
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="c1")
    local = store.add_local_event(
        "u1", "Gym", datetime(2024, 1, 2, 7, tzinfo=UTC), datetime(2024, 1, 2, 8, tzinfo=UTC)
    )
    _apply(store, "c1", [make_event("g1")])
    _apply(store, "c1", [])

    events = store.list_events("u1", datetime(2024, 1, 1, tzinfo=UTC), datetime(2024, 2, 1, tzinfo=UTC))
    assert [e.id for e in events] == [local.id]
    assert events[0].source == EventSource.LOCAL


def test_delete_local_event_refuses_provider_events(store: ConnectionStore) -> None:
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="c1")
    _apply(store, "c1", [make_event("g1")])
    (provider_event,) = store.get_events("u1", EventSource.GOOGLE)
    local = store.add_local_event("u1", "Gym", date(2024, 1, 5), date(2024, 1, 6))

    with pytest.raises(ValueError):
        store.delete_local_event("u1", provider_event.id)
    assert store.delete_local_event("u2", local.id) is False
    assert store.delete_local_event("u1", local.id) is True
    assert store.delete_local_event("u1", local.id) is False


def test_delete_connection_cascades_to_its_events(store: ConnectionStore) -> None:
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="c1")
    _apply(store, "c1", [make_event("g1"), make_event("g2")])
    store.add_local_event("u1", "Gym", date(2024, 1, 5), date(2024, 1, 6))

    removed = store.delete_connection("c1")

    assert removed == 2
    assert store.get_connection("c1") is None
    assert store.get_events("u1", EventSource.GOOGLE) == []
    assert len(store.get_events("u1", EventSource.LOCAL)) == 1


def test_list_events_orders_by_start_then_title(store: ConnectionStore) -> None:
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="c1")
    _apply(
        store,
        "c1",
        [
            make_event("g1", title="b-late", start_at=datetime(2024, 1, 3, 9, tzinfo=UTC),
                       end_at=datetime(2024, 1, 3, 10, tzinfo=UTC)),
            make_event("g2", title="Zed", start_at=date(2024, 1, 3), end_at=date(2024, 1, 4)),
        ],
    )
    store.add_local_event("u1", "Alpha", date(2024, 1, 3), date(2024, 1, 4))
    store.add_local_event("u1", "Outside", date(2024, 3, 1), date(2024, 3, 2))

    events = store.list_events(
        "u1", datetime(2024, 1, 3, tzinfo=UTC), datetime(2024, 1, 4, tzinfo=UTC)
    )

    assert [e.title for e in events] == ["Alpha", "Zed", "b-late"]


def test_list_events_includes_events_overlapping_range_start(store: ConnectionStore) -> None:
    store.add_local_event(
        "u1", "Overnight", datetime(2024, 1, 2, 22, tzinfo=UTC), datetime(2024, 1, 3, 2, tzinfo=UTC)
    )

    events = store.list_events(
        "u1", datetime(2024, 1, 3, tzinfo=UTC), datetime(2024, 1, 4, tzinfo=UTC)
    )

    assert [e.title for e in events] == ["Overnight"]


def test_due_connections_and_outcome_bookkeeping(store: ConnectionStore) -> None:
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="fresh")
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="stale")
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="never")
    store.add_connection("u1", Provider.GOOGLE, {}, connection_id="expired")
    store.update_last_synced("fresh", NOW)
    store.update_last_synced("stale", NOW - timedelta(hours=2))
    store.record_outcome("expired", SyncStatus.AUTH_EXPIRED, error="revoked", attempted_at=NOW)

    due = store.get_due_connections(NOW - timedelta(minutes=30))

    assert [c.id for c in due] == ["never", "stale"]
    expired = store.get_connection("expired")
    assert expired is not None
    assert expired.last_status == "auth_expired"
    assert expired.last_error == "revoked"
    assert expired.last_attempt_at == NOW


def test_reauthorization_clears_expired_status(store: ConnectionStore) -> None:
    store.add_connection("u1", Provider.GOOGLE, {"refresh_token": "old"}, connection_id="c1")
    store.record_outcome("c1", SyncStatus.AUTH_EXPIRED, attempted_at=NOW)

    store.update_connection_config("c1", {"refresh_token": "new"})

    conn = store.get_connection("c1")
    assert conn is not None and conn.last_status is None
    assert conn.config == {"refresh_token": "new"}
    assert [c.id for c in store.get_due_connections(NOW)] == ["c1"]


def test_update_last_synced_unknown_connection(store: ConnectionStore) -> None:
    with pytest.raises(PersistenceFailure):
        store.update_last_synced("missing", NOW)


def test_file_store_is_owner_only(tmp_path) -> None:
    db = tmp_path / "nested" / "localcal.sqlite"
    with ConnectionStore(str(db)) as s:
        s.add_connection("u1", Provider.ICLOUD_ICS, {"url": "https://x.example/a.ics"})

    assert db.exists()
    assert (db.stat().st_mode & 0o777) == 0o600
