from __future__ import annotations

import os

import pytest
from factories import make_event
from typer.testing import CliRunner

import localcal.providers.registry as registry
from localcal.cli import app
from localcal.errors import ProviderAuthExpired
from localcal.models import Provider

runner = CliRunner()


@pytest.fixture(autouse=True)
def _env(tmp_path, monkeypatch):
    monkeypatch.setenv("LOCALCAL__state__db_path", str(tmp_path / "localcal.sqlite"))
    monkeypatch.setenv("LOCALCAL__runtime__lock_path", str(tmp_path / "localcal.lock"))
    monkeypatch.setenv("LOCALCAL__logging__json", "false")
    monkeypatch.setenv("LOCALCAL__logging__level", "ERROR")


@pytest.fixture
def fake_ics(monkeypatch):
    def fetch(conn, ctx):
        return [
            make_event("feed-1", user_id=conn.user_id, source=conn.source, connection_id=conn.id,
                       title="Feed meeting")
        ]

    monkeypatch.setitem(registry.FETCHERS, Provider.ICLOUD_ICS, fetch)


def _connect_ics(user: str = "u1") -> str:
    result = runner.invoke(app, ["connect-ics", "--user", user, "--url", "webcal://cal.example.com/a.ics"])
    assert result.exit_code == 0, result.output
    return result.output.strip().split()[-1]


def test_connect_and_status_before_sync() -> None:
    cid = _connect_ics()

    result = runner.invoke(app, ["status", "--user", "u1"])

    assert result.exit_code == 0
    assert cid in result.output
    assert "never synced" in result.output


def test_connect_ics_rejects_other_schemes() -> None:
    result = runner.invoke(app, ["connect-ics", "--user", "u1", "--url", "ftp://x/a.ics"])

    assert result.exit_code == 2


def test_sync_then_list_events(fake_ics) -> None:
    _connect_ics()

    result = runner.invoke(app, ["sync", "--user", "u1"])

    assert result.exit_code == 0, result.output
    assert "connections=1 inserted=1" in result.output
    status = runner.invoke(app, ["status"])
    assert "last synced" in status.output

    added = runner.invoke(
        app, ["add-event", "--user", "u1", "--title", "Dentist", "--start", "2024-01-02", "--end", "2024-01-02"]
    )
    assert added.exit_code == 0, added.output

    listed = runner.invoke(app, ["events", "--user", "u1", "--from", "2024-01-01", "--to", "2024-02-01"])
    assert listed.exit_code == 0
    assert "[local]  Dentist" in listed.output
    assert "2024-01-02  2024-01-03" in listed.output
    assert "[icloud]  Feed meeting" in listed.output


def test_sync_dry_run_writes_nothing(fake_ics) -> None:
    _connect_ics()

    result = runner.invoke(app, ["sync", "--dry-run"])

    assert result.exit_code == 0
    listed = runner.invoke(app, ["events", "--user", "u1", "--from", "2024-01-01", "--to", "2024-02-01"])
    assert "No events." in listed.output


def test_partial_failure_exit_code(fake_ics, monkeypatch) -> None:
    def expired(conn, ctx):
        raise ProviderAuthExpired("revoked")

    monkeypatch.setitem(registry.FETCHERS, Provider.GOOGLE, expired)
    _connect_ics()
    runner.invoke(app, ["connect-google", "--user", "u1", "--refresh-token", "1//tok-value-long"])

    result = runner.invoke(app, ["sync"])

    assert result.exit_code == 2
    assert "auth_expired" in result.output
    assert "needs reauthorization" in runner.invoke(app, ["status"]).output


def test_reauthorize_google_connection(monkeypatch) -> None:
    first = runner.invoke(
        app, ["connect-google", "--user", "u1", "--refresh-token", "old", "--calendar-id", "team@x"]
    )
    cid = first.output.strip().split()[-1]

    again = runner.invoke(
        app, ["connect-google", "--user", "u1", "--refresh-token", "new", "--reauthorize", cid]
    )
    wrong_user = runner.invoke(
        app, ["connect-google", "--user", "u2", "--refresh-token", "new", "--reauthorize", cid]
    )

    assert again.exit_code == 0
    assert f"Re-authorized Google connection: {cid}" in again.output
    assert wrong_user.exit_code == 1


def test_disconnect_removes_events(fake_ics) -> None:
    cid = _connect_ics()
    runner.invoke(app, ["sync"])

    result = runner.invoke(app, ["disconnect", cid])

    assert result.exit_code == 0
    assert "removed 1 events" in result.output
    assert runner.invoke(app, ["disconnect", cid]).exit_code == 1
    assert "No connections." in runner.invoke(app, ["status"]).output


def test_add_event_validates_times() -> None:
    mixed = runner.invoke(
        app, ["add-event", "--user", "u1", "--title", "x", "--start", "2024-01-02", "--end", "2024-01-02T10:00:00Z"]
    )
    backwards = runner.invoke(
        app, ["add-event", "--user", "u1", "--title", "x", "--start", "2024-01-03", "--end", "2024-01-02"]
    )

    assert mixed.exit_code == 2
    assert backwards.exit_code == 2


def test_sync_with_lock_held_is_fatal(tmp_path) -> None:
    (tmp_path / "localcal.lock").write_text(str(os.getpid()))

    result = runner.invoke(app, ["sync"])

    assert result.exit_code == 3


def test_invalid_config_is_fatal(monkeypatch) -> None:
    monkeypatch.setenv("LOCALCAL__sync__window_days", "0")

    result = runner.invoke(app, ["sync"])

    assert result.exit_code == 3
