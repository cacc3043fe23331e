"""CLI entrypoint for localcal.

Commands
- sync:            sync connections (one user's, all, or only those due; for cron/systemd use --due)
- status:          list connections with their last sync outcome
- connect-ics:     link an ICS feed (iCloud public calendar or any webcal/https URL)
- connect-google:  link (or re-authorize) a Google calendar with an issued refresh token
- disconnect:      remove a connection and every event it produced
- events:          list a user's events of every source in a time range
- add-event:       create a local (user-authored) event

Notes
- Configuration precedence: CLI > ENV (LOCALCAL__) > YAML file, see config loader.
- sync exit codes: 0 all connections synced, 2 partial failure, 3 fatal (lock held, bad config).
- SIGINT/SIGTERM during sync cancel the run; connections not yet persisted are left unchanged.
"""

from __future__ import annotations

import signal
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime, time, timedelta
from pathlib import Path
from typing import Any

import typer

from .config import AppConfig, load_config
from .errors import ConfigError, PersistenceFailure
from .logging import setup_logging
from .models import Provider, When
from .store import ConnectionStore
from .sync.orchestrator import Orchestrator
from .sync.status import connection_status
from .utils.timezones import format_when, parse_when, utc_now

app = typer.Typer(add_completion=False, help="Sync external calendars into the local event store")

_CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="Path to YAML config file.", show_default=False
)
_VERBOSE_OPTION = typer.Option(
    False, "--verbose", "-v", help="Set log level to DEBUG (overrides config.logging.level)."
)


def _cli_overrides_from_args(
    *,
    window_days: int | None = None,
    max_workers: int | None = None,
    dry_run: bool | None = None,
    verbose: bool = False,
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    sync_over: dict[str, Any] = {}
    if window_days is not None:
        sync_over["window_days"] = window_days
    if max_workers is not None:
        sync_over["max_workers"] = max_workers
    if dry_run is not None:
        sync_over["dry_run"] = dry_run
    if sync_over:
        overrides["sync"] = sync_over

    if verbose:
        overrides.setdefault("logging", {})["level"] = "DEBUG"

    return overrides


def _load(config: Path | None, overrides: dict[str, Any]) -> AppConfig:
    try:
        cfg = load_config(file_path=str(config) if config else None, cli_overrides=overrides)
    except ConfigError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=3) from exc
    setup_logging(level=cfg.logging.level, json=cfg.logging.as_json)
    return cfg


def _open_store(cfg: AppConfig) -> ConnectionStore:
    try:
        return ConnectionStore(cfg.state.db_path)
    except (PersistenceFailure, sqlite3.Error, OSError) as exc:
        typer.echo(f"Cannot open store at {cfg.state.db_path}: {exc}", err=True)
        raise typer.Exit(code=3) from exc


@contextmanager
def _cancel_on_signals() -> Iterator[threading.Event]:
    """Set the yielded event on SIGINT/SIGTERM while the block runs."""
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def _handler(signum: int, frame: Any) -> None:
        cancel.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _parse_when_option(raw: str, name: str) -> When:
    try:
        return parse_when(raw)
    except ValueError as exc:
        raise typer.BadParameter(
            f"{name} must be YYYY-MM-DD or an ISO 8601 date-time, got {raw!r}"
        ) from exc


def _as_bound(value: When) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min, tzinfo=UTC)


@app.command(help="Sync calendar connections into the local store.")
def sync(
    config: Path | None = _CONFIG_OPTION,
    user: str | None = typer.Option(
        None, "--user", "-u", help="Only sync this user's connections.", show_default=False
    ),
    due: bool = typer.Option(
        False,
        "--due",
        help="Only sync connections whose last sync is older than sync.interval_minutes.",
        show_default=False,
    ),
    dry_run: bool | None = typer.Option(
        None,
        "--dry-run/--no-dry-run",
        help="Fetch and reconcile but do not write changes; log intended actions.",
        show_default=False,
    ),
    window_days: int | None = typer.Option(
        None, "--window-days", min=1, help="Days ahead to fetch.", show_default=False
    ),
    max_workers: int | None = typer.Option(
        None, "--max-workers", min=1, help="Connections synced concurrently.", show_default=False
    ),
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Sync command."""
    overrides = _cli_overrides_from_args(
        window_days=window_days, max_workers=max_workers, dry_run=dry_run, verbose=verbose
    )
    cfg = _load(config, overrides)

    with _open_store(cfg) as store, _cancel_on_signals() as cancel:
        orch = Orchestrator(cfg, store)
        exit_code, report = orch.run(user_id=user, due_only=due, cancel=cancel)

    agg = report.aggregate()
    typer.echo(
        "localcal sync summary: "
        f"connections={agg['connections']} inserted={agg['inserted']} updated={agg['updated']} "
        f"deleted={agg['deleted']} failed={agg['connections'] - agg['success']} "
        f"cancelled={agg['cancelled']}"
    )
    for res in report.results:
        if not res.ok:
            typer.echo(f"  {res.connection_id}: {res.status.value} {res.error or ''}".rstrip())
    raise typer.Exit(code=exit_code)


@app.command(help="Show connections and their last sync outcome.")
def status(
    config: Path | None = _CONFIG_OPTION,
    user: str | None = typer.Option(None, "--user", "-u", help="Only this user.", show_default=False),
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, _cli_overrides_from_args(verbose=verbose))
    with _open_store(cfg) as store:
        connections = store.get_connections(user)
    if not connections:
        typer.echo("No connections.")
        raise typer.Exit(code=0)
    for conn in connections:
        typer.echo(f"{conn.id}  {conn.user_id}  {conn.provider.value}  {connection_status(conn)}")
    raise typer.Exit(code=0)


@app.command("connect-ics", help="Link an ICS feed URL (webcal:// or https://).")
def connect_ics(
    user: str = typer.Option(..., "--user", "-u", help="Owner of the connection."),
    url: str = typer.Option(..., "--url", help="Feed URL; webcal:// is fetched over https."),
    config: Path | None = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    if not url.lower().startswith(("https://", "http://", "webcal://", "webcals://")):
        raise typer.BadParameter("--url must start with https://, http:// or webcal://")
    cfg = _load(config, _cli_overrides_from_args(verbose=verbose))
    with _open_store(cfg) as store:
        conn = store.add_connection(user, Provider.ICLOUD_ICS, {"url": url})
    typer.echo(f"Connected ICS feed: {conn.id}")


@app.command("connect-google", help="Link a Google calendar using an already-issued refresh token.")
def connect_google(
    user: str = typer.Option(..., "--user", "-u", help="Owner of the connection."),
    refresh_token: str = typer.Option(
        ..., "--refresh-token", help="OAuth refresh token for the calendar scope."
    ),
    calendar_id: str | None = typer.Option(
        None, "--calendar-id", help="Google calendar id (default: google.default_calendar_id)."
    ),
    connection_id: str | None = typer.Option(
        None,
        "--reauthorize",
        help="Replace the credential of an existing connection instead of adding one.",
        show_default=False,
    ),
    config: Path | None = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, _cli_overrides_from_args(verbose=verbose))
    conn_config: dict[str, Any] = {"refresh_token": refresh_token}
    if calendar_id:
        conn_config["calendar_id"] = calendar_id

    with _open_store(cfg) as store:
        if connection_id:
            existing = store.get_connection(connection_id)
            if existing is None or existing.user_id != user or existing.provider != Provider.GOOGLE:
                typer.echo(f"No Google connection {connection_id} for user {user}", err=True)
                raise typer.Exit(code=1)
            if "calendar_id" not in conn_config and existing.config.get("calendar_id"):
                conn_config["calendar_id"] = existing.config["calendar_id"]
            store.update_connection_config(connection_id, conn_config)
            typer.echo(f"Re-authorized Google connection: {connection_id}")
            return
        conn = store.add_connection(user, Provider.GOOGLE, conn_config)
    typer.echo(f"Connected Google calendar: {conn.id}")


@app.command(help="Remove a connection and the events it produced.")
def disconnect(
    connection_id: str = typer.Argument(..., help="Connection id (see `status`)."),
    config: Path | None = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, _cli_overrides_from_args(verbose=verbose))
    with _open_store(cfg) as store:
        if store.get_connection(connection_id) is None:
            typer.echo(f"No connection {connection_id}", err=True)
            raise typer.Exit(code=1)
        removed = store.delete_connection(connection_id)
    typer.echo(f"Disconnected {connection_id}; removed {removed} events")


@app.command(help="List a user's events (all sources) overlapping a time range.")
def events(
    user: str = typer.Option(..., "--user", "-u", help="Whose events to list."),
    start: str | None = typer.Option(
        None, "--from", help="Range start (date or ISO date-time); default now.", show_default=False
    ),
    end: str | None = typer.Option(
        None,
        "--to",
        help="Range end, exclusive; default start + sync.window_days.",
        show_default=False,
    ),
    config: Path | None = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, _cli_overrides_from_args(verbose=verbose))
    lo = _as_bound(_parse_when_option(start, "--from")) if start else utc_now()
    hi = (
        _as_bound(_parse_when_option(end, "--to"))
        if end
        else lo + timedelta(days=cfg.sync.window_days)
    )
    with _open_store(cfg) as store:
        found = store.list_events(user, lo, hi)
    if not found:
        typer.echo("No events.")
        return
    for ev in found:
        typer.echo(
            f"{format_when(ev.start_at)}  {format_when(ev.end_at)}  [{ev.source.value}]  {ev.title}"
        )


@app.command("add-event", help="Create a local event (never touched by sync).")
def add_event(
    user: str = typer.Option(..., "--user", "-u", help="Owner of the event."),
    title: str = typer.Option(..., "--title", help="Event title."),
    start: str = typer.Option(..., "--start", help="YYYY-MM-DD (all-day) or ISO date-time."),
    end: str = typer.Option(..., "--end", help="Same form as --start."),
    description: str | None = typer.Option(None, "--description", show_default=False),
    location: str | None = typer.Option(None, "--location", show_default=False),
    config: Path | None = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    start_at = _parse_when_option(start, "--start")
    end_at = _parse_when_option(end, "--end")
    if isinstance(start_at, datetime) != isinstance(end_at, datetime):
        raise typer.BadParameter("--start and --end must both be dates or both be date-times")
    if _as_bound(end_at) < _as_bound(start_at):
        raise typer.BadParameter("--end must not be before --start")
    if isinstance(start_at, date) and not isinstance(start_at, datetime) and end_at == start_at:
        # Exclusive end for all-day events
        end_at = start_at + timedelta(days=1)

    cfg = _load(config, _cli_overrides_from_args(verbose=verbose))
    with _open_store(cfg) as store:
        ev = store.add_local_event(
            user, title, start_at, end_at, description=description, location=location
        )
    typer.echo(f"Added local event: {ev.id}")


if __name__ == "__main__":  # pragma: no cover
    app()
