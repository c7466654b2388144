from __future__ import annotations

import dataclasses
import json
import os
from pathlib import Path

import typer
from rich import print

from . import __version__
from .commands.alerts_cmds import (
    alerts_dispatch_cmd,
    alerts_release_cmd,
    alerts_status_cmd,
    alerts_stuck_cmd,
)
from .commands.common import load_config_or_exit, print_json
from .commands.events_cmds import (
    events_flush_cmd,
    events_gate_cmd,
    events_ingest_cmd,
    events_status_cmd,
)
from .commands.records_cmds import (
    records_list_cmd,
    records_note_cmd,
    records_show_cmd,
    records_tag_cmd,
    sync_add_cmd,
    sync_attempts_cmd,
    sync_run_cmd,
    sync_status_cmd,
)
from .config import BurstclaimConfig, get_config_path, read_config_file, write_config_file
from .db import DEFAULT_DB_PATH
from .store import CoordinationStore
from .utils import configure_logging

app = typer.Typer(help="burstclaim: at-most-once alerts and debounced replies")
records_app = typer.Typer(help="Inspect merged records")
sync_app = typer.Typer(help="Pull record changes from the provider")
events_app = typer.Typer(help="Inbound event groups")
alerts_app = typer.Typer(help="Record alerts")
config_app = typer.Typer(help="Configuration")
app.add_typer(records_app, name="records")
app.add_typer(sync_app, name="sync")
app.add_typer(events_app, name="events")
app.add_typer(alerts_app, name="alerts")
app.add_typer(config_app, name="config")


def _store(db_path: str | None) -> CoordinationStore:
    return CoordinationStore(db_path or os.environ.get("BURSTCLAIM_DB") or DEFAULT_DB_PATH)


@app.command()
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the SQLite database (no-op if it already exists)."""
    store = _store(db_path)
    try:
        print(f"Initialized database at {store.db_path}")
    finally:
        store.close()


@app.command()
def serve(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    host: str | None = typer.Option(None, help="Bind host (defaults to webhook_host)"),
    port: int | None = typer.Option(None, help="Bind port (defaults to webhook_port)"),
) -> None:
    """Run the webhook receiver."""
    from .webhook import port_in_use
    from .webhook import serve as serve_webhook

    cfg = load_config_or_exit()
    configure_logging(cfg.log_level)
    bind_host = host or cfg.webhook_host
    bind_port = port or cfg.webhook_port
    if port_in_use(bind_host, bind_port):
        print(f"[red]Port {bind_port} on {bind_host} is already in use[/red]")
        raise typer.Exit(code=1)
    print(f"Webhook listening at http://{bind_host}:{bind_port}")
    serve_webhook(
        cfg,
        db_path=db_path or os.environ.get("BURSTCLAIM_DB") or DEFAULT_DB_PATH,
        host=bind_host,
        port=bind_port,
    )


@app.command()
def worker(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Run scheduled syncs, alert retries and the group sweeper."""
    from .worker import run_worker

    cfg = load_config_or_exit()
    configure_logging(cfg.log_level)
    try:
        run_worker(cfg, db_path=db_path or os.environ.get("BURSTCLAIM_DB") or DEFAULT_DB_PATH)
    except KeyboardInterrupt:
        print("Worker stopped")


@records_app.command("list")
def records_list(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    source_id: str | None = typer.Option(None, help="Only records from this source"),
    limit: int = typer.Option(50, help="Max records to show"),
) -> None:
    """List merged records."""
    store = _store(db_path)
    try:
        records_list_cmd(store, source_id=source_id, limit=limit)
    finally:
        store.close()


@records_app.command("show")
def records_show(
    record_id: str = typer.Argument(..., help="Record id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Print a record as JSON."""
    store = _store(db_path)
    try:
        records_show_cmd(store, record_id=record_id)
    finally:
        store.close()


@records_app.command("note")
def records_note(
    record_id: str = typer.Argument(..., help="Record id"),
    notes: str = typer.Argument("", help="Note text (empty clears it)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Set the note on a record."""
    store = _store(db_path)
    try:
        records_note_cmd(store, record_id=record_id, notes=notes or None)
    finally:
        store.close()


@records_app.command("tag")
def records_tag(
    record_id: str = typer.Argument(..., help="Record id"),
    tags: list[str] = typer.Argument(None, help="Tags to set (none clears them)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Replace the tags on a record."""
    store = _store(db_path)
    try:
        records_tag_cmd(store, record_id=record_id, tags=list(tags or []))
    finally:
        store.close()


@sync_app.command("add")
def sync_add(
    source_id: str = typer.Argument(..., help="Provider source id"),
    label: str | None = typer.Option(None, help="Display label"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Register a source for scheduled syncs."""
    store = _store(db_path)
    try:
        sync_add_cmd(store, source_id=source_id, label=label)
    finally:
        store.close()


@sync_app.command("run")
def sync_run(
    source_id: str = typer.Argument(..., help="Provider source id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Sync one source now and send pending alerts."""
    cfg = load_config_or_exit()
    store = _store(db_path)
    try:
        sync_run_cmd(store, cfg, source_id=source_id)
    finally:
        store.close()


@sync_app.command("status")
def sync_status(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show sources and their last sync."""
    store = _store(db_path)
    try:
        sync_status_cmd(store)
    finally:
        store.close()


@sync_app.command("attempts")
def sync_attempts(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    source_id: str | None = typer.Option(None, help="Only attempts for this source"),
    limit: int = typer.Option(10, help="Number of attempts to show"),
) -> None:
    """Show recent sync attempts."""
    store = _store(db_path)
    try:
        sync_attempts_cmd(store, source_id=source_id, limit=limit)
    finally:
        store.close()


@events_app.command("status")
def events_status(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    limit: int = typer.Option(25, help="Max groups to show"),
) -> None:
    """Show pending events by group."""
    store = _store(db_path)
    try:
        events_status_cmd(store, limit=limit)
    finally:
        store.close()


@events_app.command("ingest")
def events_ingest(
    group_key: str = typer.Argument(..., help="Group key (e.g. sender)"),
    text: str = typer.Argument(..., help="Message text"),
    event_id: str | None = typer.Option(None, help="Upstream event id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Queue one inbound event."""
    store = _store(db_path)
    try:
        events_ingest_cmd(store, group_key=group_key, text=text, event_id=event_id)
    finally:
        store.close()


@events_app.command("flush")
def events_flush(
    group_key: str = typer.Argument(..., help="Group key"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Claim and answer a group once it has settled."""
    cfg = load_config_or_exit()
    store = _store(db_path)
    try:
        events_flush_cmd(store, cfg, group_key=group_key)
    finally:
        store.close()


@events_app.command("gate")
def events_gate(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    min_reply_success_rate: float = typer.Option(
        0.95, min=0.0, max=1.0, help="Minimum reply success rate"
    ),
    max_dropped_event_rate: float = typer.Option(
        0.05, min=0.0, max=1.0, help="Maximum dropped event rate"
    ),
    min_batches: int = typer.Option(1, min=0, help="Minimum terminal batch sample size"),
    window_hours: float = typer.Option(
        24.0, min=0.001, help="Rolling window in hours used for gate metrics"
    ),
) -> None:
    """Validate event reply reliability against thresholds."""
    store = _store(db_path)
    try:
        events_gate_cmd(
            store,
            min_reply_success_rate=min_reply_success_rate,
            max_dropped_event_rate=max_dropped_event_rate,
            min_batches=min_batches,
            window_hours=window_hours,
        )
    finally:
        store.close()


@alerts_app.command("dispatch")
def alerts_dispatch(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    limit: int = typer.Option(50, help="Max records to alert on"),
) -> None:
    """Send pending alerts now."""
    cfg = load_config_or_exit()
    store = _store(db_path)
    try:
        alerts_dispatch_cmd(store, cfg, limit=limit)
    finally:
        store.close()


@alerts_app.command("status")
def alerts_status(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show alert claim counters."""
    store = _store(db_path)
    try:
        alerts_status_cmd(store)
    finally:
        store.close()


@alerts_app.command("stuck")
def alerts_stuck(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    older_than_s: int = typer.Option(300, help="Only claims older than this many seconds"),
    limit: int = typer.Option(50, help="Max claims to show"),
) -> None:
    """List claims that were never confirmed."""
    store = _store(db_path)
    try:
        alerts_stuck_cmd(store, older_than_s=older_than_s, limit=limit)
    finally:
        store.close()


@alerts_app.command("release")
def alerts_release(
    record_id: str = typer.Argument(..., help="Record id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Release an unconfirmed claim so it is retried."""
    store = _store(db_path)
    try:
        alerts_release_cmd(store, record_id=record_id)
    finally:
        store.close()


@config_app.command("show")
def config_show() -> None:
    """Print the effective configuration."""
    cfg = load_config_or_exit()
    data = dataclasses.asdict(cfg)
    for key in ("provider_token", "relay_auth_key", "relay_secret_key", "responder_api_key"):
        if data.get(key):
            data[key] = "***"
    print_json(data)


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Config key"),
    value: str = typer.Argument(..., help="Value (parsed as JSON when possible)"),
    config_path: Path | None = typer.Option(None, help="Config file path"),
) -> None:
    """Write one key to the config file."""
    if key not in {field.name for field in dataclasses.fields(BurstclaimConfig)}:
        print(f"[red]Unknown config key: {key}[/red]")
        raise typer.Exit(code=1)
    try:
        data = read_config_file(config_path)
    except ValueError as exc:
        print(f"[red]Invalid config: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    try:
        data[key] = json.loads(value)
    except json.JSONDecodeError:
        data[key] = value
    path = write_config_file(data, config_path)
    print(f"Updated {key} in {get_config_path(path)}")


def main() -> None:
    app()


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)
