from __future__ import annotations

import typer
from rich import print

from burstclaim.config import BurstclaimConfig
from burstclaim.relay import build_dispatcher
from burstclaim.store import CoordinationStore
from burstclaim.sync.provider import build_provider
from burstclaim.sync.sync_pass import sync_and_alert

from .common import format_amount, print_json


def records_list_cmd(store: CoordinationStore, *, source_id: str | None, limit: int) -> None:
    """List merged records, newest first."""

    items = store.list_records(source_id=source_id, limit=limit)
    if not items:
        print("No records")
        return
    for item in items:
        flags = []
        if item.get("pending"):
            flags.append("pending")
        if item.get("notify_confirmed_at"):
            flags.append("alerted")
        elif item.get("notified_at"):
            flags.append("claimed")
        label = item.get("merchant_name") or item.get("name") or ""
        suffix = f" ({', '.join(flags)})" if flags else ""
        print(
            f"- {item['id']} {item.get('date') or ''} "
            f"{format_amount(item.get('amount'), item.get('iso_currency_code'))} {label}{suffix}"
        )


def records_show_cmd(store: CoordinationStore, *, record_id: str) -> None:
    record = store.get_record(record_id)
    if record is None:
        print(f"[red]Record not found: {record_id}[/red]")
        raise typer.Exit(code=1)
    print_json(record)


def records_note_cmd(store: CoordinationStore, *, record_id: str, notes: str | None) -> None:
    if not store.set_record_notes(record_id, notes):
        print(f"[red]Record not found: {record_id}[/red]")
        raise typer.Exit(code=1)
    print(f"Updated notes for {record_id}")


def records_tag_cmd(store: CoordinationStore, *, record_id: str, tags: list[str]) -> None:
    if not store.set_record_tags(record_id, tags):
        print(f"[red]Record not found: {record_id}[/red]")
        raise typer.Exit(code=1)
    print(f"Tagged {record_id}: {', '.join(tags) if tags else '(none)'}")


def sync_add_cmd(store: CoordinationStore, *, source_id: str, label: str | None) -> None:
    store.ensure_sync_source(source_id, label=label)
    print(f"Registered source {source_id}")


def sync_status_cmd(store: CoordinationStore) -> None:
    """Show each source's cursor and last attempt."""

    sources = store.list_sync_sources()
    if not sources:
        print("No sources registered")
        return
    for source in sources:
        status = "never"
        if source.get("last_error"):
            status = f"[red]error: {source['last_error']}[/red]"
        elif source.get("last_ok_at"):
            status = f"ok at {source['last_ok_at']}"
        cursor = "set" if source.get("cursor") else "none"
        print(f"- {source['source_id']} cursor={cursor} last={status}")


def sync_attempts_cmd(store: CoordinationStore, *, source_id: str | None, limit: int) -> None:
    attempts = store.sync_attempts(source_id=source_id, limit=limit)
    if not attempts:
        print("No sync attempts")
        return
    for attempt in attempts:
        outcome = "ok" if attempt.get("ok") else "error"
        print(
            f"- {attempt['source_id']} {attempt.get('started_at') or ''} {outcome} "
            f"pages={attempt.get('pages') or 0} added={attempt.get('added') or 0} "
            f"modified={attempt.get('modified') or 0} removed={attempt.get('removed') or 0}"
            + (f" error={attempt['error']}" if attempt.get("error") else "")
        )


def sync_run_cmd(store: CoordinationStore, cfg: BurstclaimConfig, *, source_id: str) -> None:
    """Run one sync pass for a source, then send any pending alerts."""

    provider = build_provider(cfg)
    if provider is None:
        print("[red]provider_url is not configured[/red]")
        raise typer.Exit(code=1)
    result = sync_and_alert(
        store,
        source_id,
        provider,
        build_dispatcher(cfg),
        recipient=cfg.alert_recipient,
        page_size=cfg.sync_page_size,
        alert_on_initial_sync=cfg.alert_on_initial_sync,
        min_amount=cfg.alert_min_amount,
        spacing_ms=cfg.alert_spacing_ms,
        retry_window_s=cfg.alert_retry_window_s or None,
    )
    sync_result = result["sync"]
    if not sync_result.get("ok"):
        print(f"[red]Sync failed: {sync_result.get('error')}[/red]")
        raise typer.Exit(code=1)
    print(
        f"Synced {source_id}: pages={sync_result['pages']} added={sync_result['added']} "
        f"modified={sync_result['modified']} removed={sync_result['removed']} "
        f"skipped={sync_result['skipped']}"
        + (" (superseded)" if sync_result.get("superseded") else "")
    )
    alerts = result["alerts"]
    if alerts is not None:
        print(f"Alerts: sent={alerts['sent']} failed={alerts['failed']} lost={alerts['lost']}")
