from __future__ import annotations

import typer
from rich import print

from burstclaim.config import BurstclaimConfig
from burstclaim.debounce import DebounceSettings, ingest_event, process_group
from burstclaim.relay import build_dispatcher
from burstclaim.responder import build_responder
from burstclaim.store import CoordinationStore


def events_status_cmd(store: CoordinationStore, *, limit: int) -> None:
    """Show unclaimed events per group and batch outcomes."""

    items = store.event_backlog(limit=limit)
    totals = store.event_backlog_totals()
    print(f"Pending: {totals['pending']} events in {totals['groups']} groups")
    for item in items:
        counts = store.event_batch_status_counts(item["group_key"])
        print(
            f"- {item['group_key']} pending={item['pending']} "
            f"newest={item['newest_received_at_ms']} "
            f"batches=claimed:{counts['claimed']} completed:{counts['completed']} "
            f"no_reply:{counts['no_reply']} failed:{counts['failed']} "
            f"abandoned:{counts['abandoned']}"
        )


def events_ingest_cmd(
    store: CoordinationStore,
    *,
    group_key: str,
    text: str,
    event_id: str | None,
) -> None:
    inserted = ingest_event(store, group_key, {"text": text}, event_id=event_id)
    if inserted:
        print(f"Queued event for {group_key}")
    else:
        print(f"Duplicate event ignored for {group_key}")


def events_flush_cmd(store: CoordinationStore, cfg: BurstclaimConfig, *, group_key: str) -> None:
    """Wait for a group to settle, then claim and answer its events."""

    responder = build_responder(cfg)
    dispatcher = build_dispatcher(cfg)
    if responder is None or dispatcher is None:
        print("[red]responder and relay must both be configured[/red]")
        raise typer.Exit(code=1)
    result = process_group(
        store,
        group_key,
        responder=responder,
        dispatcher=dispatcher,
        settings=DebounceSettings.from_config(cfg),
    )
    print(f"{group_key}: {result['status']} (claimed {result['claimed']})")
    if result["status"] == "failed":
        raise typer.Exit(code=1)


def events_gate_cmd(
    store: CoordinationStore,
    *,
    min_reply_success_rate: float,
    max_dropped_event_rate: float,
    min_batches: int,
    window_hours: float,
) -> None:
    """Fail when reply reliability falls below the given thresholds."""

    metrics = store.event_reliability_metrics(window_hours=window_hours)
    rates = metrics.get("rates", {})
    counts = metrics.get("counts", {})
    reply_success_rate = float(rates.get("reply_success_rate", 1.0) or 0.0)
    dropped_event_rate = float(rates.get("dropped_event_rate", 0.0) or 0.0)
    terminal_batches = int(counts.get("terminal_batches", 0) or 0)

    failures: list[str] = []
    if terminal_batches < min_batches:
        failures.append(f"terminal_batches={terminal_batches} < min {min_batches}")
    if reply_success_rate < min_reply_success_rate:
        failures.append(
            f"reply_success_rate={reply_success_rate:.4f} < min {min_reply_success_rate:.4f}"
        )
    if dropped_event_rate > max_dropped_event_rate:
        failures.append(
            f"dropped_event_rate={dropped_event_rate:.4f} > max {max_dropped_event_rate:.4f}"
        )

    print(
        "reliability gate: "
        f"reply_success_rate={reply_success_rate:.4f}, "
        f"dropped_event_rate={dropped_event_rate:.4f}, "
        f"terminal_batches={terminal_batches}, "
        f"window_hours={window_hours:.2f}"
    )
    if failures:
        print("[red]reliability gate failed[/red]")
        for failure in failures:
            print(f"- {failure}")
        raise typer.Exit(code=1)
    print("[green]reliability gate passed[/green]")
