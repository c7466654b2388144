from __future__ import annotations

import typer
from rich import print

from burstclaim.alerts import dispatch_alerts
from burstclaim.config import BurstclaimConfig
from burstclaim.relay import build_dispatcher
from burstclaim.store import CoordinationStore
from burstclaim.store.utils import iso_before

from .common import format_amount


def alerts_dispatch_cmd(store: CoordinationStore, cfg: BurstclaimConfig, *, limit: int) -> None:
    """Send alerts for every eligible record not yet alerted."""

    dispatcher = build_dispatcher(cfg)
    if dispatcher is None or not cfg.alert_recipient:
        print("[red]relay and alert_recipient must both be configured[/red]")
        raise typer.Exit(code=1)
    counts = dispatch_alerts(
        store,
        dispatcher,
        recipient=cfg.alert_recipient,
        min_amount=cfg.alert_min_amount,
        retry_window_s=cfg.alert_retry_window_s or None,
        spacing_ms=cfg.alert_spacing_ms,
        limit=limit,
    )
    print(
        f"Alerts: candidates={counts['candidates']} sent={counts['sent']} "
        f"suppressed={counts['suppressed']} lost={counts['lost']} failed={counts['failed']}"
    )
    if counts["failed"]:
        raise typer.Exit(code=1)


def alerts_status_cmd(store: CoordinationStore) -> None:
    metrics = store.alert_claim_metrics()
    print("[bold]Alert claims[/bold]")
    for key, value in metrics.items():
        print(f"- {key}: {value}")


def alerts_stuck_cmd(store: CoordinationStore, *, older_than_s: int, limit: int) -> None:
    """List claims that were never confirmed."""

    items = store.unconfirmed_alert_claims(
        older_than_iso=iso_before(seconds=older_than_s) if older_than_s else None,
        limit=limit,
    )
    if not items:
        print("No unconfirmed claims")
        return
    for item in items:
        label = item.get("merchant_name") or item.get("name") or ""
        print(
            f"- {item['id']} {format_amount(item.get('amount'))} {label} "
            f"claimed_at={item['notified_at']} attempts={item.get('notify_attempts') or 0}"
        )


def alerts_release_cmd(store: CoordinationStore, *, record_id: str) -> None:
    """Release an unconfirmed claim so the next dispatch retries it."""

    if not store.release_alert_claim(record_id):
        print(f"[red]No releasable claim for {record_id}[/red]")
        raise typer.Exit(code=1)
    print(f"Released claim for {record_id}")
