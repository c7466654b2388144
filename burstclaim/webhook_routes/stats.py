from __future__ import annotations

from typing import Any
from urllib.parse import parse_qs


def _window_hours(query: str) -> float | None:
    params = parse_qs(query)
    raw = (params.get("window_hours") or [""])[0]
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def handle_get(handler: Any, store: Any, path: str, query: str) -> bool:
    if path != "/api/stats":
        return False
    handler._send_json(
        {
            "events": {
                "backlog": store.event_backlog_totals(),
                "batches": store.event_batch_status_counts(),
                "reliability": store.event_reliability_metrics(
                    window_hours=_window_hours(query)
                ),
            },
            "alerts": store.alert_claim_metrics(),
            "sources": store.list_sync_sources(),
            "worker": store.get_worker_state(),
        }
    )
    return True
