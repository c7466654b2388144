from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from typing import Any

from ..alerts import AlertComposer, compose_alert, dispatch_alerts
from ..relay import NotificationDispatcher
from ..store import CoordinationStore
from .provider import RecordProvider

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 500


def run_sync_pass(
    store: CoordinationStore,
    source_id: str,
    provider: RecordProvider,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    alert_on_initial_sync: bool = False,
    page_delay_ms: int = 0,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    """Pull pages from the provider until it has no more, merging each one.

    The cursor moves only after a page is merged, and only from the value this
    attempt read, so a slower concurrent attempt can never move it backwards.
    """
    store.ensure_sync_source(source_id)
    current = store.get_sync_cursor(source_id)
    cursor = current.cursor if current else None
    # Historical backfill should not page the user for old records. The backfill
    # lasts until some attempt drains the upstream history, across retries.
    initial_done = bool(current and current.initial_sync_completed_at)
    alert_eligible = alert_on_initial_sync or initial_done
    attempt_id = store.start_sync_attempt(source_id)
    totals = {"pages": 0, "added": 0, "modified": 0, "removed": 0, "skipped": 0}
    added_ids: list[str] = []

    def _finish(ok: bool, error: str | None = None) -> None:
        store.finish_sync_attempt(attempt_id, ok=ok, error=error, **totals)

    has_more = True
    while has_more:
        if totals["pages"] and page_delay_ms > 0:
            sleep(page_delay_ms / 1000.0)
        try:
            page = provider.fetch_page(source_id, cursor, page_size)
        except Exception as exc:
            detail = str(exc).strip() or exc.__class__.__name__
            logger.warning(
                "sync page fetch failed",
                extra={"source_id": source_id, "error": detail},
            )
            _finish(False, detail)
            return {"ok": False, "error": detail, "added_ids": added_ids, **totals}
        try:
            merged = store.apply_record_changes(
                added=page.added,
                modified=page.modified,
                removed=page.removed,
                source_id=source_id,
                alert_eligible=alert_eligible,
            )
        except sqlite3.Error as exc:
            _finish(False, f"merge failed: {exc}")
            raise
        totals["pages"] += 1
        totals["added"] += len(page.added)
        totals["modified"] += len(page.modified)
        totals["removed"] += merged.removed
        totals["skipped"] += merged.skipped
        added_ids.extend(merged.added_ids)
        if page.next_cursor and page.next_cursor != cursor:
            if not store.advance_sync_cursor(
                source_id, expected=cursor, next_cursor=page.next_cursor
            ):
                logger.info(
                    "sync cursor moved by another attempt",
                    extra={"source_id": source_id},
                )
                _finish(True, "superseded")
                return {"ok": True, "superseded": True, "added_ids": added_ids, **totals}
            cursor = page.next_cursor
        has_more = page.has_more and bool(page.next_cursor)
    if not initial_done and store.mark_initial_sync_complete(source_id):
        logger.info("initial sync complete", extra={"source_id": source_id})
    _finish(True)
    return {"ok": True, "superseded": False, "added_ids": added_ids, **totals}


def sync_and_alert(
    store: CoordinationStore,
    source_id: str,
    provider: RecordProvider,
    dispatcher: NotificationDispatcher | None,
    *,
    recipient: str | None,
    composer: AlertComposer = compose_alert,
    page_size: int = DEFAULT_PAGE_SIZE,
    alert_on_initial_sync: bool = False,
    min_amount: float = 0.0,
    spacing_ms: int = 1000,
    retry_window_s: int | None = 86400,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    sync_result = run_sync_pass(
        store,
        source_id,
        provider,
        page_size=page_size,
        alert_on_initial_sync=alert_on_initial_sync,
        sleep=sleep,
    )
    alerts: dict[str, int] | None = None
    if dispatcher is not None and recipient:
        # Runs even when the sync failed: released or crashed claims still need a retry.
        alerts = dispatch_alerts(
            store,
            dispatcher,
            recipient=recipient,
            composer=composer,
            min_amount=min_amount,
            retry_window_s=retry_window_s,
            spacing_ms=spacing_ms,
            sleep=sleep,
        )
    return {"sync": sync_result, "alerts": alerts}


def sync_all_sources(
    store: CoordinationStore,
    provider: RecordProvider,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    alert_on_initial_sync: bool = False,
) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []
    for source in store.list_sync_sources():
        source_id = str(source["source_id"])
        result = run_sync_pass(
            store,
            source_id,
            provider,
            page_size=page_size,
            alert_on_initial_sync=alert_on_initial_sync,
        )
        results.append({"source_id": source_id, **result})
    return results
