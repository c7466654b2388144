from __future__ import annotations

import traceback
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

from .. import db
from . import alerts as store_alerts
from . import cursors as store_cursors
from . import pending_events as store_pending_events
from . import records as store_records
from .types import ExternalRecord, MergeResult, PendingEvent, SyncCursor
from .utils import now_iso


class CoordinationStore:
    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        check_same_thread: bool = True,
    ):
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_schema(self.conn)

    # Records

    def upsert_record(
        self,
        record: ExternalRecord,
        *,
        source_id: str | None = None,
        alert_eligible: bool = True,
    ) -> str:
        return store_records.upsert_record(
            self.conn, record, source_id=source_id, alert_eligible=alert_eligible
        )

    def remove_record(self, record_id: str) -> bool:
        return store_records.remove_record(self.conn, record_id)

    def apply_record_changes(
        self,
        *,
        added: Iterable[Any] = (),
        modified: Iterable[Any] = (),
        removed: Iterable[Any] = (),
        source_id: str | None = None,
        alert_eligible: bool = True,
    ) -> MergeResult:
        return store_records.apply_record_changes(
            self.conn,
            added=added,
            modified=modified,
            removed=removed,
            source_id=source_id,
            alert_eligible=alert_eligible,
        )

    def get_record(self, record_id: str) -> dict[str, Any] | None:
        return store_records.get_record(self.conn, record_id)

    def list_records(self, *, source_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        return store_records.list_records(self.conn, source_id=source_id, limit=limit)

    def set_record_notes(self, record_id: str, notes: str | None) -> bool:
        return store_records.set_record_notes(self.conn, record_id, notes)

    def set_record_tags(self, record_id: str, tags: Iterable[str]) -> bool:
        return store_records.set_record_tags(self.conn, record_id, tags)

    def add_record_attachment(self, record_id: str, attachment: dict[str, Any]) -> bool:
        return store_records.add_record_attachment(self.conn, record_id, attachment)

    # Alerts

    def try_claim_alert(self, record_id: str) -> bool:
        return store_alerts.try_claim_alert(self.conn, record_id)

    def release_alert_claim(self, record_id: str) -> bool:
        return store_alerts.release_alert_claim(self.conn, record_id)

    def confirm_alert(self, record_id: str, delivery_id: str | None) -> bool:
        return store_alerts.confirm_alert(self.conn, record_id, delivery_id)

    def eligible_alert_records(
        self,
        *,
        min_amount: float = 0.0,
        since_iso: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        return store_alerts.eligible_alert_records(
            self.conn, min_amount=min_amount, since_iso=since_iso, limit=limit
        )

    def unconfirmed_alert_claims(
        self, *, older_than_iso: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        return store_alerts.unconfirmed_alert_claims(
            self.conn, older_than_iso=older_than_iso, limit=limit
        )

    def alert_claim_metrics(self) -> dict[str, int]:
        return store_alerts.alert_claim_metrics(self.conn)

    # Sync cursors

    def ensure_sync_source(
        self,
        source_id: str,
        *,
        label: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        store_cursors.ensure_sync_source(self.conn, source_id, label=label, config=config)

    def get_sync_cursor(self, source_id: str) -> SyncCursor | None:
        return store_cursors.get_sync_cursor(self.conn, source_id)

    def advance_sync_cursor(
        self, source_id: str, *, expected: str | None, next_cursor: str
    ) -> bool:
        return store_cursors.advance_sync_cursor(
            self.conn, source_id, expected=expected, next_cursor=next_cursor
        )

    def mark_initial_sync_complete(self, source_id: str) -> bool:
        return store_cursors.mark_initial_sync_complete(self.conn, source_id)

    def list_sync_sources(self) -> list[dict[str, Any]]:
        return store_cursors.list_sync_sources(self.conn)

    def start_sync_attempt(self, source_id: str) -> int:
        return store_cursors.start_sync_attempt(self.conn, source_id)

    def finish_sync_attempt(
        self,
        attempt_id: int,
        *,
        ok: bool,
        pages: int,
        added: int,
        modified: int,
        removed: int,
        skipped: int,
        error: str | None = None,
    ) -> None:
        store_cursors.finish_sync_attempt(
            self.conn,
            attempt_id,
            ok=ok,
            pages=pages,
            added=added,
            modified=modified,
            removed=removed,
            skipped=skipped,
            error=error,
        )

    def sync_attempts(
        self, *, source_id: str | None = None, limit: int = 20
    ) -> list[dict[str, Any]]:
        return store_cursors.sync_attempts(self.conn, source_id=source_id, limit=limit)

    # Pending events

    def record_pending_event(
        self,
        *,
        group_key: str,
        event_id: str,
        payload: dict[str, Any],
        received_at_ms: int | None = None,
    ) -> bool:
        return store_pending_events.record_pending_event(
            self.conn,
            group_key=group_key,
            event_id=event_id,
            payload=payload,
            received_at_ms=received_at_ms,
        )

    def record_pending_events_batch(
        self, *, group_key: str, events: Sequence[dict[str, Any]]
    ) -> dict[str, int]:
        return store_pending_events.record_pending_events_batch(
            self.conn, group_key=group_key, events=events
        )

    def group_window(self, group_key: str) -> tuple[int | None, int | None, int]:
        return store_pending_events.group_window(self.conn, group_key)

    def claim_group(self, group_key: str, *, batch_id: str | None = None) -> list[PendingEvent]:
        return store_pending_events.claim_group(self.conn, group_key, batch_id=batch_id)

    def update_event_batch_status(
        self,
        batch_id: str,
        status: str,
        *,
        reply_delivery_id: str | None = None,
        error: str | None = None,
    ) -> None:
        store_pending_events.update_event_batch_status(
            self.conn, batch_id, status, reply_delivery_id=reply_delivery_id, error=error
        )

    def get_event_batch(self, batch_id: str) -> dict[str, Any] | None:
        return store_pending_events.get_event_batch(self.conn, batch_id)

    def mark_stale_event_batches_abandoned(self, *, older_than_iso: str, limit: int = 100) -> int:
        return store_pending_events.mark_stale_event_batches_abandoned(
            self.conn, older_than_iso=older_than_iso, limit=limit
        )

    def pending_groups_ready(
        self,
        *,
        window_ms: int,
        max_wait_ms: int,
        now_ms: int | None = None,
        limit: int = 25,
    ) -> list[str]:
        return store_pending_events.pending_groups_ready(
            self.conn,
            window_ms=window_ms,
            max_wait_ms=max_wait_ms,
            now_ms_value=now_ms,
            limit=limit,
        )

    def event_backlog(self, *, limit: int = 25) -> list[dict[str, Any]]:
        return store_pending_events.event_backlog(self.conn, limit=limit)

    def event_backlog_totals(self) -> dict[str, int]:
        return store_pending_events.event_backlog_totals(self.conn)

    def event_batch_status_counts(self, group_key: str | None = None) -> dict[str, int]:
        return store_pending_events.event_batch_status_counts(self.conn, group_key)

    def event_reliability_metrics(self, *, window_hours: float | None = None) -> dict[str, Any]:
        return store_pending_events.event_reliability_metrics(
            self.conn, window_hours=window_hours
        )

    def purge_claimed_events_before(self, cutoff_ms: int) -> int:
        return store_pending_events.purge_claimed_events_before(self.conn, cutoff_ms)

    def purge_claimed_events(self, max_age_ms: int) -> int:
        return store_pending_events.purge_claimed_events(self.conn, max_age_ms)

    # Worker state

    def get_worker_state(self) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT last_error, last_traceback, last_error_at, last_ok_at FROM worker_state WHERE id = 1"
        ).fetchone()
        if row is None:
            return None
        return {
            "last_error": row["last_error"],
            "last_traceback": row["last_traceback"],
            "last_error_at": row["last_error_at"],
            "last_ok_at": row["last_ok_at"],
        }

    def set_worker_error(self, error: str, traceback_text: str | None = None) -> None:
        self.conn.execute(
            """
            INSERT INTO worker_state(id, last_error, last_traceback, last_error_at)
            VALUES (1, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_error = excluded.last_error,
                last_traceback = excluded.last_traceback,
                last_error_at = excluded.last_error_at
            """,
            (error, traceback_text or traceback.format_exc(), now_iso()),
        )
        self.conn.commit()

    def set_worker_ok(self) -> None:
        self.conn.execute(
            """
            INSERT INTO worker_state(id, last_ok_at)
            VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_ok_at = excluded.last_ok_at
            """,
            (now_iso(),),
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()
