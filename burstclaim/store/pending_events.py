from __future__ import annotations

import datetime as dt
import sqlite3
import uuid
from collections.abc import Sequence
from typing import Any

from .. import db
from .types import CombinedBatch, PendingEvent
from .utils import ms_to_iso, now_iso, now_ms, rowcount

EVENT_BATCH_CLAIMED = "claimed"
EVENT_BATCH_COMPLETED = "completed"
EVENT_BATCH_NO_REPLY = "no_reply"
EVENT_BATCH_FAILED = "failed"
EVENT_BATCH_ABANDONED = "abandoned"

EVENT_BATCH_STATUSES = (
    EVENT_BATCH_CLAIMED,
    EVENT_BATCH_COMPLETED,
    EVENT_BATCH_NO_REPLY,
    EVENT_BATCH_FAILED,
    EVENT_BATCH_ABANDONED,
)


def new_event_id() -> str:
    """Id for an event delivered without one; such events never dedupe."""
    return f"local:{uuid.uuid4().hex}"


def _update_event_ingest_stats(
    conn: sqlite3.Connection,
    *,
    inserted_events: int,
    skipped_invalid: int,
    skipped_duplicate: int,
) -> None:
    now = now_iso()
    conn.execute(
        """
        INSERT INTO event_ingest_samples(
            created_at,
            inserted_events,
            skipped_invalid,
            skipped_duplicate
        )
        VALUES (?, ?, ?, ?)
        """,
        (now, inserted_events, skipped_invalid, skipped_duplicate),
    )
    conn.execute(
        """
        INSERT INTO event_ingest_stats(
            id,
            inserted_events,
            skipped_events,
            skipped_invalid,
            skipped_duplicate,
            updated_at
        )
        VALUES (1, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            inserted_events = inserted_events + excluded.inserted_events,
            skipped_events = skipped_events + excluded.skipped_events,
            skipped_invalid = skipped_invalid + excluded.skipped_invalid,
            skipped_duplicate = skipped_duplicate + excluded.skipped_duplicate,
            updated_at = excluded.updated_at
        """,
        (
            inserted_events,
            skipped_invalid + skipped_duplicate,
            skipped_invalid,
            skipped_duplicate,
            now,
        ),
    )


def _insert_event(
    conn: sqlite3.Connection,
    *,
    group_key: str,
    event_id: str,
    payload: dict[str, Any],
    received_at_ms: int,
    created_at: str,
) -> bool:
    rows = conn.execute(
        """
        INSERT INTO pending_events(group_key, event_id, payload_json, received_at_ms, created_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(group_key, event_id) DO NOTHING
        RETURNING id
        """,
        (group_key, event_id, db.to_json(payload), received_at_ms, created_at),
    ).fetchall()
    return bool(rows)


def record_pending_event(
    conn: sqlite3.Connection,
    *,
    group_key: str,
    event_id: str,
    payload: dict[str, Any],
    received_at_ms: int | None = None,
) -> bool:
    if not group_key.strip():
        raise ValueError("group_key is required")
    if not event_id.strip():
        raise ValueError("event_id is required")
    with conn:
        inserted = _insert_event(
            conn,
            group_key=group_key,
            event_id=event_id,
            payload=payload,
            received_at_ms=received_at_ms if received_at_ms is not None else now_ms(),
            created_at=now_iso(),
        )
        _update_event_ingest_stats(
            conn,
            inserted_events=1 if inserted else 0,
            skipped_invalid=0,
            skipped_duplicate=0 if inserted else 1,
        )
    return inserted


def record_pending_events_batch(
    conn: sqlite3.Connection,
    *,
    group_key: str,
    events: Sequence[dict[str, Any]],
) -> dict[str, int]:
    if not group_key.strip():
        raise ValueError("group_key is required")
    inserted = 0
    skipped_invalid = 0
    skipped_duplicate = 0
    now = now_iso()
    default_ms = now_ms()
    with conn:
        for event in events:
            payload = event.get("payload")
            if not isinstance(payload, dict):
                skipped_invalid += 1
                continue
            event_id = str(event.get("event_id") or "").strip() or new_event_id()
            received_at_ms = event.get("received_at_ms")
            try:
                received = int(received_at_ms) if received_at_ms is not None else default_ms
            except (TypeError, ValueError):
                skipped_invalid += 1
                continue
            if _insert_event(
                conn,
                group_key=group_key,
                event_id=event_id,
                payload=payload,
                received_at_ms=received,
                created_at=now,
            ):
                inserted += 1
            else:
                skipped_duplicate += 1
        _update_event_ingest_stats(
            conn,
            inserted_events=inserted,
            skipped_invalid=skipped_invalid,
            skipped_duplicate=skipped_duplicate,
        )
    return {"inserted": inserted, "skipped": skipped_invalid + skipped_duplicate}


def group_window(conn: sqlite3.Connection, group_key: str) -> tuple[int | None, int | None, int]:
    row = conn.execute(
        """
        SELECT MIN(received_at_ms) AS oldest, MAX(received_at_ms) AS newest, COUNT(*) AS n
        FROM pending_events
        WHERE group_key = ? AND claimed_at IS NULL
        """,
        (group_key,),
    ).fetchone()
    if row is None or not row["n"]:
        return None, None, 0
    return int(row["oldest"]), int(row["newest"]), int(row["n"])


def claim_group(
    conn: sqlite3.Connection, group_key: str, *, batch_id: str | None = None
) -> list[PendingEvent]:
    """Claim every unclaimed event of a group in one conditional write.

    Concurrent callers split the rows between them and never share one; the
    loser of a race gets an empty list.
    """
    batch_id = batch_id or uuid.uuid4().hex
    now = now_iso()
    with conn:
        rows = conn.execute(
            """
            UPDATE pending_events
            SET claimed_at = ?, claim_batch_id = ?
            WHERE group_key = ? AND claimed_at IS NULL
            RETURNING id, group_key, event_id, payload_json, received_at_ms, claim_batch_id
            """,
            (now, batch_id, group_key),
        ).fetchall()
        if rows:
            conn.execute(
                """
                INSERT INTO event_batches(
                    batch_id, group_key, claimed_at, event_count, status, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (batch_id, group_key, now, len(rows), EVENT_BATCH_CLAIMED, now),
            )
    events = [
        PendingEvent(
            id=int(row["id"]),
            group_key=str(row["group_key"]),
            event_id=str(row["event_id"]),
            payload=_payload_dict(row["payload_json"]),
            received_at_ms=int(row["received_at_ms"]),
            claim_batch_id=row["claim_batch_id"],
        )
        for row in rows
    ]
    events.sort(key=lambda e: (e.received_at_ms, e.id))
    return events


def _payload_dict(text: str | None) -> dict[str, Any]:
    payload = db.from_json(text)
    return payload if isinstance(payload, dict) else {}


def combine_batch(events: Sequence[PendingEvent]) -> CombinedBatch:
    texts: list[str] = []
    attachments: list[Any] = []
    reaction_type: str | None = None
    has_reaction = False
    for event in events:
        payload = event.payload
        text = payload.get("text")
        if payload.get("is_reaction"):
            has_reaction = True
            reaction_type = reaction_type or _opt_text(payload.get("reaction_type"))
            if not text and reaction_type:
                text = f"[reacted with {reaction_type}]"
        if isinstance(text, str) and text.strip():
            texts.append(text)
        items = payload.get("attachments")
        if isinstance(items, list):
            attachments.extend(items)
    return CombinedBatch(
        group_key=events[0].group_key if events else "",
        batch_id=events[0].claim_batch_id if events else None,
        text="\n".join(texts),
        attachments=attachments,
        event_ids=[e.event_id for e in events],
        last_event_id=events[-1].event_id if events else None,
        has_reaction=has_reaction,
    )


def _opt_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def update_event_batch_status(
    conn: sqlite3.Connection,
    batch_id: str,
    status: str,
    *,
    reply_delivery_id: str | None = None,
    error: str | None = None,
) -> None:
    if status not in EVENT_BATCH_STATUSES:
        raise ValueError(f"unknown batch status: {status}")
    conn.execute(
        """
        UPDATE event_batches
        SET status = ?,
            reply_delivery_id = COALESCE(?, reply_delivery_id),
            error = ?,
            updated_at = ?
        WHERE batch_id = ?
        """,
        (status, reply_delivery_id, error, now_iso(), batch_id),
    )
    conn.commit()


def get_event_batch(conn: sqlite3.Connection, batch_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM event_batches WHERE batch_id = ?", (batch_id,)).fetchone()
    return dict(row) if row is not None else None


def mark_stale_event_batches_abandoned(
    conn: sqlite3.Connection,
    *,
    older_than_iso: str,
    limit: int = 100,
) -> int:
    now = now_iso()
    cur = conn.execute(
        """
        WITH candidates AS (
            SELECT batch_id
            FROM event_batches
            WHERE status = ? AND updated_at < ?
            ORDER BY updated_at
            LIMIT ?
        )
        UPDATE event_batches
        SET status = ?, error = COALESCE(error, 'worker did not finish'), updated_at = ?
        WHERE batch_id IN (SELECT batch_id FROM candidates)
        """,
        (EVENT_BATCH_CLAIMED, older_than_iso, limit, EVENT_BATCH_ABANDONED, now),
    )
    conn.commit()
    return rowcount(cur)


def pending_groups_ready(
    conn: sqlite3.Connection,
    *,
    window_ms: int,
    max_wait_ms: int,
    now_ms_value: int | None = None,
    limit: int = 25,
) -> list[str]:
    current = now_ms_value if now_ms_value is not None else now_ms()
    rows = conn.execute(
        """
        SELECT group_key, MIN(received_at_ms) AS oldest, MAX(received_at_ms) AS newest
        FROM pending_events
        WHERE claimed_at IS NULL
        GROUP BY group_key
        HAVING MAX(received_at_ms) <= ? OR MIN(received_at_ms) <= ?
        ORDER BY oldest ASC
        LIMIT ?
        """,
        (current - window_ms, current - max_wait_ms, limit),
    ).fetchall()
    return [str(row["group_key"]) for row in rows if row["group_key"]]


def event_backlog(conn: sqlite3.Connection, *, limit: int = 25) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT
            group_key,
            COUNT(*) AS pending,
            MIN(received_at_ms) AS oldest_received_at_ms,
            MAX(received_at_ms) AS newest_received_at_ms
        FROM pending_events
        WHERE claimed_at IS NULL
        GROUP BY group_key
        ORDER BY newest_received_at_ms DESC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return db.rows_to_dicts(rows)


def event_backlog_totals(conn: sqlite3.Connection) -> dict[str, int]:
    row = conn.execute(
        """
        SELECT COUNT(DISTINCT group_key) AS groups, COUNT(*) AS pending
        FROM pending_events
        WHERE claimed_at IS NULL
        """
    ).fetchone()
    if row is None:
        return {"groups": 0, "pending": 0}
    return {"groups": int(row["groups"] or 0), "pending": int(row["pending"] or 0)}


def event_batch_status_counts(
    conn: sqlite3.Connection, group_key: str | None = None
) -> dict[str, int]:
    params: list[Any] = []
    where = ""
    if group_key:
        where = "WHERE group_key = ?"
        params.append(group_key)
    rows = conn.execute(
        f"SELECT status, COUNT(*) AS n FROM event_batches {where} GROUP BY status",
        params,
    ).fetchall()
    counts = {status: 0 for status in EVENT_BATCH_STATUSES}
    for row in rows:
        status = str(row["status"] or "")
        if status in counts:
            counts[status] += int(row["n"] or 0)
    return counts


def event_reliability_metrics(
    conn: sqlite3.Connection, *, window_hours: float | None = None
) -> dict[str, Any]:
    cutoff_iso: str | None = None
    if window_hours is not None:
        cutoff_iso = (dt.datetime.now(dt.UTC) - dt.timedelta(hours=window_hours)).isoformat()

    if cutoff_iso is None:
        ingest = conn.execute(
            """
            SELECT inserted_events, skipped_events, skipped_invalid, skipped_duplicate
            FROM event_ingest_stats
            WHERE id = 1
            """
        ).fetchone()
    else:
        ingest = conn.execute(
            """
            SELECT
                COALESCE(SUM(inserted_events), 0) AS inserted_events,
                COALESCE(SUM(skipped_invalid + skipped_duplicate), 0) AS skipped_events,
                COALESCE(SUM(skipped_invalid), 0) AS skipped_invalid,
                COALESCE(SUM(skipped_duplicate), 0) AS skipped_duplicate
            FROM event_ingest_samples
            WHERE created_at >= ?
            """,
            (cutoff_iso,),
        ).fetchone()

    inserted_events = int((ingest["inserted_events"] if ingest else 0) or 0)
    skipped_events = int((ingest["skipped_events"] if ingest else 0) or 0)
    skipped_invalid = int((ingest["skipped_invalid"] if ingest else 0) or 0)
    skipped_duplicate = int((ingest["skipped_duplicate"] if ingest else 0) or 0)
    dropped_denominator = inserted_events + skipped_invalid
    dropped_event_rate = (
        float(skipped_invalid) / float(dropped_denominator) if dropped_denominator else 0.0
    )

    batch_query = "SELECT status, COUNT(*) AS n, SUM(event_count) AS events FROM event_batches"
    if cutoff_iso is None:
        batch_rows = conn.execute(batch_query + " GROUP BY status").fetchall()
    else:
        batch_rows = conn.execute(
            batch_query + " WHERE updated_at >= ? GROUP BY status", (cutoff_iso,)
        ).fetchall()
    batches = {status: 0 for status in EVENT_BATCH_STATUSES}
    claimed_events = 0
    for row in batch_rows:
        status = str(row["status"] or "")
        if status in batches:
            batches[status] += int(row["n"] or 0)
        claimed_events += int(row["events"] or 0)
    succeeded = batches[EVENT_BATCH_COMPLETED] + batches[EVENT_BATCH_NO_REPLY]
    terminal = succeeded + batches[EVENT_BATCH_FAILED] + batches[EVENT_BATCH_ABANDONED]
    reply_success_rate = float(succeeded) / float(terminal) if terminal else 1.0
    events_per_batch = (
        float(claimed_events) / float(sum(batches.values())) if sum(batches.values()) else 0.0
    )

    return {
        "formulas": {
            "reply_success_rate": "(completed + no_reply) / terminal_batches",
            "dropped_event_rate": "skipped_invalid / (inserted_events + skipped_invalid)",
            "events_per_batch": "claimed_events / batches",
        },
        "counts": {
            "inserted_events": inserted_events,
            "skipped_events": skipped_events,
            "skipped_invalid": skipped_invalid,
            "skipped_duplicate": skipped_duplicate,
            "claimed_events": claimed_events,
            "terminal_batches": terminal,
            **{f"{status}_batches": n for status, n in batches.items()},
        },
        "rates": {
            "reply_success_rate": reply_success_rate,
            "dropped_event_rate": dropped_event_rate,
            "events_per_batch": events_per_batch,
        },
        "window_hours": window_hours,
    }


def purge_claimed_events_before(conn: sqlite3.Connection, cutoff_ms: int) -> int:
    cutoff_iso = ms_to_iso(cutoff_ms)
    conn.execute("DELETE FROM event_ingest_samples WHERE created_at < ?", (cutoff_iso,))
    cur = conn.execute(
        """
        DELETE FROM pending_events
        WHERE claimed_at IS NOT NULL AND received_at_ms < ?
        """,
        (cutoff_ms,),
    )
    conn.commit()
    return rowcount(cur)


def purge_claimed_events(conn: sqlite3.Connection, max_age_ms: int) -> int:
    if max_age_ms <= 0:
        return 0
    return purge_claimed_events_before(conn, now_ms() - max_age_ms)
