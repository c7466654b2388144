from __future__ import annotations

import sqlite3
from typing import Any

from .records import LINEAGE_CTE, LINEAGE_NOTIFIED, lineage_notification, record_from_row
from .utils import now_iso


def try_claim_alert(conn: sqlite3.Connection, record_id: str) -> bool:
    """Claim the alert for a record; False when it or any lineage member already alerted."""
    now = now_iso()
    rows = conn.execute(
        f"""
        {LINEAGE_CTE}
        UPDATE records
        SET notified_at = :now, notify_attempts = notify_attempts + 1, updated_at = :now
        WHERE id = :record_id
          AND notified_at IS NULL
          AND NOT EXISTS ({LINEAGE_NOTIFIED})
        RETURNING id
        """,
        {"now": now, "record_id": record_id},
    ).fetchall()
    conn.commit()
    return bool(rows)


def release_alert_claim(conn: sqlite3.Connection, record_id: str) -> bool:
    rows = conn.execute(
        """
        UPDATE records
        SET notified_at = NULL, updated_at = ?
        WHERE id = ?
          AND notified_at IS NOT NULL
          AND notify_confirmed_at IS NULL
          AND notify_inherited_from IS NULL
        RETURNING id
        """,
        (now_iso(), record_id),
    ).fetchall()
    conn.commit()
    return bool(rows)


def confirm_alert(conn: sqlite3.Connection, record_id: str, delivery_id: str | None) -> bool:
    now = now_iso()
    rows = conn.execute(
        """
        UPDATE records
        SET notify_confirmed_at = ?, notify_delivery_id = ?, updated_at = ?
        WHERE id = ? AND notified_at IS NOT NULL
        RETURNING id
        """,
        (now, delivery_id, now, record_id),
    ).fetchall()
    conn.commit()
    return bool(rows)


def eligible_alert_records(
    conn: sqlite3.Connection,
    *,
    min_amount: float = 0.0,
    since_iso: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Unclaimed records whose lineage never alerted, least-attempted first."""
    params: list[Any] = [min_amount]
    since_clause = ""
    if since_iso:
        since_clause = "AND created_at >= ?"
        params.append(since_iso)
    cur = conn.execute(
        f"""
        SELECT *
        FROM records
        WHERE alert_eligible = 1
          AND notified_at IS NULL
          AND amount > ?
          {since_clause}
        ORDER BY notify_attempts ASC, created_at ASC, id ASC
        """,
        params,
    )
    items: list[dict[str, Any]] = []
    for row in cur.fetchall():
        if len(items) >= limit:
            break
        if lineage_notification(conn, str(row["id"])) is not None:
            continue
        items.append(record_from_row(row))
    return items


def unconfirmed_alert_claims(
    conn: sqlite3.Connection,
    *,
    older_than_iso: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    params: list[Any] = []
    older_clause = ""
    if older_than_iso:
        older_clause = "AND notified_at < ?"
        params.append(older_than_iso)
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT id, source_id, amount, merchant_name, name, notified_at, notify_attempts
        FROM records
        WHERE notified_at IS NOT NULL
          AND notify_confirmed_at IS NULL
          AND notify_inherited_from IS NULL
          {older_clause}
        ORDER BY notified_at ASC
        LIMIT ?
        """,
        params,
    ).fetchall()
    return [dict(row) for row in rows]


def alert_claim_metrics(conn: sqlite3.Connection) -> dict[str, int]:
    row = conn.execute(
        """
        SELECT
            SUM(CASE WHEN notified_at IS NOT NULL AND notify_confirmed_at IS NULL
                      AND notify_inherited_from IS NULL THEN 1 ELSE 0 END) AS claimed_unconfirmed,
            SUM(CASE WHEN notify_confirmed_at IS NOT NULL THEN 1 ELSE 0 END) AS confirmed,
            SUM(CASE WHEN notify_inherited_from IS NOT NULL THEN 1 ELSE 0 END) AS inherited,
            SUM(CASE WHEN alert_eligible = 1 AND notified_at IS NULL AND amount > 0
                     THEN 1 ELSE 0 END) AS unclaimed,
            COALESCE(SUM(CASE WHEN notify_attempts > 1 THEN notify_attempts - 1 ELSE 0 END), 0)
                AS reclaims
        FROM records
        """
    ).fetchone()
    tombstones = conn.execute(
        "SELECT COUNT(*) AS n FROM record_tombstones WHERE notified_at IS NOT NULL"
    ).fetchone()
    return {
        "claimed_unconfirmed": int((row["claimed_unconfirmed"] if row else 0) or 0),
        "confirmed": int((row["confirmed"] if row else 0) or 0),
        "inherited": int((row["inherited"] if row else 0) or 0),
        "unclaimed": int((row["unclaimed"] if row else 0) or 0),
        "reclaims": int((row["reclaims"] if row else 0) or 0),
        "tombstones": int((tombstones["n"] if tombstones else 0) or 0),
    }
