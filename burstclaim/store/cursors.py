from __future__ import annotations

import sqlite3
from typing import Any

from .. import db
from .types import SyncCursor
from .utils import now_iso


def ensure_sync_source(
    conn: sqlite3.Connection,
    source_id: str,
    *,
    label: str | None = None,
    config: dict[str, Any] | None = None,
) -> None:
    if not source_id.strip():
        raise ValueError("source_id is required")
    now = now_iso()
    conn.execute(
        """
        INSERT INTO sync_sources(source_id, label, config_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(source_id) DO UPDATE SET
            label = COALESCE(excluded.label, sync_sources.label),
            config_json = COALESCE(excluded.config_json, sync_sources.config_json),
            updated_at = excluded.updated_at
        """,
        (source_id, label, db.to_json(config) if config is not None else None, now, now),
    )
    conn.commit()


def get_sync_cursor(conn: sqlite3.Connection, source_id: str) -> SyncCursor | None:
    row = conn.execute(
        """
        SELECT source_id, cursor, cursor_advanced_at, initial_sync_completed_at
        FROM sync_sources WHERE source_id = ?
        """,
        (source_id,),
    ).fetchone()
    if row is None:
        return None
    return SyncCursor(
        source_id=str(row["source_id"]),
        cursor=row["cursor"],
        advanced_at=row["cursor_advanced_at"],
        initial_sync_completed_at=row["initial_sync_completed_at"],
    )


def advance_sync_cursor(
    conn: sqlite3.Connection,
    source_id: str,
    *,
    expected: str | None,
    next_cursor: str,
) -> bool:
    """Move the cursor only if it still holds the value this attempt started from."""
    now = now_iso()
    rows = conn.execute(
        """
        UPDATE sync_sources
        SET cursor = ?, cursor_advanced_at = ?, updated_at = ?
        WHERE source_id = ? AND cursor IS ?
        RETURNING source_id
        """,
        (next_cursor, now, now, source_id, expected),
    ).fetchall()
    conn.commit()
    return bool(rows)


def mark_initial_sync_complete(conn: sqlite3.Connection, source_id: str) -> bool:
    """Record that a sync attempt reached the end of the upstream history once."""
    now = now_iso()
    rows = conn.execute(
        """
        UPDATE sync_sources
        SET initial_sync_completed_at = ?, updated_at = ?
        WHERE source_id = ? AND initial_sync_completed_at IS NULL
        RETURNING source_id
        """,
        (now, now, source_id),
    ).fetchall()
    conn.commit()
    return bool(rows)


def list_sync_sources(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT
            s.source_id,
            s.label,
            s.cursor,
            s.cursor_advanced_at,
            s.initial_sync_completed_at,
            s.created_at,
            (
                SELECT MAX(a.finished_at) FROM sync_attempts a
                WHERE a.source_id = s.source_id AND a.ok = 1
            ) AS last_ok_at,
            (
                SELECT CASE WHEN a.ok = 0 THEN a.error END FROM sync_attempts a
                WHERE a.source_id = s.source_id
                ORDER BY a.started_at DESC, a.id DESC LIMIT 1
            ) AS last_error
        FROM sync_sources s
        ORDER BY s.source_id
        """
    ).fetchall()
    return db.rows_to_dicts(rows)


def start_sync_attempt(conn: sqlite3.Connection, source_id: str) -> int:
    cur = conn.execute(
        "INSERT INTO sync_attempts(source_id, started_at) VALUES (?, ?)",
        (source_id, now_iso()),
    )
    conn.commit()
    if cur.lastrowid is None:
        raise RuntimeError("Failed to record sync attempt")
    return int(cur.lastrowid)


def finish_sync_attempt(
    conn: sqlite3.Connection,
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
    conn.execute(
        """
        UPDATE sync_attempts
        SET finished_at = ?, ok = ?, pages = ?, added = ?, modified = ?, removed = ?,
            skipped = ?, error = ?
        WHERE id = ?
        """,
        (now_iso(), 1 if ok else 0, pages, added, modified, removed, skipped, error, attempt_id),
    )
    conn.commit()


def sync_attempts(
    conn: sqlite3.Connection, *, source_id: str | None = None, limit: int = 20
) -> list[dict[str, Any]]:
    params: list[Any] = []
    where = ""
    if source_id:
        where = "WHERE source_id = ?"
        params.append(source_id)
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT id, source_id, started_at, finished_at, ok, pages, added, modified,
               removed, skipped, error
        FROM sync_attempts
        {where}
        ORDER BY started_at DESC, id DESC
        LIMIT ?
        """,
        params,
    ).fetchall()
    return db.rows_to_dicts(rows)
