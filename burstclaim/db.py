from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from typing import Any

DEFAULT_DB_PATH = Path.home() / ".burstclaim.sqlite"
BUSY_TIMEOUT_MS = 5000
MIN_SQLITE_VERSION = (3, 35, 0)


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    if sqlite3.sqlite_version_info < MIN_SQLITE_VERSION:
        raise RuntimeError(
            f"SQLite {sqlite3.sqlite_version} is too old; "
            "UPDATE ... RETURNING needs SQLite 3.35 or newer."
        )
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        path,
        check_same_thread=check_same_thread,
        timeout=BUSY_TIMEOUT_MS / 1000.0,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS sync_sources (
            source_id TEXT PRIMARY KEY,
            label TEXT,
            cursor TEXT,
            cursor_advanced_at TEXT,
            initial_sync_completed_at TEXT,
            config_json TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_attempts (
            id INTEGER PRIMARY KEY,
            source_id TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            ok INTEGER NOT NULL DEFAULT 0,
            pages INTEGER NOT NULL DEFAULT 0,
            added INTEGER NOT NULL DEFAULT 0,
            modified INTEGER NOT NULL DEFAULT 0,
            removed INTEGER NOT NULL DEFAULT 0,
            skipped INTEGER NOT NULL DEFAULT 0,
            error TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_sync_attempts_source_started ON sync_attempts(source_id, started_at DESC);

        CREATE TABLE IF NOT EXISTS records (
            id TEXT PRIMARY KEY,
            source_id TEXT,
            account_id TEXT,
            amount REAL NOT NULL,
            iso_currency_code TEXT,
            name TEXT,
            merchant_name TEXT,
            category TEXT,
            date TEXT,
            datetime TEXT,
            pending INTEGER NOT NULL DEFAULT 0,
            supersedes_id TEXT,
            upstream_json TEXT,
            tags_json TEXT,
            notes TEXT,
            attachments_json TEXT,
            alert_eligible INTEGER NOT NULL DEFAULT 1,
            notified_at TEXT,
            notify_inherited_from TEXT,
            notify_delivery_id TEXT,
            notify_confirmed_at TEXT,
            notify_attempts INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_records_supersedes ON records(supersedes_id);
        CREATE INDEX IF NOT EXISTS idx_records_alert_queue ON records(alert_eligible, notified_at, created_at);
        CREATE INDEX IF NOT EXISTS idx_records_source_date ON records(source_id, date DESC);

        CREATE TABLE IF NOT EXISTS record_tombstones (
            record_id TEXT PRIMARY KEY,
            supersedes_id TEXT,
            notified_at TEXT,
            removed_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_record_tombstones_supersedes ON record_tombstones(supersedes_id);

        CREATE TABLE IF NOT EXISTS pending_events (
            id INTEGER PRIMARY KEY,
            group_key TEXT NOT NULL,
            event_id TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            received_at_ms INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            claimed_at TEXT,
            claim_batch_id TEXT,
            UNIQUE(group_key, event_id)
        );
        CREATE INDEX IF NOT EXISTS idx_pending_events_unclaimed ON pending_events(group_key, claimed_at, received_at_ms);
        CREATE INDEX IF NOT EXISTS idx_pending_events_batch ON pending_events(claim_batch_id);

        CREATE TABLE IF NOT EXISTS event_batches (
            batch_id TEXT PRIMARY KEY,
            group_key TEXT NOT NULL,
            claimed_at TEXT NOT NULL,
            event_count INTEGER NOT NULL,
            status TEXT NOT NULL,
            reply_delivery_id TEXT,
            error TEXT,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_event_batches_group ON event_batches(group_key, claimed_at DESC);
        CREATE INDEX IF NOT EXISTS idx_event_batches_status ON event_batches(status, updated_at DESC);

        CREATE TABLE IF NOT EXISTS event_ingest_stats (
            id INTEGER PRIMARY KEY,
            inserted_events INTEGER NOT NULL DEFAULT 0,
            skipped_events INTEGER NOT NULL DEFAULT 0,
            skipped_invalid INTEGER NOT NULL DEFAULT 0,
            skipped_duplicate INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS event_ingest_samples (
            id INTEGER PRIMARY KEY,
            created_at TEXT NOT NULL,
            inserted_events INTEGER NOT NULL DEFAULT 0,
            skipped_invalid INTEGER NOT NULL DEFAULT 0,
            skipped_duplicate INTEGER NOT NULL DEFAULT 0
        );
        CREATE INDEX IF NOT EXISTS idx_event_ingest_samples_created ON event_ingest_samples(created_at DESC);

        CREATE TABLE IF NOT EXISTS worker_state (
            id INTEGER PRIMARY KEY,
            last_error TEXT,
            last_traceback TEXT,
            last_error_at TEXT,
            last_ok_at TEXT
        );
        """
    )
    _ensure_column(conn, "records", "notify_attempts", "INTEGER NOT NULL DEFAULT 0")
    _ensure_column(conn, "records", "attachments_json", "TEXT")
    _ensure_column(conn, "sync_sources", "config_json", "TEXT")
    _ensure_column(conn, "sync_sources", "initial_sync_completed_at", "TEXT")
    conn.commit()


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, column_type: str) -> None:
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column in existing:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")


def to_json(data: Any) -> str:
    if data is None:
        payload: Any = {}
    else:
        payload = data
    return json.dumps(payload, ensure_ascii=False)


def from_json(text: str | None) -> Any:
    if not text:
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {}


def rows_to_dicts(rows: Iterable[sqlite3.Row]) -> list[dict[str, Any]]:
    return [dict(r) for r in rows]
