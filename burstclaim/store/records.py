from __future__ import annotations

import logging
import math
import sqlite3
from collections.abc import Iterable, Mapping
from typing import Any

from .. import db
from ..errors import MalformedRecordError
from .types import ExternalRecord, MergeResult
from .utils import now_iso

logger = logging.getLogger(__name__)

UPSERT_INSERTED = "inserted"
UPSERT_UPDATED = "updated"

# Every live record or tombstone reachable from :record_id through supersedes_id
# links, in either direction. Tombstones keep the links of removed records.
LINEAGE_CTE = """
    WITH RECURSIVE
        ancestors(id) AS (
            SELECT :record_id
            UNION
            SELECT COALESCE(r.supersedes_id, t.supersedes_id)
            FROM ancestors a
            LEFT JOIN records r ON r.id = a.id
            LEFT JOIN record_tombstones t ON t.record_id = a.id
            WHERE COALESCE(r.supersedes_id, t.supersedes_id) IS NOT NULL
        ),
        lineage(id) AS (
            SELECT id FROM ancestors
            UNION
            SELECT r.id FROM records r JOIN lineage l ON r.supersedes_id = l.id
            UNION
            SELECT t.record_id FROM record_tombstones t JOIN lineage l ON t.supersedes_id = l.id
        )
"""

LINEAGE_NOTIFIED = """
    SELECT l.id AS id, COALESCE(r.notified_at, t.notified_at) AS notified_at
    FROM lineage l
    LEFT JOIN records r ON r.id = l.id
    LEFT JOIN record_tombstones t ON t.record_id = l.id
    WHERE COALESCE(r.notified_at, t.notified_at) IS NOT NULL
"""


def lineage_notification(conn: sqlite3.Connection, record_id: str) -> tuple[str, str] | None:
    """Return (member id, notified_at) of the earliest alerted member of a lineage."""
    row = conn.execute(
        f"{LINEAGE_CTE} {LINEAGE_NOTIFIED} ORDER BY notified_at ASC, id ASC LIMIT 1",
        {"record_id": record_id},
    ).fetchone()
    if row is None:
        return None
    return str(row["id"]), str(row["notified_at"])


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _category(data: Mapping[str, Any]) -> str | None:
    category = data.get("category")
    if isinstance(category, str):
        return _opt_str(category)
    if isinstance(category, list) and category:
        return _opt_str(category[0])
    pfc = data.get("personal_finance_category")
    if isinstance(pfc, Mapping):
        return _opt_str(pfc.get("primary"))
    return None


def parse_external_record(data: Any) -> ExternalRecord:
    if not isinstance(data, Mapping):
        raise MalformedRecordError("record must be an object")
    record_id = _opt_str(data.get("id") or data.get("transaction_id"))
    if not record_id:
        raise MalformedRecordError("record id is required")
    raw_amount = data.get("amount")
    if isinstance(raw_amount, bool) or raw_amount is None:
        raise MalformedRecordError(f"record {record_id} has no numeric amount")
    try:
        amount = float(raw_amount)
    except (TypeError, ValueError) as exc:
        raise MalformedRecordError(f"record {record_id} has no numeric amount") from exc
    if not math.isfinite(amount):
        raise MalformedRecordError(f"record {record_id} has no numeric amount")
    supersedes_id = _opt_str(data.get("supersedes_id") or data.get("pending_transaction_id"))
    if supersedes_id == record_id:
        supersedes_id = None
    return ExternalRecord(
        id=record_id,
        amount=amount,
        account_id=_opt_str(data.get("account_id")),
        iso_currency_code=_opt_str(data.get("iso_currency_code")),
        name=_opt_str(data.get("name")),
        merchant_name=_opt_str(data.get("merchant_name")),
        category=_category(data),
        date=_opt_str(data.get("date")),
        datetime=_opt_str(data.get("datetime")),
        pending=bool(data.get("pending")),
        supersedes_id=supersedes_id,
        upstream=dict(data),
    )


def _inherited_notification(
    conn: sqlite3.Connection, supersedes_id: str | None
) -> tuple[str, str] | None:
    if not supersedes_id:
        return None
    return lineage_notification(conn, supersedes_id)


def _upsert(
    conn: sqlite3.Connection,
    record: ExternalRecord,
    *,
    source_id: str | None,
    alert_eligible: bool,
    now: str,
) -> str:
    exists = (
        conn.execute("SELECT 1 FROM records WHERE id = ?", (record.id,)).fetchone() is not None
    )
    inherited = None if exists else _inherited_notification(conn, record.supersedes_id)
    inherited_from, inherited_at = inherited if inherited else (None, None)
    rows = conn.execute(
        """
        INSERT INTO records(
            id,
            source_id,
            account_id,
            amount,
            iso_currency_code,
            name,
            merchant_name,
            category,
            date,
            datetime,
            pending,
            supersedes_id,
            upstream_json,
            tags_json,
            alert_eligible,
            notified_at,
            notify_inherited_from,
            created_at,
            updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, '[]', ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            source_id = COALESCE(excluded.source_id, records.source_id),
            account_id = excluded.account_id,
            amount = excluded.amount,
            iso_currency_code = excluded.iso_currency_code,
            name = excluded.name,
            merchant_name = excluded.merchant_name,
            category = excluded.category,
            date = excluded.date,
            datetime = excluded.datetime,
            pending = excluded.pending,
            supersedes_id = excluded.supersedes_id,
            upstream_json = excluded.upstream_json,
            updated_at = excluded.updated_at
        RETURNING id
        """,
        (
            record.id,
            source_id,
            record.account_id,
            record.amount,
            record.iso_currency_code,
            record.name,
            record.merchant_name,
            record.category,
            record.date,
            record.datetime,
            1 if record.pending else 0,
            record.supersedes_id,
            db.to_json(record.upstream),
            1 if alert_eligible else 0,
            inherited_at,
            inherited_from,
            now,
            now,
        ),
    ).fetchall()
    if not rows:
        raise RuntimeError(f"Failed to upsert record {record.id}")
    if exists:
        return UPSERT_UPDATED
    if inherited:
        logger.info(
            "record inherited notification from its lineage",
            extra={"record_id": record.id, "inherited_from": inherited_from},
        )
    return UPSERT_INSERTED


def upsert_record(
    conn: sqlite3.Connection,
    record: ExternalRecord,
    *,
    source_id: str | None = None,
    alert_eligible: bool = True,
) -> str:
    with conn:
        return _upsert(
            conn, record, source_id=source_id, alert_eligible=alert_eligible, now=now_iso()
        )


def _remove(conn: sqlite3.Connection, record_id: str, *, now: str) -> bool:
    rows = conn.execute(
        "DELETE FROM records WHERE id = ? RETURNING notified_at, supersedes_id",
        (record_id,),
    ).fetchall()
    if not rows:
        return False
    row = rows[0]
    # Removed records that alerted or link two lineage members keep a tombstone.
    if row["notified_at"] or row["supersedes_id"]:
        conn.execute(
            """
            INSERT INTO record_tombstones(record_id, supersedes_id, notified_at, removed_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(record_id) DO UPDATE SET
                supersedes_id = COALESCE(excluded.supersedes_id, record_tombstones.supersedes_id),
                notified_at = COALESCE(record_tombstones.notified_at, excluded.notified_at),
                removed_at = excluded.removed_at
            """,
            (record_id, row["supersedes_id"], row["notified_at"], now),
        )
    return True


def remove_record(conn: sqlite3.Connection, record_id: str) -> bool:
    with conn:
        return _remove(conn, record_id, now=now_iso())


def _removed_id(item: Any) -> str | None:
    if isinstance(item, str):
        return _opt_str(item)
    if isinstance(item, Mapping):
        return _opt_str(item.get("id") or item.get("transaction_id"))
    return None


def apply_record_changes(
    conn: sqlite3.Connection,
    *,
    added: Iterable[Any] = (),
    modified: Iterable[Any] = (),
    removed: Iterable[Any] = (),
    source_id: str | None = None,
    alert_eligible: bool = True,
) -> MergeResult:
    """Merge one page of upstream changes in a single transaction.

    Added records go first, then modified, then removed, so a final record can
    inherit the notification of a provisional record removed in the same page.
    """
    result = MergeResult()
    now = now_iso()
    with conn:
        for kind, items in (("added", added), ("modified", modified)):
            for item in items:
                try:
                    record = parse_external_record(item)
                except MalformedRecordError as exc:
                    result.skipped += 1
                    logger.warning(
                        "skipping malformed upstream record",
                        extra={"change": kind, "source_id": source_id, "error": str(exc)},
                    )
                    continue
                outcome = _upsert(
                    conn,
                    record,
                    source_id=source_id,
                    alert_eligible=alert_eligible,
                    now=now,
                )
                if outcome == UPSERT_INSERTED:
                    result.inserted += 1
                else:
                    result.updated += 1
                if kind == "added":
                    result.added_ids.append(record.id)
        for item in removed:
            record_id = _removed_id(item)
            if not record_id:
                result.skipped += 1
                logger.warning(
                    "skipping malformed removal",
                    extra={"source_id": source_id},
                )
                continue
            if _remove(conn, record_id, now=now):
                result.removed += 1
    return result


def record_from_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["tags"] = db.from_json(item.pop("tags_json", None)) or []
    item["attachments"] = db.from_json(item.pop("attachments_json", None)) or []
    item["upstream"] = db.from_json(item.pop("upstream_json", None))
    item["pending"] = bool(item["pending"])
    item["alert_eligible"] = bool(item["alert_eligible"])
    return item


def get_record(conn: sqlite3.Connection, record_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM records WHERE id = ?", (record_id,)).fetchone()
    if row is None:
        return None
    return record_from_row(row)


def list_records(
    conn: sqlite3.Connection,
    *,
    source_id: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    params: list[Any] = []
    where = ""
    if source_id:
        where = "WHERE source_id = ?"
        params.append(source_id)
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT id, source_id, amount, iso_currency_code, name, merchant_name, date,
               pending, supersedes_id, notified_at, notify_confirmed_at, notes
        FROM records
        {where}
        ORDER BY COALESCE(datetime, date) DESC, created_at DESC
        LIMIT ?
        """,
        params,
    ).fetchall()
    return db.rows_to_dicts(rows)


def set_record_notes(conn: sqlite3.Connection, record_id: str, notes: str | None) -> bool:
    with conn:
        cur = conn.execute(
            "UPDATE records SET notes = ? WHERE id = ?",
            (notes, record_id),
        )
    return cur.rowcount > 0


def set_record_tags(conn: sqlite3.Connection, record_id: str, tags: Iterable[str]) -> bool:
    cleaned = sorted({t.strip() for t in tags if t and t.strip()})
    with conn:
        cur = conn.execute(
            "UPDATE records SET tags_json = ? WHERE id = ?",
            (db.to_json(cleaned), record_id),
        )
    return cur.rowcount > 0


def add_record_attachment(
    conn: sqlite3.Connection, record_id: str, attachment: dict[str, Any]
) -> bool:
    with conn:
        row = conn.execute(
            "SELECT attachments_json FROM records WHERE id = ?", (record_id,)
        ).fetchone()
        if row is None:
            return False
        attachments = db.from_json(row["attachments_json"]) or []
        if not isinstance(attachments, list):
            attachments = []
        attachments.append(attachment)
        conn.execute(
            "UPDATE records SET attachments_json = ? WHERE id = ?",
            (db.to_json(attachments), record_id),
        )
    return True
