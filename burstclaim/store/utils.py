from __future__ import annotations

import datetime as dt
import sqlite3
import time


def now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_before(*, seconds: float = 0, milliseconds: float = 0) -> str:
    delta = dt.timedelta(seconds=seconds, milliseconds=milliseconds)
    return (dt.datetime.now(dt.UTC) - delta).isoformat()


def ms_to_iso(value_ms: int) -> str:
    return dt.datetime.fromtimestamp(value_ms / 1000.0, tz=dt.UTC).isoformat()


def rowcount(cur: sqlite3.Cursor) -> int:
    changes = cur.rowcount
    if changes is None or changes < 0:
        return 0
    return int(changes)
