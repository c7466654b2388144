from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ExternalRecord:
    id: str
    amount: float
    account_id: str | None = None
    iso_currency_code: str | None = None
    name: str | None = None
    merchant_name: str | None = None
    category: str | None = None
    date: str | None = None
    datetime: str | None = None
    pending: bool = False
    supersedes_id: str | None = None
    upstream: dict[str, Any] = field(default_factory=dict)


@dataclass
class MergeResult:
    inserted: int = 0
    updated: int = 0
    removed: int = 0
    skipped: int = 0
    added_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "removed": self.removed,
            "skipped": self.skipped,
        }


@dataclass
class SyncCursor:
    source_id: str
    cursor: str | None
    advanced_at: str | None
    initial_sync_completed_at: str | None = None


@dataclass
class PendingEvent:
    id: int
    group_key: str
    event_id: str
    payload: dict[str, Any]
    received_at_ms: int
    claim_batch_id: str | None = None


@dataclass
class CombinedBatch:
    group_key: str
    batch_id: str | None
    text: str
    attachments: list[Any]
    event_ids: list[str]
    last_event_id: str | None
    has_reaction: bool = False
