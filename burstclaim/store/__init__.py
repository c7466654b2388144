from __future__ import annotations

from ._store import CoordinationStore
from .types import CombinedBatch, ExternalRecord, MergeResult, PendingEvent, SyncCursor

__all__ = [
    "CombinedBatch",
    "CoordinationStore",
    "ExternalRecord",
    "MergeResult",
    "PendingEvent",
    "SyncCursor",
]
