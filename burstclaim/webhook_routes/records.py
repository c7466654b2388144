from __future__ import annotations

import logging
from typing import Any, Protocol

from ..webhook_http import BodyError, read_json_object

logger = logging.getLogger(__name__)

TRANSACTIONS_WEBHOOK_TYPE = "TRANSACTIONS"
SYNC_WEBHOOK_CODES = {"SYNC_UPDATES_AVAILABLE", "DEFAULT_UPDATE", "INITIAL_UPDATE"}


class _WebhookHandler(Protocol):
    headers: Any
    rfile: Any

    def _send_json(self, payload: dict[str, Any], status: int = 200) -> None: ...


class _SyncTrigger(Protocol):
    def trigger(self, source_id: str) -> bool: ...


def resolve_source_id(body: dict[str, Any]) -> str | None:
    """Return the source to sync for a change notification, or None to ignore it.

    Accepts {"source_id": ...} or a provider notification carrying
    webhook_type, webhook_code and item_id.
    """
    source_id = body.get("source_id")
    if source_id is not None:
        if not isinstance(source_id, str) or not source_id.strip():
            raise BodyError("source_id must be a non-empty string", status=400)
        return source_id.strip()
    webhook_type = str(body.get("webhook_type") or "")
    webhook_code = str(body.get("webhook_code") or "")
    if webhook_type != TRANSACTIONS_WEBHOOK_TYPE or webhook_code not in SYNC_WEBHOOK_CODES:
        return None
    item_id = body.get("item_id")
    if not isinstance(item_id, str) or not item_id.strip():
        raise BodyError("item_id required", status=400)
    return item_id.strip()


def handle_post(
    handler: _WebhookHandler,
    *,
    path: str,
    sync_trigger: _SyncTrigger | None,
) -> bool:
    if path != "/api/records/webhook":
        return False
    try:
        body = read_json_object(handler)
        source_id = resolve_source_id(body)
    except BodyError as exc:
        handler._send_json(exc.payload(), status=exc.status)
        return True
    if source_id is None:
        handler._send_json({"received": True, "ignored": True})
        return True
    if sync_trigger is None:
        handler._send_json({"error": "sync not configured"}, status=503)
        return True
    started = sync_trigger.trigger(source_id)
    logger.info(
        "records change notification",
        extra={"source_id": source_id, "started": started},
    )
    handler._send_json(
        {"received": True, "source_id": source_id, "started": started},
        status=202 if started else 200,
    )
    return True
