from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from ..store.pending_events import new_event_id
from ..webhook_http import BodyError, internal_error_payload, read_json_object

logger = logging.getLogger(__name__)

INBOUND_MESSAGE_EVENTS = {"message_inbound"}
INBOUND_REACTION_EVENTS = {"message_reaction"}


class _WebhookHandler(Protocol):
    headers: Any
    rfile: Any

    def _send_json(self, payload: dict[str, Any], status: int = 200) -> None: ...


class _GroupFlusher(Protocol):
    def note_activity(self, group_key: str) -> None: ...


class _Store(Protocol):
    def record_pending_events_batch(
        self, *, group_key: str, events: list[dict[str, Any]]
    ) -> dict[str, int]: ...

    def event_backlog(self, *, limit: int = 25) -> list[dict[str, Any]]: ...

    def event_backlog_totals(self) -> dict[str, int]: ...

    def close(self) -> None: ...


def normalize_inbound_event(item: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
    """Map one inbound delivery to (group_key, event entry), or None to ignore it.

    Accepts either the native shape (group_key, event_id, payload) or a
    messaging relay callback (event, contact, text, attachments, message_id).
    """
    group_key = item.get("group_key")
    if group_key is not None:
        if not isinstance(group_key, str) or not group_key.strip():
            raise BodyError("group_key must be a non-empty string", status=400)
        payload = item.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise BodyError("payload must be an object", status=400)
        event_id = item.get("event_id")
        if event_id is not None and not isinstance(event_id, str):
            raise BodyError("event_id must be string", status=400)
        entry: dict[str, Any] = {
            "event_id": event_id or new_event_id(),
            "payload": payload,
        }
        return group_key.strip(), entry

    event_type = str(item.get("event") or item.get("alert_type") or "")
    contact = item.get("contact") or item.get("recipient")
    if not isinstance(contact, str) or not contact.strip():
        return None
    message_id = item.get("message_id")
    if event_type in INBOUND_MESSAGE_EVENTS:
        text = item.get("text") or ""
        attachments = item.get("attachments") or []
        if not isinstance(attachments, list):
            raise BodyError("attachments must be a list", status=400)
        if not text and not attachments:
            return None
        payload = {"text": text or None, "attachments": attachments, "is_reaction": False}
    elif event_type in INBOUND_REACTION_EVENTS:
        if item.get("reaction_direction") != "inbound":
            return None
        reaction = item.get("reaction_type") or item.get("reaction")
        if not reaction:
            return None
        payload = {
            "text": f"[User reacted with {reaction} to your message]",
            "attachments": [],
            "is_reaction": True,
            "reaction_type": str(reaction),
        }
    else:
        return None
    payload["message_id"] = message_id
    event_id = str(message_id) if message_id else new_event_id()
    return contact.strip(), {"event_id": event_id, "payload": payload}


def handle_get(handler: Any, store: Any, path: str, query: str) -> bool:
    if path != "/api/events/status":
        return False
    handler._send_json(
        {
            "items": store.event_backlog(limit=25),
            "totals": store.event_backlog_totals(),
        }
    )
    return True


def handle_post(
    handler: _WebhookHandler,
    *,
    path: str,
    store_factory: Callable[[str], _Store],
    db_path: str,
    flusher: _GroupFlusher | None,
) -> bool:
    if path != "/api/events":
        return False

    try:
        body = read_json_object(handler)
        items = body.get("events")
        if items is None:
            items = [body]
        if not isinstance(items, list):
            raise BodyError("events must be a list", status=400)
        by_group: dict[str, list[dict[str, Any]]] = {}
        ignored = 0
        for item in items:
            if not isinstance(item, dict):
                raise BodyError("event must be an object", status=400)
            normalized = normalize_inbound_event(item)
            if normalized is None:
                ignored += 1
                continue
            group_key, entry = normalized
            by_group.setdefault(group_key, []).append(entry)
    except BodyError as exc:
        handler._send_json(exc.payload(), status=exc.status)
        return True

    if not by_group:
        handler._send_json({"inserted": 0, "received": len(items), "ignored": ignored})
        return True

    try:
        store: _Store = store_factory(db_path)
    except Exception as exc:  # pragma: no cover
        handler._send_json(internal_error_payload(exc), status=500)
        return True

    try:
        inserted = 0
        for group_key, entries in by_group.items():
            result = store.record_pending_events_batch(group_key=group_key, events=entries)
            inserted += int(result["inserted"])
        if flusher is not None:
            for group_key in by_group:
                flusher.note_activity(group_key)
        handler._send_json({"inserted": inserted, "received": len(items), "ignored": ignored})
        return True
    except Exception as exc:
        logger.exception("event ingest failed", exc_info=exc)
        handler._send_json(internal_error_payload(exc), status=500)
        return True
    finally:
        store.close()
