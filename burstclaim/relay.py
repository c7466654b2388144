from __future__ import annotations

import logging
from typing import Any, Protocol

from .config import BurstclaimConfig
from .errors import DeliveryError
from .http_client import build_base_url, request_json

logger = logging.getLogger(__name__)

SEND_PATH = "/api/v1/message/send/"


class NotificationDispatcher(Protocol):
    def deliver(self, recipient: str, payload: dict[str, Any]) -> str: ...


class HttpRelayDispatcher:
    """Sends outbound messages through an HTTP messaging relay."""

    def __init__(
        self,
        base_url: str,
        *,
        auth_key: str,
        secret_key: str,
        sender_name: str | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self.base_url = build_base_url(base_url)
        self.auth_key = auth_key
        self.secret_key = secret_key
        self.sender_name = sender_name
        self.timeout_s = timeout_s

    def deliver(self, recipient: str, payload: dict[str, Any]) -> str:
        text = str(payload.get("text") or "")
        body: dict[str, Any] = {"recipient": recipient, "text": text}
        if self.sender_name:
            body["sender_name"] = self.sender_name
        for key in ("passthrough", "attachments", "reply_to_id"):
            if payload.get(key):
                body[key] = payload[key]
        headers = {"Authorization": self.auth_key, "Loop-Secret-Key": self.secret_key}
        try:
            resp = request_json(
                "POST",
                f"{self.base_url}{SEND_PATH}",
                headers=headers,
                body=body,
                timeout_s=self.timeout_s,
            )
        except OSError as exc:
            raise DeliveryError(f"relay unreachable: {exc}") from exc
        if not resp.ok:
            raise DeliveryError(
                f"relay rejected message ({resp.status}): {resp.error_detail() or 'unknown'}",
                status=resp.status,
            )
        if not resp.payload or resp.payload.get("success") is False:
            raise DeliveryError("relay did not confirm delivery", status=resp.status)
        message_id = resp.payload.get("message_id")
        if not message_id:
            raise DeliveryError("relay response missing message_id", status=resp.status)
        return str(message_id)


def build_dispatcher(cfg: BurstclaimConfig) -> HttpRelayDispatcher | None:
    if not cfg.relay_url:
        return None
    if not cfg.relay_auth_key or not cfg.relay_secret_key:
        logger.warning("relay configured without credentials", extra={"relay_url": cfg.relay_url})
        return None
    return HttpRelayDispatcher(
        cfg.relay_url,
        auth_key=cfg.relay_auth_key,
        secret_key=cfg.relay_secret_key,
        sender_name=cfg.relay_sender_name,
        timeout_s=float(cfg.relay_timeout_s),
    )
