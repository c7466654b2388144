from __future__ import annotations

import json
import os
from http.server import BaseHTTPRequestHandler
from typing import Any


def _safe_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


MAX_BODY_BYTES = _safe_int_env("BURSTCLAIM_WEBHOOK_MAX_BODY_BYTES", 1048576)


class BodyError(Exception):
    def __init__(self, message: str, *, status: int, extra: dict[str, Any] | None = None):
        super().__init__(message)
        self.status = status
        self.extra = extra or {}

    def payload(self) -> dict[str, Any]:
        return {"error": str(self), **self.extra}


def send_json_response(
    handler: BaseHTTPRequestHandler,
    payload: dict,
    status: int = 200,
) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def read_json_object(handler: Any, *, max_bytes: int = MAX_BODY_BYTES) -> dict[str, Any]:
    """Read and validate a JSON object body, raising BodyError on bad input."""
    try:
        length = int(handler.headers.get("Content-Length", "0") or 0)
    except (TypeError, ValueError) as exc:
        raise BodyError("invalid content length", status=400) from exc
    if length > max_bytes:
        raise BodyError("payload too large", status=413, extra={"max_bytes": max_bytes})
    raw = handler.rfile.read(length) if length else b""
    try:
        payload = json.loads(raw.decode("utf-8")) if raw else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise BodyError("invalid json", status=400) from exc
    if not isinstance(payload, dict):
        raise BodyError("payload must be an object", status=400)
    return payload


def internal_error_payload(exc: Exception) -> dict[str, Any]:
    response: dict[str, Any] = {"error": "internal server error"}
    if os.environ.get("BURSTCLAIM_WEBHOOK_DEBUG") == "1":
        response["detail"] = str(exc)
    return response
