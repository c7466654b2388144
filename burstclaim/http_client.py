from __future__ import annotations

import json
from dataclasses import dataclass
from http.client import HTTPConnection, HTTPSConnection
from typing import Any
from urllib.parse import urlparse

ERROR_KEYS = ("error_message", "error", "message")


@dataclass(frozen=True)
class JsonResponse:
    """Status and decoded object body of a relay or provider call."""

    status: int
    payload: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def error_detail(self) -> str | None:
        if not self.payload:
            return None
        for key in ERROR_KEYS:
            value = self.payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    def describe(self) -> str:
        detail = self.error_detail()
        return f"{self.status}: {detail}" if detail else str(self.status)


def build_base_url(address: str) -> str:
    trimmed = address.strip().rstrip("/")
    if not trimmed:
        return ""
    if urlparse(trimmed).scheme:
        return trimmed
    return f"http://{trimmed}"


def _decode(raw: bytes) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        snippet = raw[:240].decode("utf-8", errors="replace").strip()
        return {"error": f"non_json_response: {snippet}" if snippet else "non_json_response"}
    if isinstance(payload, dict):
        return payload
    return {"error": f"unexpected_json_type: {type(payload).__name__}"}


def request_json(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    body: dict[str, Any] | None = None,
    timeout_s: float = 15.0,
) -> JsonResponse:
    """Send one JSON request; transport failures raise OSError to the caller."""
    parsed = urlparse(url)
    if not parsed.hostname:
        raise ValueError("missing hostname")
    secure = parsed.scheme == "https"
    conn_cls = HTTPSConnection if secure else HTTPConnection
    conn = conn_cls(parsed.hostname, parsed.port or (443 if secure else 80), timeout=timeout_s)
    target = parsed.path or "/"
    if parsed.query:
        target = f"{target}?{parsed.query}"
    request_headers = {"Accept": "application/json"}
    encoded = None
    if body is not None:
        encoded = json.dumps(body, ensure_ascii=False).encode("utf-8")
        request_headers["Content-Type"] = "application/json"
        request_headers["Content-Length"] = str(len(encoded))
    request_headers.update(headers or {})
    try:
        conn.request(method, target, body=encoded, headers=request_headers)
        resp = conn.getresponse()
        return JsonResponse(status=int(resp.status), payload=_decode(resp.read()))
    finally:
        conn.close()
