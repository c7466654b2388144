from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from ..config import BurstclaimConfig
from ..errors import ProviderError
from ..http_client import build_base_url, request_json

SYNC_PATH = "/records/sync"


@dataclass
class RecordPage:
    added: list[Any] = field(default_factory=list)
    modified: list[Any] = field(default_factory=list)
    removed: list[Any] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


class RecordProvider(Protocol):
    def fetch_page(self, source_id: str, cursor: str | None, count: int) -> RecordPage: ...


def parse_record_page(payload: dict[str, Any]) -> RecordPage:
    lists: dict[str, list[Any]] = {}
    for key in ("added", "modified", "removed"):
        value = payload.get(key, [])
        if not isinstance(value, list):
            raise ProviderError(f"invalid sync response: {key} is not a list")
        lists[key] = value
    next_cursor = payload.get("next_cursor")
    if next_cursor is not None and not isinstance(next_cursor, str):
        raise ProviderError("invalid sync response: next_cursor is not a string")
    return RecordPage(
        added=lists["added"],
        modified=lists["modified"],
        removed=lists["removed"],
        next_cursor=next_cursor or None,
        has_more=bool(payload.get("has_more")),
    )


class HttpRecordProvider:
    def __init__(self, base_url: str, *, token: str | None = None, timeout_s: float = 30.0) -> None:
        self.base_url = build_base_url(base_url)
        self.token = token
        self.timeout_s = timeout_s

    def fetch_page(self, source_id: str, cursor: str | None, count: int) -> RecordPage:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
        try:
            resp = request_json(
                "POST",
                f"{self.base_url}{SYNC_PATH}",
                headers=headers,
                body={"source_id": source_id, "cursor": cursor, "count": count},
                timeout_s=self.timeout_s,
            )
        except OSError as exc:
            raise ProviderError(f"provider unreachable: {exc}") from exc
        if resp.status != 200 or resp.payload is None:
            raise ProviderError(f"provider sync failed ({resp.describe()})", status=resp.status)
        return parse_record_page(resp.payload)


def build_provider(cfg: BurstclaimConfig) -> HttpRecordProvider | None:
    if not cfg.provider_url:
        return None
    return HttpRecordProvider(
        cfg.provider_url, token=cfg.provider_token, timeout_s=float(cfg.provider_timeout_s)
    )
