from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from burstclaim.errors import ProviderError
from burstclaim.store import CoordinationStore
from burstclaim.sync.provider import RecordPage
from burstclaim.sync.sync_pass import run_sync_pass, sync_all_sources, sync_and_alert


def _record(record_id: str, amount: float = 4.25, **extra: Any) -> dict[str, Any]:
    return {"transaction_id": record_id, "amount": amount, "merchant_name": "Deli", **extra}


class FakeProvider:
    def __init__(self, pages: list[RecordPage | Exception]) -> None:
        self.pages = list(pages)
        self.calls: list[tuple[str, str | None, int]] = []

    def fetch_page(self, source_id: str, cursor: str | None, count: int) -> RecordPage:
        self.calls.append((source_id, cursor, count))
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page


class FakeDispatcher:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def deliver(self, recipient: str, payload: dict[str, Any]) -> str:
        self.sent.append((recipient, payload))
        return f"msg-{len(self.sent)}"


def test_first_sync_pages_until_done_and_suppresses_alerts(store: CoordinationStore) -> None:
    provider = FakeProvider(
        [
            RecordPage(added=[_record("t1")], next_cursor="c1", has_more=True),
            RecordPage(added=[_record("t2")], next_cursor="c2", has_more=False),
        ]
    )

    result = run_sync_pass(store, "item-1", provider, page_size=100)

    assert result["ok"] is True
    assert result["superseded"] is False
    assert result["pages"] == 2
    assert result["added"] == 2
    assert result["added_ids"] == ["t1", "t2"]
    assert [call[1] for call in provider.calls] == [None, "c1"]
    assert provider.calls[0][2] == 100
    assert store.get_sync_cursor("item-1").cursor == "c2"
    assert store.get_record("t1")["alert_eligible"] is False
    assert store.eligible_alert_records() == []

    attempts = store.sync_attempts(source_id="item-1")
    assert attempts[0]["ok"] == 1
    assert attempts[0]["pages"] == 2


def test_later_sync_marks_new_records_eligible(store: CoordinationStore) -> None:
    run_sync_pass(store, "item-1", FakeProvider([RecordPage(next_cursor="c1")]))
    provider = FakeProvider([RecordPage(added=[_record("t9")], next_cursor="c2")])

    run_sync_pass(store, "item-1", provider)

    assert provider.calls[0][1] == "c1"
    assert [r["id"] for r in store.eligible_alert_records()] == ["t9"]


def test_alert_on_initial_sync_opt_in(store: CoordinationStore) -> None:
    provider = FakeProvider([RecordPage(added=[_record("t1")], next_cursor="c1")])
    run_sync_pass(store, "item-1", provider, alert_on_initial_sync=True)
    assert [r["id"] for r in store.eligible_alert_records()] == ["t1"]


def test_fetch_failure_keeps_cursor_at_last_merged_page(store: CoordinationStore) -> None:
    provider = FakeProvider(
        [
            RecordPage(added=[_record("t1")], next_cursor="c1", has_more=True),
            ProviderError("provider sync failed (500)", status=500),
        ]
    )

    result = run_sync_pass(store, "item-1", provider)

    assert result["ok"] is False
    assert "500" in result["error"]
    assert result["pages"] == 1
    assert store.get_sync_cursor("item-1").cursor == "c1"
    assert store.get_record("t1") is not None
    attempt = store.sync_attempts(source_id="item-1")[0]
    assert attempt["ok"] == 0
    assert "500" in attempt["error"]
    sources = store.list_sync_sources()
    assert sources[0]["last_error"] == attempt["error"]

    retry = FakeProvider([RecordPage(added=[_record("t2")], next_cursor="c2", has_more=False)])
    resumed = run_sync_pass(store, "item-1", retry)

    assert resumed["ok"] is True
    assert retry.calls == [("item-1", "c1", 500)]
    assert store.get_record("t2") is not None
    assert store.get_sync_cursor("item-1").cursor == "c2"


def test_backfill_retried_after_failure_stays_suppressed(store: CoordinationStore) -> None:
    failing = FakeProvider(
        [
            RecordPage(added=[_record("old1")], next_cursor="c1", has_more=True),
            ProviderError("provider sync failed (502)", status=502),
        ]
    )
    assert run_sync_pass(store, "item-1", failing)["ok"] is False
    assert store.get_sync_cursor("item-1").initial_sync_completed_at is None

    retry = FakeProvider([RecordPage(added=[_record("old2")], next_cursor="c2", has_more=False)])
    assert run_sync_pass(store, "item-1", retry)["ok"] is True

    assert store.get_record("old2")["alert_eligible"] is False
    assert store.eligible_alert_records() == []
    assert store.get_sync_cursor("item-1").initial_sync_completed_at is not None

    later = FakeProvider([RecordPage(added=[_record("new1")], next_cursor="c3")])
    run_sync_pass(store, "item-1", later)
    assert [r["id"] for r in store.eligible_alert_records()] == ["new1"]


def test_superseded_attempt_does_not_finish_initial_sync(db_path: Path) -> None:
    store = CoordinationStore(db_path)
    other = CoordinationStore(db_path)
    try:
        store.ensure_sync_source("item-1")

        class RacingProvider:
            def fetch_page(self, source_id: str, cursor: str | None, count: int) -> RecordPage:
                assert other.advance_sync_cursor(source_id, expected=cursor, next_cursor="c-fast")
                return RecordPage(added=[_record("t1")], next_cursor="c-slow", has_more=False)

        result = run_sync_pass(store, "item-1", RacingProvider())

        assert result["superseded"] is True
        assert store.get_sync_cursor("item-1").initial_sync_completed_at is None
    finally:
        other.close()
        store.close()


def test_cursor_moved_by_another_attempt_is_not_rewound(db_path: Path) -> None:
    store = CoordinationStore(db_path)
    other = CoordinationStore(db_path)
    try:
        store.ensure_sync_source("item-1")

        class RacingProvider:
            def fetch_page(self, source_id: str, cursor: str | None, count: int) -> RecordPage:
                assert other.advance_sync_cursor(source_id, expected=cursor, next_cursor="c-fast")
                return RecordPage(added=[_record("t1")], next_cursor="c-slow", has_more=True)

        result = run_sync_pass(store, "item-1", RacingProvider())

        assert result["ok"] is True
        assert result["superseded"] is True
        assert store.get_sync_cursor("item-1").cursor == "c-fast"
        assert store.get_record("t1") is not None
    finally:
        other.close()
        store.close()


def test_advance_sync_cursor_compare_and_swap(store: CoordinationStore) -> None:
    store.ensure_sync_source("item-1")
    assert store.advance_sync_cursor("item-1", expected=None, next_cursor="c1") is True
    assert store.advance_sync_cursor("item-1", expected=None, next_cursor="c0") is False
    assert store.advance_sync_cursor("item-1", expected="c1", next_cursor="c2") is True
    assert store.get_sync_cursor("item-1").cursor == "c2"
    assert store.get_sync_cursor("unknown") is None


def test_sync_and_alert_sends_new_records_once(store: CoordinationStore) -> None:
    run_sync_pass(store, "item-1", FakeProvider([RecordPage(next_cursor="c1")]))
    dispatcher = FakeDispatcher()
    provider = FakeProvider([RecordPage(added=[_record("t1", 7.45)], next_cursor="c2")])

    result = sync_and_alert(
        store,
        "item-1",
        provider,
        dispatcher,
        recipient="+15550001111",
        sleep=lambda _s: None,
    )

    assert result["sync"]["ok"] is True
    assert result["alerts"]["sent"] == 1
    assert dispatcher.sent == [
        ("+15550001111", {"text": "$7.45 at Deli", "passthrough": "t1"})
    ]

    again = sync_and_alert(
        store,
        "item-1",
        FakeProvider([RecordPage(modified=[_record("t1", 7.45)], next_cursor="c3")]),
        dispatcher,
        recipient="+15550001111",
        sleep=lambda _s: None,
    )
    assert again["alerts"]["sent"] == 0
    assert len(dispatcher.sent) == 1


def test_sync_and_alert_skips_alerts_without_recipient(store: CoordinationStore) -> None:
    result = sync_and_alert(
        store,
        "item-1",
        FakeProvider([RecordPage(next_cursor="c1")]),
        FakeDispatcher(),
        recipient=None,
    )
    assert result["alerts"] is None


def test_sync_all_sources_visits_registered_sources(store: CoordinationStore) -> None:
    store.ensure_sync_source("a")
    store.ensure_sync_source("b")
    provider = FakeProvider([RecordPage(next_cursor="ca"), RecordPage(next_cursor="cb")])

    results = sync_all_sources(store, provider)

    assert [r["source_id"] for r in results] == ["a", "b"]
    assert all(r["ok"] for r in results)


def test_ensure_sync_source_rejects_blank(store: CoordinationStore) -> None:
    with pytest.raises(ValueError):
        store.ensure_sync_source("  ")
