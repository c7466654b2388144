from __future__ import annotations

from typing import Any

from burstclaim.alerts import compose_alert, dispatch_alerts
from burstclaim.errors import DeliveryError
from burstclaim.store import CoordinationStore


class FlakyDispatcher:
    def __init__(self, fail_ids: set[str] | None = None) -> None:
        self.fail_ids = fail_ids or set()
        self.sent: list[dict[str, Any]] = []

    def deliver(self, recipient: str, payload: dict[str, Any]) -> str:
        if payload.get("passthrough") in self.fail_ids:
            raise DeliveryError("relay rejected message (502): upstream", status=502)
        self.sent.append(payload)
        return f"msg-{payload['passthrough']}"


def _seed(store: CoordinationStore, *amounts: float) -> None:
    store.apply_record_changes(
        added=[
            {"id": f"t{i}", "amount": amount, "merchant_name": f"Shop {i}"}
            for i, amount in enumerate(amounts, start=1)
        ]
    )


def test_compose_alert_formats_amount_and_merchant() -> None:
    assert compose_alert({"amount": 7.45, "merchant_name": "Starbucks"}) == "$7.45 at Starbucks"
    assert (
        compose_alert({"amount": 1200, "name": "Rent", "iso_currency_code": "EUR", "pending": True})
        == "€1,200.00 at Rent (pending)"
    )
    assert compose_alert({"amount": 3, "iso_currency_code": "JPY"}) == (
        "3.00 JPY at an unknown merchant"
    )
    assert compose_alert({"amount": -5, "name": "Refund"}) is None


def test_dispatch_sends_each_record_once(store: CoordinationStore) -> None:
    _seed(store, 5.0, 6.0)
    dispatcher = FlakyDispatcher()

    counts = dispatch_alerts(store, dispatcher, recipient="+1555", sleep=lambda _s: None)

    assert counts["sent"] == 2
    assert [p["passthrough"] for p in dispatcher.sent] == ["t1", "t2"]
    assert store.get_record("t1")["notify_delivery_id"] == "msg-t1"

    counts = dispatch_alerts(store, dispatcher, recipient="+1555", sleep=lambda _s: None)
    assert counts["candidates"] == 0
    assert len(dispatcher.sent) == 2


def test_failed_delivery_releases_claim_for_retry(store: CoordinationStore) -> None:
    _seed(store, 5.0, 6.0)
    dispatcher = FlakyDispatcher(fail_ids={"t1"})

    counts = dispatch_alerts(store, dispatcher, recipient="+1555", sleep=lambda _s: None)

    assert counts["failed"] == 1
    assert counts["sent"] == 1
    assert store.get_record("t1")["notified_at"] is None

    dispatcher.fail_ids.clear()
    counts = dispatch_alerts(store, dispatcher, recipient="+1555", sleep=lambda _s: None)
    assert counts["sent"] == 1
    assert store.get_record("t1")["notify_confirmed_at"] is not None


def test_spacing_only_between_sends(store: CoordinationStore) -> None:
    _seed(store, 5.0, 6.0, 7.0)
    sleeps: list[float] = []

    dispatch_alerts(
        store, FlakyDispatcher(), recipient="+1555", spacing_ms=250, sleep=sleeps.append
    )

    assert sleeps == [0.25, 0.25]


def test_suppressed_alert_keeps_claim(store: CoordinationStore) -> None:
    _seed(store, 5.0)
    dispatcher = FlakyDispatcher()

    counts = dispatch_alerts(
        store, dispatcher, recipient="+1555", composer=lambda _r: None, sleep=lambda _s: None
    )

    assert counts["suppressed"] == 1
    assert dispatcher.sent == []
    record = store.get_record("t1")
    assert record["notify_confirmed_at"] is not None
    assert record["notify_delivery_id"] is None


def test_composer_error_releases_claim(store: CoordinationStore) -> None:
    _seed(store, 5.0)

    def _broken(_record: dict[str, Any]) -> str | None:
        raise KeyError("amount")

    counts = dispatch_alerts(
        store, FlakyDispatcher(), recipient="+1555", composer=_broken, sleep=lambda _s: None
    )

    assert counts["failed"] == 1
    assert store.get_record("t1")["notified_at"] is None


def test_min_amount_filters_candidates(store: CoordinationStore) -> None:
    _seed(store, 2.0, 50.0)
    dispatcher = FlakyDispatcher()

    counts = dispatch_alerts(
        store, dispatcher, recipient="+1555", min_amount=10.0, sleep=lambda _s: None
    )

    assert counts["candidates"] == 1
    assert [p["passthrough"] for p in dispatcher.sent] == ["t2"]


def test_spacing_wait_happens_before_the_next_claim(store: CoordinationStore) -> None:
    _seed(store, 5.0, 6.0)
    claimed_during_sleep: list[Any] = []

    def _sleep(_seconds: float) -> None:
        claimed_during_sleep.append(store.get_record("t2")["notified_at"])

    dispatch_alerts(store, FlakyDispatcher(), recipient="+1555", spacing_ms=250, sleep=_sleep)

    assert claimed_during_sleep == [None]
    assert store.get_record("t2")["notify_confirmed_at"] is not None


def test_failing_record_does_not_starve_newer_ones(store: CoordinationStore) -> None:
    _seed(store, 5.0)
    dispatcher = FlakyDispatcher(fail_ids={"t1"})
    counts = dispatch_alerts(store, dispatcher, recipient="+1555", limit=1, sleep=lambda _s: None)
    assert counts["failed"] == 1

    store.apply_record_changes(added=[{"id": "t2", "amount": 6.0, "merchant_name": "Shop 2"}])
    counts = dispatch_alerts(store, dispatcher, recipient="+1555", limit=1, sleep=lambda _s: None)

    assert counts["sent"] == 1
    assert [p["passthrough"] for p in dispatcher.sent] == ["t2"]
