from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

from burstclaim.store import CoordinationStore


def _record(record_id: str, amount: float = 9.99, **extra: Any) -> dict[str, Any]:
    return {"id": record_id, "amount": amount, "name": "Market", **extra}


def test_claim_is_granted_once(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("t1")])
    assert store.try_claim_alert("t1") is True
    assert store.try_claim_alert("t1") is False
    assert store.try_claim_alert("missing") is False


def test_concurrent_claims_have_one_winner(db_path: Path) -> None:
    setup = CoordinationStore(db_path)
    try:
        setup.apply_record_changes(added=[_record("t1")])
    finally:
        setup.close()

    workers = 8
    barrier = threading.Barrier(workers)
    results: list[bool] = []
    lock = threading.Lock()

    def _race() -> None:
        store = CoordinationStore(db_path)
        try:
            barrier.wait()
            won = store.try_claim_alert("t1")
        finally:
            store.close()
        with lock:
            results.append(won)

    threads = [threading.Thread(target=_race) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == [False] * (workers - 1) + [True]


def test_release_allows_a_retry(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("t1")])
    assert store.try_claim_alert("t1")
    assert store.release_alert_claim("t1") is True
    assert store.get_record("t1")["notified_at"] is None
    assert store.try_claim_alert("t1") is True
    assert store.alert_claim_metrics()["reclaims"] == 1


def test_confirmed_claim_cannot_be_released(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("t1")])
    assert store.try_claim_alert("t1")
    assert store.confirm_alert("t1", "msg-1") is True
    assert store.release_alert_claim("t1") is False
    record = store.get_record("t1")
    assert record["notify_delivery_id"] == "msg-1"


def test_confirm_requires_a_claim(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("t1")])
    assert store.confirm_alert("t1", "msg-1") is False


def test_inherited_claim_cannot_be_released(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("p1", pending=True)])
    assert store.try_claim_alert("p1")
    store.apply_record_changes(added=[_record("f1", supersedes_id="p1")], removed=["p1"])
    assert store.release_alert_claim("f1") is False


def test_parent_claim_blocks_child_inserted_earlier(store: CoordinationStore) -> None:
    store.apply_record_changes(
        added=[_record("p1", pending=True), _record("f1", supersedes_id="p1")]
    )
    assert store.try_claim_alert("p1") is True
    assert store.try_claim_alert("f1") is False


def test_child_claim_blocks_parent(store: CoordinationStore) -> None:
    store.apply_record_changes(
        added=[_record("p1", pending=True), _record("f1", supersedes_id="p1")]
    )
    assert store.try_claim_alert("f1") is True
    assert store.try_claim_alert("p1") is False
    assert [r["id"] for r in store.eligible_alert_records()] == []


def test_eligible_records_respect_amount_and_eligibility(store: CoordinationStore) -> None:
    store.apply_record_changes(
        added=[_record("big", 50.0), _record("small", 2.0), _record("refund", -8.0)]
    )
    store.apply_record_changes(added=[_record("backfill", 70.0)], alert_eligible=False)

    assert [r["id"] for r in store.eligible_alert_records(min_amount=5.0)] == ["big"]
    assert {r["id"] for r in store.eligible_alert_records()} == {"big", "small"}


def test_unconfirmed_claims_and_metrics(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("a"), _record("b"), _record("c")])
    assert store.try_claim_alert("a")
    assert store.try_claim_alert("b")
    store.confirm_alert("b", "msg-b")

    stuck = store.unconfirmed_alert_claims()
    assert [item["id"] for item in stuck] == ["a"]

    metrics = store.alert_claim_metrics()
    assert metrics["claimed_unconfirmed"] == 1
    assert metrics["confirmed"] == 1
    assert metrics["unclaimed"] == 1


def test_claim_on_root_blocks_later_grandchild(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("a"), _record("b", supersedes_id="a")])
    assert store.try_claim_alert("a") is True

    store.apply_record_changes(added=[_record("c", supersedes_id="b")])

    assert store.try_claim_alert("c") is False
    assert store.get_record("c")["notify_inherited_from"] == "a"


def test_claim_on_root_blocks_existing_grandchild(store: CoordinationStore) -> None:
    store.apply_record_changes(
        added=[_record("a"), _record("b", supersedes_id="a"), _record("c", supersedes_id="b")]
    )
    assert store.try_claim_alert("a") is True

    assert store.try_claim_alert("c") is False
    assert store.try_claim_alert("b") is False
    assert store.eligible_alert_records() == []


def test_grandchild_claim_blocks_root(store: CoordinationStore) -> None:
    store.apply_record_changes(
        added=[_record("a"), _record("b", supersedes_id="a"), _record("c", supersedes_id="b")]
    )
    assert store.try_claim_alert("c") is True
    assert store.try_claim_alert("a") is False


def test_lineage_survives_removed_middle_record(store: CoordinationStore) -> None:
    store.apply_record_changes(
        added=[_record("a"), _record("b", supersedes_id="a"), _record("c", supersedes_id="b")]
    )
    store.apply_record_changes(removed=["b"])
    assert store.get_record("b") is None

    assert store.try_claim_alert("a") is True
    assert store.try_claim_alert("c") is False
    assert store.eligible_alert_records() == []


def test_record_added_after_middle_removed_inherits_root_claim(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("a"), _record("b", supersedes_id="a")])
    store.apply_record_changes(removed=["b"])
    assert store.try_claim_alert("a") is True

    store.apply_record_changes(added=[_record("c", supersedes_id="b")])

    assert store.get_record("c")["notify_inherited_from"] == "a"
    assert store.try_claim_alert("c") is False


def test_unrelated_records_stay_eligible_next_to_a_claimed_lineage(
    store: CoordinationStore,
) -> None:
    store.apply_record_changes(
        added=[_record("a"), _record("b", supersedes_id="a"), _record("other")]
    )
    assert store.try_claim_alert("a") is True

    assert [r["id"] for r in store.eligible_alert_records()] == ["other"]


def test_eligible_records_put_retried_records_last(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("old")])
    store.apply_record_changes(added=[_record("new")])
    assert store.try_claim_alert("old")
    assert store.release_alert_claim("old")

    assert [r["id"] for r in store.eligible_alert_records(limit=1)] == ["new"]
    assert [r["id"] for r in store.eligible_alert_records()] == ["new", "old"]
