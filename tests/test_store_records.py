from __future__ import annotations

from typing import Any

import pytest

from burstclaim.errors import MalformedRecordError
from burstclaim.store import CoordinationStore
from burstclaim.store.records import parse_external_record


def _record(record_id: str, amount: float = 12.5, **extra: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "transaction_id": record_id,
        "amount": amount,
        "merchant_name": "Corner Cafe",
        "date": "2026-03-01",
    }
    data.update(extra)
    return data


def test_parse_external_record_accepts_provider_field_names() -> None:
    record = parse_external_record(
        _record("t1", pending=True, pending_transaction_id="p1", category=["Food", "Cafe"])
    )
    assert record.id == "t1"
    assert record.amount == 12.5
    assert record.pending is True
    assert record.supersedes_id == "p1"
    assert record.category == "Food"


@pytest.mark.parametrize(
    "data",
    [
        "not-an-object",
        {"amount": 3},
        {"id": "t1"},
        {"id": "t1", "amount": "lots"},
        {"id": "t1", "amount": True},
        {"id": "t1", "amount": float("nan")},
    ],
)
def test_parse_external_record_rejects_malformed(data: Any) -> None:
    with pytest.raises(MalformedRecordError):
        parse_external_record(data)


def test_apply_record_changes_counts_inserts_updates_and_removals(
    store: CoordinationStore,
) -> None:
    first = store.apply_record_changes(added=[_record("t1"), _record("t2")], source_id="src")
    assert first.as_dict() == {"inserted": 2, "updated": 0, "removed": 0, "skipped": 0}
    assert first.added_ids == ["t1", "t2"]

    second = store.apply_record_changes(
        modified=[_record("t1", 15.0)],
        removed=[{"transaction_id": "t2"}, "missing"],
        source_id="src",
    )
    assert second.as_dict() == {"inserted": 0, "updated": 1, "removed": 1, "skipped": 0}
    assert store.get_record("t1")["amount"] == 15.0
    assert store.get_record("t2") is None


def test_apply_record_changes_skips_malformed_without_aborting_page(
    store: CoordinationStore,
) -> None:
    result = store.apply_record_changes(
        added=[{"id": "bad"}, "junk", _record("good")],
        removed=[42],
    )
    assert result.inserted == 1
    assert result.skipped == 3
    assert store.get_record("good") is not None


def test_upstream_update_keeps_local_fields_and_claim(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("t1")])
    assert store.set_record_notes("t1", "team lunch")
    assert store.set_record_tags("t1", ["work", "food", "work"])
    assert store.add_record_attachment("t1", {"url": "https://example.test/receipt.jpg"})
    assert store.try_claim_alert("t1")

    store.apply_record_changes(modified=[_record("t1", 20.0, merchant_name="Corner Cafe #2")])

    record = store.get_record("t1")
    assert record is not None
    assert record["amount"] == 20.0
    assert record["merchant_name"] == "Corner Cafe #2"
    assert record["notes"] == "team lunch"
    assert record["tags"] == ["food", "work"]
    assert record["attachments"] == [{"url": "https://example.test/receipt.jpg"}]
    assert record["notified_at"] is not None


def test_replaying_a_page_leaves_the_same_state(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("t3")])
    page = {
        "added": [_record("t1"), _record("t2", pending_transaction_id="p0")],
        "modified": [_record("t1", 13.0, merchant_name="Corner Cafe #2")],
        "removed": ["t3"],
    }

    first = store.apply_record_changes(**page, source_id="src")
    assert first.as_dict() == {"inserted": 2, "updated": 1, "removed": 1, "skipped": 0}
    assert store.set_record_notes("t1", "client dinner")
    assert store.set_record_tags("t2", ["travel"])
    assert store.try_claim_alert("t2")

    def _snapshot() -> dict[str, Any]:
        state = {}
        for record_id in ("t1", "t2", "t3"):
            record = store.get_record(record_id)
            if record is not None:
                record.pop("updated_at")
            state[record_id] = record
        return state

    before = _snapshot()
    second = store.apply_record_changes(**page, source_id="src")

    assert second.as_dict() == {"inserted": 0, "updated": 3, "removed": 0, "skipped": 0}
    assert _snapshot() == before
    assert before["t1"]["amount"] == 13.0
    assert before["t1"]["notes"] == "client dinner"
    assert before["t2"]["tags"] == ["travel"]
    assert before["t2"]["notified_at"] is not None
    assert before["t3"] is None


def test_local_field_setters_report_missing_records(store: CoordinationStore) -> None:
    assert store.set_record_notes("nope", "x") is False
    assert store.set_record_tags("nope", ["x"]) is False
    assert store.add_record_attachment("nope", {"url": "x"}) is False


def test_final_record_inherits_claim_from_pending_in_same_page(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("p1", pending=True)])
    assert store.try_claim_alert("p1")

    store.apply_record_changes(
        added=[_record("f1", pending_transaction_id="p1")],
        removed=["p1"],
    )

    final = store.get_record("f1")
    assert final is not None
    assert final["notified_at"] is not None
    assert final["notify_inherited_from"] == "p1"
    assert store.try_claim_alert("f1") is False
    assert store.eligible_alert_records() == []


def test_final_record_inherits_claim_through_tombstone(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("p1", pending=True)])
    assert store.try_claim_alert("p1")
    store.apply_record_changes(removed=["p1"])

    store.apply_record_changes(added=[_record("f1", pending_transaction_id="p1")])

    final = store.get_record("f1")
    assert final is not None
    assert final["notify_inherited_from"] == "p1"
    assert store.alert_claim_metrics()["tombstones"] == 1


def test_removing_unnotified_record_leaves_no_tombstone(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("p1", pending=True)])
    store.apply_record_changes(removed=["p1"])
    store.apply_record_changes(added=[_record("f1", pending_transaction_id="p1")])

    final = store.get_record("f1")
    assert final is not None
    assert final["notified_at"] is None
    assert store.try_claim_alert("f1") is True


def test_list_records_filters_by_source(store: CoordinationStore) -> None:
    store.apply_record_changes(added=[_record("a1")], source_id="alpha")
    store.apply_record_changes(added=[_record("b1")], source_id="beta")

    assert [r["id"] for r in store.list_records(source_id="alpha")] == ["a1"]
    assert {r["id"] for r in store.list_records()} == {"a1", "b1"}
