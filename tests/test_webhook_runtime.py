from __future__ import annotations

import threading
from pathlib import Path

from burstclaim.config import BurstclaimConfig
from burstclaim.store import CoordinationStore
from burstclaim.sync.provider import RecordPage
from burstclaim.webhook import SyncTrigger, build_runtime, build_webhook_handler


class BlockingProvider:
    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def fetch_page(self, source_id: str, cursor: str | None, count: int) -> RecordPage:
        self.calls += 1
        self.started.set()
        self.release.wait(5)
        return RecordPage(added=[{"transaction_id": "t1", "amount": 4}], next_cursor="c1")


def test_build_runtime_without_responder_stores_events_only(db_path: Path) -> None:
    runtime = build_runtime(BurstclaimConfig(), db_path)
    assert runtime.db_path == str(db_path)
    assert runtime.flusher is None
    assert runtime.sweeper is None
    assert runtime.sync_trigger is None


def test_build_runtime_wires_flusher_sweeper_and_trigger(db_path: Path) -> None:
    cfg = BurstclaimConfig(
        responder_provider="openai",
        relay_url="https://relay.example",
        relay_auth_key="a",
        relay_secret_key="s",
        provider_url="https://provider.example",
        debounce_window_ms=1500,
    )
    runtime = build_runtime(cfg, db_path)
    assert runtime.flusher is not None
    assert runtime.flusher.delay_ms == 1500
    assert runtime.sweeper is not None
    assert runtime.sync_trigger is not None

    handler_cls = build_webhook_handler(runtime)
    assert handler_cls.runtime is runtime


def test_sync_trigger_runs_one_sync_per_source_at_a_time(db_path: Path) -> None:
    provider = BlockingProvider()
    trigger = SyncTrigger(BurstclaimConfig(), db_path=db_path, provider=provider, dispatcher=None)

    assert trigger.trigger("item-1") is True
    assert provider.started.wait(5)
    assert trigger.trigger("item-1") is False

    provider.release.set()
    idle = threading.Event()
    for _ in range(100):
        if not trigger._running:
            break
        idle.wait(0.05)
    assert not trigger._running
    assert provider.calls == 1

    store = CoordinationStore(db_path)
    try:
        assert store.get_record("t1") is not None
    finally:
        store.close()
