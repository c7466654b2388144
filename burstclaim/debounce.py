from __future__ import annotations

import datetime as dt
import logging
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import BurstclaimConfig
from .relay import NotificationDispatcher
from .responder import ResponseGenerator
from .store import CoordinationStore
from .store.pending_events import (
    EVENT_BATCH_COMPLETED,
    EVENT_BATCH_FAILED,
    EVENT_BATCH_NO_REPLY,
    combine_batch,
    new_event_id,
)
from .store.utils import now_ms

logger = logging.getLogger(__name__)

GROUP_IDLE = "idle"
GROUP_ACCUMULATING = "accumulating"
GROUP_STABLE = "stable"

Clock = Callable[[], int]
Sleep = Callable[[float], None]
GroupHandler = Callable[[CoordinationStore, str], Any]


@dataclass
class DebounceSettings:
    window_ms: int = 2000
    max_wait_ms: int = 30000
    min_interval_ms: int = 500
    poll_budget_ms: int = 30000

    @classmethod
    def from_config(cls, cfg: BurstclaimConfig) -> DebounceSettings:
        return cls(
            window_ms=max(0, cfg.debounce_window_ms),
            max_wait_ms=max(0, cfg.debounce_max_wait_ms),
            min_interval_ms=max(1, cfg.debounce_min_interval_ms),
            poll_budget_ms=max(0, cfg.debounce_poll_budget_ms),
        )


@dataclass
class GroupCheck:
    state: str
    pending: int = 0
    newest_age_ms: int | None = None
    oldest_age_ms: int | None = None


def check_group(
    store: CoordinationStore,
    group_key: str,
    *,
    window_ms: int,
    max_wait_ms: int,
    now_ms: int,
) -> GroupCheck:
    oldest, newest, count = store.group_window(group_key)
    if not count or oldest is None or newest is None:
        return GroupCheck(state=GROUP_IDLE)
    newest_age = max(0, now_ms - newest)
    oldest_age = max(0, now_ms - oldest)
    if newest_age >= window_ms or oldest_age >= max_wait_ms:
        state = GROUP_STABLE
    else:
        state = GROUP_ACCUMULATING
    return GroupCheck(
        state=state,
        pending=count,
        newest_age_ms=newest_age,
        oldest_age_ms=oldest_age,
    )


def next_poll_delay_ms(
    check: GroupCheck,
    *,
    window_ms: int,
    max_wait_ms: int,
    min_interval_ms: int,
) -> int:
    newest_age = check.newest_age_ms or 0
    oldest_age = check.oldest_age_ms or 0
    delay = max(window_ms - newest_age, min_interval_ms)
    until_deadline = max_wait_ms - oldest_age
    # Overshoot of the forced flush is bounded by one poll interval.
    return min(delay, max(until_deadline, min_interval_ms))


def wait_for_stable_group(
    store: CoordinationStore,
    group_key: str,
    *,
    settings: DebounceSettings,
    clock: Clock = now_ms,
    sleep: Sleep = time.sleep,
) -> GroupCheck:
    started = clock()
    while True:
        current = clock()
        check = check_group(
            store,
            group_key,
            window_ms=settings.window_ms,
            max_wait_ms=settings.max_wait_ms,
            now_ms=current,
        )
        if check.state != GROUP_ACCUMULATING:
            return check
        remaining = settings.poll_budget_ms - (current - started)
        if remaining <= 0:
            return check
        delay = next_poll_delay_ms(
            check,
            window_ms=settings.window_ms,
            max_wait_ms=settings.max_wait_ms,
            min_interval_ms=settings.min_interval_ms,
        )
        sleep(min(delay, remaining) / 1000.0)


def process_group(
    store: CoordinationStore,
    group_key: str,
    *,
    responder: ResponseGenerator,
    dispatcher: NotificationDispatcher,
    settings: DebounceSettings,
    recipient: str | None = None,
    clock: Clock = now_ms,
    sleep: Sleep = time.sleep,
) -> dict[str, Any]:
    """Wait for a group to go quiet, claim its wave, and send one reply."""
    check = wait_for_stable_group(store, group_key, settings=settings, clock=clock, sleep=sleep)
    if check.state == GROUP_IDLE:
        return {"status": GROUP_IDLE, "claimed": 0}
    if check.state == GROUP_ACCUMULATING:
        return {"status": "deferred", "claimed": 0, "pending": check.pending}

    events = store.claim_group(group_key)
    if not events:
        logger.info("group already claimed by another worker", extra={"group_key": group_key})
        return {"status": "lost", "claimed": 0}

    batch_id = str(events[0].claim_batch_id)
    combined = combine_batch(events)
    logger.info(
        "claimed event wave",
        extra={"group_key": group_key, "batch_id": batch_id, "events": len(events)},
    )
    try:
        reply = responder.generate(combined)
        delivery_id = None
        if reply:
            delivery_id = dispatcher.deliver(
                recipient or group_key,
                {"text": reply, "reply_to_id": combined.last_event_id},
            )
    except Exception as exc:
        # The wave stays claimed; a failed reply is never replayed.
        logger.exception(
            "reply for event wave failed",
            extra={"group_key": group_key, "batch_id": batch_id},
            exc_info=exc,
        )
        store.update_event_batch_status(batch_id, EVENT_BATCH_FAILED, error=str(exc))
        return {"status": EVENT_BATCH_FAILED, "claimed": len(events), "batch_id": batch_id}
    if not reply:
        store.update_event_batch_status(batch_id, EVENT_BATCH_NO_REPLY)
        return {"status": EVENT_BATCH_NO_REPLY, "claimed": len(events), "batch_id": batch_id}
    store.update_event_batch_status(
        batch_id, EVENT_BATCH_COMPLETED, reply_delivery_id=delivery_id
    )
    return {
        "status": EVENT_BATCH_COMPLETED,
        "claimed": len(events),
        "batch_id": batch_id,
        "delivery_id": delivery_id,
    }


def group_handler(
    *,
    responder: ResponseGenerator,
    dispatcher: NotificationDispatcher,
    settings: DebounceSettings,
) -> GroupHandler:
    def _handle(store: CoordinationStore, group_key: str) -> dict[str, Any]:
        return process_group(
            store,
            group_key,
            responder=responder,
            dispatcher=dispatcher,
            settings=settings,
        )

    return _handle


def ingest_event(
    store: CoordinationStore,
    group_key: str,
    payload: dict[str, Any],
    *,
    event_id: str | None = None,
    received_at_ms: int | None = None,
) -> bool:
    """Persist one inbound event and return without waiting on the group."""
    resolved_id = (event_id or "").strip() or new_event_id()
    return store.record_pending_event(
        group_key=group_key,
        event_id=resolved_id,
        payload=payload,
        received_at_ms=received_at_ms,
    )


class GroupFlusher:
    """In-process fast path: one timer per group, reset on every new event."""

    def __init__(
        self,
        handler: GroupHandler,
        *,
        db_path: Path | str,
        delay_ms: int,
        enabled: bool = True,
    ) -> None:
        self.handler = handler
        self.db_path = db_path
        self.delay_ms = delay_ms
        self._enabled = enabled
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._flushing: set[str] = set()

    def enabled(self) -> bool:
        return self._enabled

    def note_activity(self, group_key: str) -> None:
        if not group_key:
            return
        if not self.enabled():
            return
        if self.delay_ms <= 0:
            self.flush_now(group_key)
            return
        with self._lock:
            existing = self._timers.pop(group_key, None)
            if existing:
                existing.cancel()
            timer = threading.Timer(self.delay_ms / 1000.0, self.flush_now, args=(group_key,))
            timer.daemon = True
            self._timers[group_key] = timer
            timer.start()

    def flush_now(self, group_key: str) -> None:
        if not group_key:
            return
        with self._lock:
            if group_key in self._flushing:
                return
            self._flushing.add(group_key)
            timer = self._timers.pop(group_key, None)
        if timer:
            timer.cancel()
        try:
            store = CoordinationStore(self.db_path)
            try:
                self.handler(store, group_key)
            finally:
                store.close()
        except Exception as exc:
            logger.exception(
                "group flush failed",
                extra={"group_key": group_key},
                exc_info=exc,
            )
        finally:
            with self._lock:
                self._flushing.discard(group_key)

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()


class GroupSweeper:
    """Periodic pass that finishes groups no live worker is waiting on."""

    def __init__(
        self,
        handler: GroupHandler,
        *,
        db_path: Path | str,
        settings: DebounceSettings,
        interval_ms: int = 5000,
        stuck_batch_ms: int = 300000,
        retention_ms: int = 0,
        limit: int = 25,
        enabled: bool = True,
        clock: Clock = now_ms,
    ) -> None:
        self.handler = handler
        self.db_path = db_path
        self.settings = settings
        self.interval_ms = interval_ms
        self.stuck_batch_ms = stuck_batch_ms
        self.retention_ms = retention_ms
        self.limit = limit
        self._enabled = enabled
        self.clock = clock
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    def enabled(self) -> bool:
        return self._enabled

    def tick(self) -> dict[str, int]:
        counts = {"groups": 0, "failed": 0, "abandoned": 0, "purged": 0}
        if not self.enabled():
            return counts
        store = CoordinationStore(self.db_path)
        try:
            if self.retention_ms > 0:
                counts["purged"] = store.purge_claimed_events(self.retention_ms)

            if self.stuck_batch_ms > 0:
                cutoff = dt.datetime.now(dt.UTC) - dt.timedelta(milliseconds=self.stuck_batch_ms)
                counts["abandoned"] = store.mark_stale_event_batches_abandoned(
                    older_than_iso=cutoff.isoformat(),
                    limit=100,
                )

            group_keys = store.pending_groups_ready(
                window_ms=self.settings.window_ms,
                max_wait_ms=self.settings.max_wait_ms,
                now_ms=self.clock(),
                limit=self.limit,
            )
            for group_key in group_keys:
                counts["groups"] += 1
                try:
                    self.handler(store, group_key)
                except Exception as exc:
                    counts["failed"] += 1
                    logger.exception(
                        "group sweeper flush failed",
                        extra={"group_key": group_key},
                        exc_info=exc,
                    )
                    if not logging.getLogger().hasHandlers():
                        print(
                            f"burstclaim: group sweeper flush failed for {group_key}: {exc}",
                            file=sys.stderr,
                        )
                    continue
        finally:
            store.close()
        return counts

    def start(self) -> None:
        if not self.enabled():
            return
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def _run(self) -> None:
        interval_ms = max(250, self.interval_ms)
        while not self._stop.wait(interval_ms / 1000.0):
            try:
                self.tick()
            except Exception as exc:
                logger.exception("group sweeper tick failed", exc_info=exc)
