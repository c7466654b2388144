from __future__ import annotations

import datetime as dt
import logging
import threading
import time
import traceback
from collections.abc import Callable
from pathlib import Path
from typing import Any

from . import db
from .alerts import dispatch_alerts
from .config import BurstclaimConfig
from .debounce import DebounceSettings, GroupSweeper
from .relay import NotificationDispatcher, build_dispatcher
from .store import CoordinationStore
from .sync.provider import RecordProvider, build_provider
from .sync.sync_pass import sync_all_sources
from .webhook import build_group_handler

logger = logging.getLogger(__name__)

WORKER_LOG_NAME = "worker.log"


def worker_tick(
    store: CoordinationStore,
    cfg: BurstclaimConfig,
    *,
    provider: RecordProvider | None,
    dispatcher: NotificationDispatcher | None,
    run_sync: bool,
) -> dict[str, Any]:
    """One scheduled pass: optionally sync every source, then retry pending alerts."""
    result: dict[str, Any] = {"sync": None, "alerts": None}
    if run_sync and provider is not None:
        result["sync"] = sync_all_sources(
            store,
            provider,
            page_size=cfg.sync_page_size,
            alert_on_initial_sync=cfg.alert_on_initial_sync,
        )
    if dispatcher is not None and cfg.alert_recipient:
        result["alerts"] = dispatch_alerts(
            store,
            dispatcher,
            recipient=cfg.alert_recipient,
            min_amount=cfg.alert_min_amount,
            retry_window_s=cfg.alert_retry_window_s or None,
            spacing_ms=cfg.alert_spacing_ms,
        )
    return result


def run_worker(
    cfg: BurstclaimConfig,
    *,
    db_path: Path | str | None = None,
    stop_event: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    path = db_path or db.DEFAULT_DB_PATH
    provider = build_provider(cfg)
    dispatcher = build_dispatcher(cfg)
    handler = build_group_handler(cfg)
    sweeper: GroupSweeper | None = None
    if handler is not None:
        sweeper = GroupSweeper(
            handler,
            db_path=path,
            settings=DebounceSettings.from_config(cfg),
            interval_ms=cfg.sweeper_interval_ms,
            stuck_batch_ms=cfg.stuck_batch_ms,
            retention_ms=cfg.event_retention_ms,
            enabled=cfg.sweeper_enabled,
        )
    interval_s = max(1.0, cfg.sweeper_interval_ms / 1000.0)
    sync_interval_s = max(1, cfg.sync_interval_s)
    last_sync: float | None = None
    stop = stop_event or threading.Event()
    logger.info(
        "worker started",
        extra={"db_path": str(path), "sync": provider is not None, "replies": handler is not None},
    )
    while True:
        now = clock()
        run_sync = last_sync is None or now - last_sync >= sync_interval_s
        store = CoordinationStore(path)
        try:
            try:
                worker_tick(
                    store,
                    cfg,
                    provider=provider,
                    dispatcher=dispatcher,
                    run_sync=run_sync,
                )
                if sweeper is not None:
                    sweeper.tick()
                store.set_worker_ok()
            except Exception as exc:
                tb = traceback.format_exc()
                logger.exception("worker tick failed", exc_info=exc)
                store.set_worker_error(str(exc), tb)
                _append_worker_log(tb)
        finally:
            store.close()
        if run_sync:
            last_sync = now
        if stop.wait(interval_s):
            return


def _append_worker_log(message: str) -> None:
    try:
        log_dir = Path.home() / ".burstclaim"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / WORKER_LOG_NAME
        ts = dt.datetime.now(dt.UTC).isoformat()
        with log_path.open("a", encoding="utf-8", errors="ignore") as handle:
            handle.write(f"\n[{ts}]\n{message}\n")
    except OSError as exc:
        logger.warning("could not append worker log", extra={"error": str(exc)})
