from __future__ import annotations

import logging
import os
import socket
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from .config import BurstclaimConfig
from .db import DEFAULT_DB_PATH
from .debounce import DebounceSettings, GroupFlusher, GroupHandler, GroupSweeper, group_handler
from .relay import NotificationDispatcher, build_dispatcher
from .responder import build_responder
from .store import CoordinationStore
from .sync.provider import RecordProvider, build_provider
from .sync.sync_pass import sync_and_alert
from .webhook_http import internal_error_payload, send_json_response
from .webhook_routes import events as webhook_routes_events
from .webhook_routes import records as webhook_routes_records
from .webhook_routes import stats as webhook_routes_stats

logger = logging.getLogger(__name__)


class SyncTrigger:
    """Starts a background sync for a source unless one is already running here."""

    def __init__(
        self,
        cfg: BurstclaimConfig,
        *,
        db_path: Path | str,
        provider: RecordProvider,
        dispatcher: NotificationDispatcher | None,
    ) -> None:
        self.cfg = cfg
        self.db_path = db_path
        self.provider = provider
        self.dispatcher = dispatcher
        self._lock = threading.Lock()
        self._running: set[str] = set()

    def trigger(self, source_id: str) -> bool:
        with self._lock:
            if source_id in self._running:
                return False
            self._running.add(source_id)
        thread = threading.Thread(target=self.run, args=(source_id,), daemon=True)
        thread.start()
        return True

    def run(self, source_id: str) -> dict[str, Any] | None:
        try:
            store = CoordinationStore(self.db_path)
            try:
                return sync_and_alert(
                    store,
                    source_id,
                    self.provider,
                    self.dispatcher,
                    recipient=self.cfg.alert_recipient,
                    page_size=self.cfg.sync_page_size,
                    alert_on_initial_sync=self.cfg.alert_on_initial_sync,
                    min_amount=self.cfg.alert_min_amount,
                    spacing_ms=self.cfg.alert_spacing_ms,
                    retry_window_s=self.cfg.alert_retry_window_s or None,
                )
            finally:
                store.close()
        except Exception as exc:
            logger.exception("triggered sync failed", extra={"source_id": source_id}, exc_info=exc)
            return None
        finally:
            with self._lock:
                self._running.discard(source_id)


@dataclass
class WebhookRuntime:
    db_path: str
    flusher: GroupFlusher | None = None
    sweeper: GroupSweeper | None = None
    sync_trigger: SyncTrigger | None = None


RUNTIME = WebhookRuntime(db_path=os.environ.get("BURSTCLAIM_DB") or str(DEFAULT_DB_PATH))


def build_group_handler(cfg: BurstclaimConfig) -> GroupHandler | None:
    responder = build_responder(cfg)
    dispatcher = build_dispatcher(cfg)
    if responder is None or dispatcher is None:
        return None
    return group_handler(
        responder=responder,
        dispatcher=dispatcher,
        settings=DebounceSettings.from_config(cfg),
    )


def build_runtime(cfg: BurstclaimConfig, db_path: Path | str) -> WebhookRuntime:
    runtime = WebhookRuntime(db_path=str(db_path))
    handler = build_group_handler(cfg)
    if handler is None:
        logger.warning("responder or relay not configured; events are stored but not answered")
    else:
        runtime.flusher = GroupFlusher(
            handler,
            db_path=db_path,
            delay_ms=cfg.debounce_window_ms,
            enabled=cfg.auto_flush,
        )
        runtime.sweeper = GroupSweeper(
            handler,
            db_path=db_path,
            settings=DebounceSettings.from_config(cfg),
            interval_ms=cfg.sweeper_interval_ms,
            stuck_batch_ms=cfg.stuck_batch_ms,
            retention_ms=cfg.event_retention_ms,
            enabled=cfg.sweeper_enabled,
        )
    provider = build_provider(cfg)
    if provider is not None:
        runtime.sync_trigger = SyncTrigger(
            cfg,
            db_path=db_path,
            provider=provider,
            dispatcher=build_dispatcher(cfg),
        )
    return runtime


class WebhookHandler(BaseHTTPRequestHandler):
    runtime: WebhookRuntime = RUNTIME

    def _send_json(self, payload: dict, status: int = 200) -> None:
        send_json_response(self, payload, status=status)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A003
        if os.environ.get("BURSTCLAIM_WEBHOOK_LOGS") == "1":
            super().log_message(format, *args)

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path == "/health":
            self._send_json({"ok": True})
            return
        store: CoordinationStore | None = None
        try:
            store = CoordinationStore(self.runtime.db_path)
            if webhook_routes_stats.handle_get(self, store, parsed.path, parsed.query):
                return
            if webhook_routes_events.handle_get(self, store, parsed.path, parsed.query):
                return
            self.send_response(404)
            self.end_headers()
        except Exception as exc:  # pragma: no cover
            logger.exception("webhook GET failed", extra={"path": parsed.path}, exc_info=exc)
            self._send_json(internal_error_payload(exc), status=500)
        finally:
            if store is not None:
                store.close()

    def do_POST(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if webhook_routes_events.handle_post(
            self,
            path=parsed.path,
            store_factory=CoordinationStore,
            db_path=self.runtime.db_path,
            flusher=self.runtime.flusher,
        ):
            return
        if webhook_routes_records.handle_post(
            self,
            path=parsed.path,
            sync_trigger=self.runtime.sync_trigger,
        ):
            return
        self.send_response(404)
        self.end_headers()


def build_webhook_handler(runtime: WebhookRuntime) -> type[WebhookHandler]:
    class Handler(WebhookHandler):
        pass

    Handler.runtime = runtime
    return Handler


def port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.2)
        try:
            return sock.connect_ex((host, port)) == 0
        except OSError:
            return False


def serve(
    cfg: BurstclaimConfig,
    *,
    db_path: Path | str = DEFAULT_DB_PATH,
    host: str | None = None,
    port: int | None = None,
    stop_event: threading.Event | None = None,
) -> None:
    runtime = build_runtime(cfg, db_path)
    bind_host = host or cfg.webhook_host
    bind_port = port or cfg.webhook_port
    server = ThreadingHTTPServer((bind_host, bind_port), build_webhook_handler(runtime))
    if runtime.sweeper is not None:
        runtime.sweeper.start()
    logger.info("webhook listening", extra={"host": bind_host, "port": bind_port})
    try:
        if stop_event is None:
            server.serve_forever()
            return
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        stop_event.wait()
        server.shutdown()
    finally:
        server.server_close()
        if runtime.sweeper is not None:
            runtime.sweeper.stop()
        if runtime.flusher is not None:
            runtime.flusher.cancel_all()
