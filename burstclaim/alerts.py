from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from .relay import NotificationDispatcher
from .store import CoordinationStore
from .store.utils import iso_before

logger = logging.getLogger(__name__)

AlertComposer = Callable[[dict[str, Any]], str | None]

_CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "CAD": "$", "AUD": "$"}


def compose_alert(record: dict[str, Any]) -> str | None:
    amount = float(record.get("amount") or 0)
    if amount <= 0:
        return None
    currency = str(record.get("iso_currency_code") or "USD").upper()
    symbol = _CURRENCY_SYMBOLS.get(currency)
    money = f"{symbol}{amount:,.2f}" if symbol else f"{amount:,.2f} {currency}"
    merchant = record.get("merchant_name") or record.get("name") or "an unknown merchant"
    text = f"{money} at {merchant}"
    if record.get("pending"):
        text += " (pending)"
    return text


def dispatch_alerts(
    store: CoordinationStore,
    dispatcher: NotificationDispatcher,
    *,
    recipient: str,
    composer: AlertComposer = compose_alert,
    min_amount: float = 0.0,
    retry_window_s: int | None = 86400,
    spacing_ms: int = 1000,
    limit: int = 50,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, int]:
    """Alert on every eligible record at most once.

    Candidates are read from the store at sending time, so records released
    after an earlier failure, or missed by a crashed run, are picked up again.
    """
    since_iso = iso_before(seconds=retry_window_s) if retry_window_s else None
    candidates = store.eligible_alert_records(
        min_amount=min_amount, since_iso=since_iso, limit=limit
    )
    counts = {"candidates": len(candidates), "sent": 0, "lost": 0, "failed": 0, "suppressed": 0}
    sent_any = False
    for record in candidates:
        record_id = str(record["id"])
        if sent_any and spacing_ms > 0:
            sleep(spacing_ms / 1000.0)
        if not store.try_claim_alert(record_id):
            counts["lost"] += 1
            continue
        delivery_id: str | None = None
        try:
            text = composer(record)
            if text:
                delivery_id = dispatcher.deliver(
                    recipient, {"text": text, "passthrough": record_id}
                )
        except Exception as exc:
            store.release_alert_claim(record_id)
            counts["failed"] += 1
            logger.exception(
                "alert delivery failed, claim released",
                extra={"record_id": record_id},
                exc_info=exc,
            )
            continue
        if not text:
            # Nothing worth sending; keep the claim so the record is not retried.
            store.confirm_alert(record_id, None)
            counts["suppressed"] += 1
            continue
        sent_any = True
        store.confirm_alert(record_id, delivery_id)
        counts["sent"] += 1
        logger.info(
            "alert sent",
            extra={"record_id": record_id, "delivery_id": delivery_id},
        )
    return counts
