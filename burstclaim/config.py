from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/burstclaim/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "debounce_window_ms": "BURSTCLAIM_DEBOUNCE_WINDOW_MS",
    "debounce_max_wait_ms": "BURSTCLAIM_DEBOUNCE_MAX_WAIT_MS",
    "debounce_min_interval_ms": "BURSTCLAIM_DEBOUNCE_MIN_INTERVAL_MS",
    "debounce_poll_budget_ms": "BURSTCLAIM_DEBOUNCE_POLL_BUDGET_MS",
    "alert_recipient": "BURSTCLAIM_ALERT_RECIPIENT",
    "alert_min_amount": "BURSTCLAIM_ALERT_MIN_AMOUNT",
    "alert_spacing_ms": "BURSTCLAIM_ALERT_SPACING_MS",
    "alert_retry_window_s": "BURSTCLAIM_ALERT_RETRY_WINDOW_S",
    "alert_on_initial_sync": "BURSTCLAIM_ALERT_ON_INITIAL_SYNC",
    "sync_page_size": "BURSTCLAIM_SYNC_PAGE_SIZE",
    "sync_interval_s": "BURSTCLAIM_SYNC_INTERVAL_S",
    "provider_url": "BURSTCLAIM_PROVIDER_URL",
    "relay_url": "BURSTCLAIM_RELAY_URL",
    "responder_provider": "BURSTCLAIM_RESPONDER_PROVIDER",
    "responder_model": "BURSTCLAIM_RESPONDER_MODEL",
    "webhook_host": "BURSTCLAIM_WEBHOOK_HOST",
    "webhook_port": "BURSTCLAIM_WEBHOOK_PORT",
    "log_level": "BURSTCLAIM_LOG_LEVEL",
}

_INT_KEYS = {
    "debounce_window_ms",
    "debounce_max_wait_ms",
    "debounce_min_interval_ms",
    "debounce_poll_budget_ms",
    "alert_spacing_ms",
    "alert_retry_window_s",
    "sync_page_size",
    "sync_interval_s",
    "webhook_port",
    "sweeper_interval_ms",
    "stuck_batch_ms",
    "event_retention_ms",
    "relay_timeout_s",
    "provider_timeout_s",
    "responder_max_tokens",
}

_FLOAT_KEYS = {"alert_min_amount"}

_BOOL_KEYS = {"alert_on_initial_sync", "auto_flush", "sweeper_enabled"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("BURSTCLAIM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class BurstclaimConfig:
    # Quiescence window W, forced flush Tmax, and the poll floor.
    debounce_window_ms: int = 2000
    debounce_max_wait_ms: int = 30000
    debounce_min_interval_ms: int = 500
    # How long one worker invocation may spend polling before handing off.
    debounce_poll_budget_ms: int = 30000
    auto_flush: bool = True

    alert_recipient: str | None = None
    alert_min_amount: float = 0.0
    alert_spacing_ms: int = 1000
    alert_retry_window_s: int = 86400
    alert_on_initial_sync: bool = False

    sync_page_size: int = 500
    sync_interval_s: int = 3600

    provider_url: str | None = None
    provider_token: str | None = None
    provider_timeout_s: int = 30
    relay_url: str | None = None
    relay_auth_key: str | None = None
    relay_secret_key: str | None = None
    relay_sender_name: str | None = None
    relay_timeout_s: int = 15

    responder_provider: str | None = None
    responder_model: str | None = None
    responder_api_key: str | None = None
    responder_max_tokens: int = 600
    fallback_reply: str | None = "Sorry, I hit a snag there. Mind sending that again?"

    webhook_host: str = "127.0.0.1"
    webhook_port: int = 38990
    sweeper_enabled: bool = True
    sweeper_interval_ms: int = 5000
    stuck_batch_ms: int = 300000
    event_retention_ms: int = 0
    log_level: str = "INFO"


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> BurstclaimConfig:
    cfg = BurstclaimConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_env(cfg)
    return cfg


def _apply_dict(cfg: BurstclaimConfig, data: dict[str, Any]) -> BurstclaimConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key in _BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
            continue
        setattr(cfg, key, value)
    return cfg


def _apply_env(cfg: BurstclaimConfig) -> BurstclaimConfig:
    cfg.debounce_window_ms = _parse_int(
        os.getenv("BURSTCLAIM_DEBOUNCE_WINDOW_MS"),
        cfg.debounce_window_ms,
        key="debounce_window_ms",
    )
    cfg.debounce_max_wait_ms = _parse_int(
        os.getenv("BURSTCLAIM_DEBOUNCE_MAX_WAIT_MS"),
        cfg.debounce_max_wait_ms,
        key="debounce_max_wait_ms",
    )
    cfg.debounce_min_interval_ms = _parse_int(
        os.getenv("BURSTCLAIM_DEBOUNCE_MIN_INTERVAL_MS"),
        cfg.debounce_min_interval_ms,
        key="debounce_min_interval_ms",
    )
    cfg.debounce_poll_budget_ms = _parse_int(
        os.getenv("BURSTCLAIM_DEBOUNCE_POLL_BUDGET_MS"),
        cfg.debounce_poll_budget_ms,
        key="debounce_poll_budget_ms",
    )
    cfg.auto_flush = _parse_bool(os.getenv("BURSTCLAIM_AUTO_FLUSH"), cfg.auto_flush)
    cfg.alert_recipient = os.getenv("BURSTCLAIM_ALERT_RECIPIENT", cfg.alert_recipient)
    cfg.alert_min_amount = _parse_float(
        os.getenv("BURSTCLAIM_ALERT_MIN_AMOUNT"), cfg.alert_min_amount, key="alert_min_amount"
    )
    cfg.alert_spacing_ms = _parse_int(
        os.getenv("BURSTCLAIM_ALERT_SPACING_MS"), cfg.alert_spacing_ms, key="alert_spacing_ms"
    )
    cfg.alert_retry_window_s = _parse_int(
        os.getenv("BURSTCLAIM_ALERT_RETRY_WINDOW_S"),
        cfg.alert_retry_window_s,
        key="alert_retry_window_s",
    )
    cfg.alert_on_initial_sync = _parse_bool(
        os.getenv("BURSTCLAIM_ALERT_ON_INITIAL_SYNC"), cfg.alert_on_initial_sync
    )
    cfg.sync_page_size = _parse_int(
        os.getenv("BURSTCLAIM_SYNC_PAGE_SIZE"), cfg.sync_page_size, key="sync_page_size"
    )
    cfg.sync_interval_s = _parse_int(
        os.getenv("BURSTCLAIM_SYNC_INTERVAL_S"), cfg.sync_interval_s, key="sync_interval_s"
    )
    cfg.provider_url = os.getenv("BURSTCLAIM_PROVIDER_URL", cfg.provider_url)
    cfg.provider_token = os.getenv("BURSTCLAIM_PROVIDER_TOKEN", cfg.provider_token)
    cfg.relay_url = os.getenv("BURSTCLAIM_RELAY_URL", cfg.relay_url)
    cfg.relay_auth_key = os.getenv("BURSTCLAIM_RELAY_AUTH_KEY", cfg.relay_auth_key)
    cfg.relay_secret_key = os.getenv("BURSTCLAIM_RELAY_SECRET_KEY", cfg.relay_secret_key)
    cfg.relay_sender_name = os.getenv("BURSTCLAIM_RELAY_SENDER_NAME", cfg.relay_sender_name)
    cfg.responder_provider = os.getenv("BURSTCLAIM_RESPONDER_PROVIDER", cfg.responder_provider)
    cfg.responder_model = os.getenv("BURSTCLAIM_RESPONDER_MODEL", cfg.responder_model)
    cfg.responder_api_key = os.getenv("BURSTCLAIM_RESPONDER_API_KEY", cfg.responder_api_key)
    cfg.fallback_reply = os.getenv("BURSTCLAIM_FALLBACK_REPLY", cfg.fallback_reply)
    cfg.webhook_host = os.getenv("BURSTCLAIM_WEBHOOK_HOST", cfg.webhook_host)
    cfg.webhook_port = _parse_int(
        os.getenv("BURSTCLAIM_WEBHOOK_PORT"), cfg.webhook_port, key="webhook_port"
    )
    cfg.sweeper_enabled = _parse_bool(os.getenv("BURSTCLAIM_SWEEPER"), cfg.sweeper_enabled)
    cfg.sweeper_interval_ms = _parse_int(
        os.getenv("BURSTCLAIM_SWEEPER_INTERVAL_MS"),
        cfg.sweeper_interval_ms,
        key="sweeper_interval_ms",
    )
    cfg.stuck_batch_ms = _parse_int(
        os.getenv("BURSTCLAIM_STUCK_BATCH_MS"), cfg.stuck_batch_ms, key="stuck_batch_ms"
    )
    cfg.event_retention_ms = _parse_int(
        os.getenv("BURSTCLAIM_EVENT_RETENTION_MS"),
        cfg.event_retention_ms,
        key="event_retention_ms",
    )
    cfg.log_level = os.getenv("BURSTCLAIM_LOG_LEVEL", cfg.log_level)
    return cfg
