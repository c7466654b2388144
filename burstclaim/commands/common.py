from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich import print

from burstclaim.config import BurstclaimConfig, load_config, read_config_file


def load_config_or_exit(path: Path | None = None) -> BurstclaimConfig:
    try:
        read_config_file(path)
    except ValueError as exc:
        print(f"[red]Invalid config: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    return load_config(path)


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def format_amount(amount: Any, currency: str | None = None) -> str:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return "?"
    if currency and currency.upper() != "USD":
        return f"{value:,.2f} {currency.upper()}"
    return f"${value:,.2f}"
