from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from burstclaim.store import CoordinationStore


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for key in list(os.environ):
        if key.startswith("BURSTCLAIM_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("BURSTCLAIM_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "burstclaim.sqlite"


@pytest.fixture
def store(db_path: Path) -> Iterator[CoordinationStore]:
    store = CoordinationStore(db_path)
    try:
        yield store
    finally:
        store.close()
