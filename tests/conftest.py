from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from agentreel.runtime.protocol import RawEvent
from agentreel.runtime.stores import MemoryEventLogStore, MemoryRuleStore, MemorySessionStore


class EventFactory:
    """Builds RawEvents with increasing timestamps unless one is given."""

    def __init__(self, start: int = 1_000) -> None:
        self._ts = start

    def __call__(self, kind: str, /, ts: int | None = None, **payload: Any) -> RawEvent:
        if ts is None:
            self._ts += 100
            ts = self._ts
        return RawEvent(kind=kind, payload=payload, timestamp=ts)


@pytest.fixture
def ev() -> EventFactory:
    return EventFactory()


@pytest.fixture
def rule_store() -> MemoryRuleStore:
    return MemoryRuleStore()


@pytest.fixture
def event_log() -> MemoryEventLogStore:
    return MemoryEventLogStore()


@pytest.fixture
def session_store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "agentreel-home"
    monkeypatch.setenv("AGENTREEL_HOME", str(home))
    monkeypatch.delenv("AGENTREEL_CONFIG_PATH", raising=False)
    return home
