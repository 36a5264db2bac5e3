from __future__ import annotations

import copy
from typing import Any, Iterable, Iterator

from ..errors import EventLogError, SessionNotFoundError
from ..ids import new_id, now_ts_ms
from ..permissions import PermissionRule
from ..protocol import RawEvent
from .base import EventLogStore, RuleStore, SessionStore
from .fs import _matches_filters


class MemoryRuleStore(RuleStore):
    def __init__(self, rules: Iterable[PermissionRule] = ()) -> None:
        self._rules = list(rules)
        self.saves = 0

    def load(self) -> list[PermissionRule]:
        return list(self._rules)

    def save(self, rules: Iterable[PermissionRule]) -> None:
        self._rules = list(rules)
        self.saves += 1


class MemoryEventLogStore(EventLogStore):
    def __init__(self) -> None:
        # dicts keep insertion order, which doubles as age order.
        self._logs: dict[str, list[RawEvent]] = {}

    def append(self, session_id: str, event: RawEvent) -> None:
        self._logs.setdefault(session_id, []).append(event)

    def read(self, session_id: str) -> Iterator[RawEvent]:
        if session_id not in self._logs:
            raise EventLogError(f"Event log not found: {session_id}", session_id=session_id)
        return iter(list(self._logs[session_id]))

    def list_sessions(self) -> list[str]:
        return list(self._logs)

    def delete(self, session_id: str) -> bool:
        return self._logs.pop(session_id, None) is not None


class MemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}

    def create_session(self, meta: dict[str, Any]) -> str:
        session_id = str(meta.get("session_id") or new_id("sess"))
        now = now_ts_ms()
        meta_out = dict(meta)
        meta_out["session_id"] = session_id
        meta_out.setdefault("created_at", now)
        meta_out["updated_at"] = now
        self._sessions[session_id] = meta_out
        return session_id

    def get_session(self, session_id: str) -> dict[str, Any]:
        if session_id not in self._sessions:
            raise SessionNotFoundError(session_id)
        return copy.deepcopy(self._sessions[session_id])

    def list_sessions(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        filters = dict(filters or {})
        out = [copy.deepcopy(m) for m in self._sessions.values() if _matches_filters(m, filters)]
        out.sort(key=lambda m: (m.get("updated_at") or 0, m.get("created_at") or 0), reverse=True)
        return out

    def update_session(self, session_id: str, patch: dict[str, Any]) -> None:
        if session_id not in self._sessions:
            raise SessionNotFoundError(session_id)
        self._sessions[session_id].update(patch)
        self._sessions[session_id]["updated_at"] = now_ts_ms()

    def delete_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None
