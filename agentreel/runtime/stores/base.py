from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, Iterator

from ..permissions import PermissionRule
from ..protocol import RawEvent


class RuleStore(ABC):
    @abstractmethod
    def load(self) -> list[PermissionRule]: ...

    @abstractmethod
    def save(self, rules: Iterable[PermissionRule]) -> None: ...


class EventLogStore(ABC):
    @abstractmethod
    def append(self, session_id: str, event: RawEvent) -> None: ...

    @abstractmethod
    def read(self, session_id: str) -> Iterator[RawEvent]: ...

    @abstractmethod
    def list_sessions(self) -> list[str]:
        """Session ids with a log, oldest first."""

    @abstractmethod
    def delete(self, session_id: str) -> bool: ...

    def exists(self, session_id: str) -> bool:
        return session_id in self.list_sessions()

    def prune(self, max_sessions: int, *, keep: Iterable[str] = ()) -> list[str]:
        """Drop the oldest logs beyond `max_sessions`; returns the deleted ids."""

        protected = set(keep)
        sessions = self.list_sessions()
        excess = len(sessions) - max(0, max_sessions)
        deleted: list[str] = []
        for session_id in sessions:
            if excess <= 0:
                break
            if session_id in protected:
                continue
            if self.delete(session_id):
                deleted.append(session_id)
                excess -= 1
        return deleted


class SessionStore(ABC):
    @abstractmethod
    def create_session(self, meta: dict[str, Any]) -> str: ...

    @abstractmethod
    def get_session(self, session_id: str) -> dict[str, Any]: ...

    @abstractmethod
    def list_sessions(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]: ...

    @abstractmethod
    def update_session(self, session_id: str, patch: dict[str, Any]) -> None: ...

    @abstractmethod
    def delete_session(self, session_id: str) -> bool: ...
