from __future__ import annotations

from .base import EventLogStore, RuleStore, SessionStore
from .fs import FileEventLogStore, FileRuleStore, FileSessionStore
from .memory import MemoryEventLogStore, MemoryRuleStore, MemorySessionStore

__all__ = [
    "EventLogStore",
    "RuleStore",
    "SessionStore",
    "FileEventLogStore",
    "FileRuleStore",
    "FileSessionStore",
    "MemoryEventLogStore",
    "MemoryRuleStore",
    "MemorySessionStore",
]
