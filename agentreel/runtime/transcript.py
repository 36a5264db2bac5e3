from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Iterator, Mapping, Union


class ToolType(StrEnum):
    SHELL = "shell"
    FILE_EDIT = "file_edit"
    FILE_READ = "file_read"
    GENERIC = "generic"


@dataclass(slots=True)
class UserEntry:
    entry_id: str
    content: str
    attachments: list[str] = field(default_factory=list)
    created_at: int = 0
    entry_type = "user"


@dataclass(slots=True)
class AssistantEntry:
    entry_id: str
    content: str = ""
    streaming: bool = True
    created_at: int = 0
    entry_type = "assistant"


@dataclass(slots=True)
class ToolCallEntry:
    """
    One tool invocation (or sub-agent run) in the transcript.

    `payload` starts as the start event's args plus bookkeeping fields and is
    patched in place by partial/progress/complete events.
    """

    entry_id: str
    tool_type: ToolType
    tool_name: str
    title: str
    correlation_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    completed: bool = False
    success: bool | None = None
    error: str | None = None
    created_at: int = 0
    entry_type = "tool_call"


@dataclass(slots=True)
class ReasoningEntry:
    entry_id: str
    reasoning_id: str
    content: str = ""
    streaming: bool = True
    created_at: int = 0
    entry_type = "reasoning"


@dataclass(slots=True)
class AskUserEntry:
    entry_id: str
    request_id: str
    question: str
    choices: list[str] | None = None
    allow_freeform: bool = True
    answered: bool = False
    answer: str | None = None
    created_at: int = 0
    entry_type = "ask_user"


@dataclass(slots=True)
class SessionEventEntry:
    entry_id: str
    event_kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: int = 0
    entry_type = "session_event"


Entry = Union[UserEntry, AssistantEntry, ToolCallEntry, ReasoningEntry, AskUserEntry, SessionEventEntry]

_ENTRY_TYPES: dict[str, type] = {
    cls.entry_type: cls
    for cls in (UserEntry, AssistantEntry, ToolCallEntry, ReasoningEntry, AskUserEntry, SessionEventEntry)
}


def entry_to_dict(entry: Entry) -> dict[str, Any]:
    out: dict[str, Any] = {"type": entry.entry_type}
    for name in entry.__dataclass_fields__:
        value = getattr(entry, name)
        if isinstance(value, ToolType):
            value = value.value
        elif isinstance(value, dict):
            value = dict(value)
        elif isinstance(value, list):
            value = list(value)
        out[name] = value
    return out


def entry_from_dict(raw: Mapping[str, Any]) -> Entry:
    entry_type = str(raw.get("type") or "")
    cls = _ENTRY_TYPES.get(entry_type)
    if cls is None:
        raise ValueError(f"Unknown transcript entry type: {entry_type!r}")
    kwargs = {name: raw[name] for name in cls.__dataclass_fields__ if name in raw}
    if cls is ToolCallEntry:
        kwargs["tool_type"] = ToolType(str(kwargs.get("tool_type") or ToolType.GENERIC))
    return cls(**kwargs)


class Transcript:
    """
    Ordered entries plus an id -> position index.

    Entries are only ever appended; positions never change once assigned.
    """

    def __init__(self, entries: list[Entry] | None = None) -> None:
        self._entries: list[Entry] = []
        self._index: dict[str, int] = {}
        for entry in entries or []:
            self.append(entry)

    def append(self, entry: Entry) -> int:
        if entry.entry_id in self._index:
            raise ValueError(f"Duplicate entry id: {entry.entry_id}")
        position = len(self._entries)
        self._entries.append(entry)
        self._index[entry.entry_id] = position
        return position

    def get(self, entry_id: str) -> Entry | None:
        position = self._index.get(entry_id)
        if position is None:
            return None
        return self._entries[position]

    def position(self, entry_id: str) -> int | None:
        return self._index.get(entry_id)

    def last(self) -> Entry | None:
        return self._entries[-1] if self._entries else None

    def __getitem__(self, position: int) -> Entry:
        return self._entries[position]

    def __iter__(self) -> Iterator[Entry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def to_dict(self) -> dict[str, Any]:
        return {"entries": [entry_to_dict(e) for e in self._entries]}

    @staticmethod
    def from_dict(raw: Mapping[str, Any]) -> "Transcript":
        entries_raw = raw.get("entries") or []
        if not isinstance(entries_raw, list):
            raise ValueError("Transcript entries must be a list")
        return Transcript([entry_from_dict(e) for e in entries_raw if isinstance(e, Mapping)])


def encode_transcript(transcript: Transcript) -> str:
    """Canonical JSON; two equal transcripts encode to identical strings."""

    return json.dumps(transcript.to_dict(), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
