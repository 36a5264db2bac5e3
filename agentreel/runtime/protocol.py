from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Mapping, Union

from .ids import now_ts_ms


class EventKind(StrEnum):
    USER_MESSAGE = "user.message"
    USER_ASK = "user.ask"
    USER_ASK_ANSWERED = "user.ask_answered"

    ASSISTANT_DELTA = "assistant.message_delta"
    ASSISTANT_MESSAGE = "assistant.message"
    ASSISTANT_INTENT = "assistant.intent"
    ASSISTANT_USAGE = "assistant.usage"
    REASONING_DELTA = "assistant.reasoning_delta"
    REASONING = "assistant.reasoning"

    TOOL_START = "tool.start"
    TOOL_PARTIAL = "tool.partial"
    TOOL_PROGRESS = "tool.progress"
    TOOL_COMPLETE = "tool.complete"

    SUBAGENT_STARTED = "subagent.started"
    SUBAGENT_COMPLETED = "subagent.completed"
    SUBAGENT_FAILED = "subagent.failed"

    SESSION_IDLE = "session.idle"
    SESSION_ERROR = "session.error"
    SESSION_MODEL_CHANGE = "session.model_change"
    SESSION_TRUNCATION = "session.truncation"
    SESSION_COMPACTION_START = "session.compaction_start"
    SESSION_COMPACTION_COMPLETE = "session.compaction_complete"
    SESSION_SHUTDOWN = "session.shutdown"

    TURN_START = "turn.start"
    TURN_END = "turn.end"
    SKILL_INVOKED = "skill.invoked"
    HOOK_START = "hook.start"
    HOOK_END = "hook.end"

    PERMISSION_REQUESTED = "permission.requested"
    PERMISSION_RESOLVED = "permission.resolved"


# Kinds that become SessionEventEntry rows without any correlation.
SESSION_EVENT_KINDS = frozenset(
    {
        EventKind.SESSION_ERROR,
        EventKind.SESSION_MODEL_CHANGE,
        EventKind.SESSION_TRUNCATION,
        EventKind.SESSION_COMPACTION_START,
        EventKind.SESSION_COMPACTION_COMPLETE,
        EventKind.SESSION_SHUTDOWN,
        EventKind.TURN_START,
        EventKind.TURN_END,
        EventKind.SKILL_INVOKED,
        EventKind.HOOK_START,
        EventKind.HOOK_END,
        EventKind.PERMISSION_REQUESTED,
        EventKind.PERMISSION_RESOLVED,
    }
)


@dataclass(frozen=True, slots=True)
class RawEvent:
    """One record of the inbound stream, exactly as it is persisted in the event log."""

    kind: str
    payload: dict[str, Any]
    timestamp: int
    seq: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "kind": self.kind,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }
        if self.seq is not None:
            out["seq"] = self.seq
        return out

    @staticmethod
    def from_dict(raw: Mapping[str, Any]) -> "RawEvent":
        # Accept both the enveloped shape and the flat shape agents emit
        # ({"type": "tool.start", "toolCallId": ...}). In the flat shape "kind"
        # may be a payload field, so "type" wins.
        payload_raw = raw.get("payload")
        if isinstance(payload_raw, Mapping):
            kind = raw.get("kind")
            if kind is None:
                kind = raw.get("type")
            payload = dict(payload_raw)
        else:
            kind = raw.get("type")
            if kind is None:
                kind = raw.get("kind")
            skip = {"type", "timestamp", "seq", "payload"} if "type" in raw else {"kind", "timestamp", "seq", "payload"}
            payload = {k: v for k, v in raw.items() if k not in skip}
        ts_raw = raw.get("timestamp")
        try:
            timestamp = int(ts_raw) if ts_raw is not None else 0
        except (TypeError, ValueError):
            timestamp = 0
        seq_raw = raw.get("seq")
        try:
            seq = int(seq_raw) if seq_raw is not None else None
        except (TypeError, ValueError):
            seq = None
        return RawEvent(kind=str(kind or ""), payload=payload, timestamp=timestamp, seq=seq)

    @staticmethod
    def now(kind: str, payload: Mapping[str, Any] | None = None) -> "RawEvent":
        return RawEvent(kind=str(kind), payload=dict(payload or {}), timestamp=now_ts_ms())


# --- typed variants ---
#
# Every variant carries `timestamp` and `defaulted` (names of fields that were
# missing or mistyped in the raw payload and fell back to a default).


@dataclass(frozen=True, slots=True)
class UserMessage:
    content: str
    attachments: tuple[str, ...] = ()
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.USER_MESSAGE


@dataclass(frozen=True, slots=True)
class AssistantDelta:
    delta: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.ASSISTANT_DELTA


@dataclass(frozen=True, slots=True)
class AssistantMessage:
    content: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.ASSISTANT_MESSAGE


@dataclass(frozen=True, slots=True)
class IntentReport:
    intent: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.ASSISTANT_INTENT


@dataclass(frozen=True, slots=True)
class UsageReport:
    input_tokens: int
    output_tokens: int
    model: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.ASSISTANT_USAGE


@dataclass(frozen=True, slots=True)
class ReasoningDelta:
    reasoning_id: str
    delta: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.REASONING_DELTA


@dataclass(frozen=True, slots=True)
class ReasoningFinal:
    reasoning_id: str
    content: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.REASONING


@dataclass(frozen=True, slots=True)
class ToolStart:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.TOOL_START


@dataclass(frozen=True, slots=True)
class ToolPartial:
    tool_call_id: str
    output: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.TOOL_PARTIAL


@dataclass(frozen=True, slots=True)
class ToolProgress:
    tool_call_id: str
    message: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.TOOL_PROGRESS


@dataclass(frozen=True, slots=True)
class ToolComplete:
    tool_call_id: str
    success: bool
    result: str | None = None
    error: str | None = None
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.TOOL_COMPLETE


@dataclass(frozen=True, slots=True)
class SubagentStarted:
    tool_call_id: str
    name: str
    display_name: str
    description: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.SUBAGENT_STARTED


@dataclass(frozen=True, slots=True)
class SubagentCompleted:
    tool_call_id: str
    name: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.SUBAGENT_COMPLETED


@dataclass(frozen=True, slots=True)
class SubagentFailed:
    tool_call_id: str
    name: str
    error: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.SUBAGENT_FAILED


@dataclass(frozen=True, slots=True)
class AskUserRequest:
    request_id: str
    question: str
    choices: tuple[str, ...] | None = None
    allow_freeform: bool = True
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.USER_ASK


@dataclass(frozen=True, slots=True)
class AskUserAnswered:
    request_id: str
    answer: str
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.USER_ASK_ANSWERED


@dataclass(frozen=True, slots=True)
class SessionIdle:
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()
    kind = EventKind.SESSION_IDLE


@dataclass(frozen=True, slots=True)
class SessionEvent:
    """session.* / turn.* / skill.* / hook.* / permission.* events, kept verbatim."""

    event_kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()

    @property
    def kind(self) -> EventKind:
        return self.event_kind


@dataclass(frozen=True, slots=True)
class UnknownEvent:
    raw_kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0
    defaulted: tuple[str, ...] = ()

    @property
    def kind(self) -> str:
        return self.raw_kind


AgentEvent = Union[
    UserMessage,
    AssistantDelta,
    AssistantMessage,
    IntentReport,
    UsageReport,
    ReasoningDelta,
    ReasoningFinal,
    ToolStart,
    ToolPartial,
    ToolProgress,
    ToolComplete,
    SubagentStarted,
    SubagentCompleted,
    SubagentFailed,
    AskUserRequest,
    AskUserAnswered,
    SessionIdle,
    SessionEvent,
    UnknownEvent,
]


class _Fields:
    """Reads payload fields with defaults, remembering which ones fell back."""

    def __init__(self, payload: Mapping[str, Any]) -> None:
        self._p = payload
        self.defaulted: list[str] = []

    def text(self, *names: str, default: str = "") -> str:
        for name in names:
            value = self._p.get(name)
            if isinstance(value, str):
                return value
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return str(value)
        self.defaulted.append(names[0])
        return default

    def optional_text(self, *names: str) -> str | None:
        for name in names:
            value = self._p.get(name)
            if isinstance(value, str):
                return value
        return None

    def flag(self, name: str, *, default: bool) -> bool:
        value = self._p.get(name)
        if isinstance(value, bool):
            return value
        self.defaulted.append(name)
        return default

    def number(self, name: str) -> int:
        value = self._p.get(name)
        if isinstance(value, bool):
            self.defaulted.append(name)
            return 0
        if isinstance(value, (int, float)):
            return int(value)
        self.defaulted.append(name)
        return 0

    def mapping(self, *names: str) -> dict[str, Any]:
        for name in names:
            value = self._p.get(name)
            if isinstance(value, Mapping):
                return dict(value)
        self.defaulted.append(names[0])
        return {}

    def strings(self, name: str) -> tuple[str, ...] | None:
        value = self._p.get(name)
        if value is None:
            return None
        if isinstance(value, (list, tuple)):
            return tuple(str(v) for v in value if v is not None)
        self.defaulted.append(name)
        return None

    def nested_text(self, name: str, key: str) -> str | None:
        # tool.complete results/errors arrive either as plain strings or as
        # {"content": ...} / {"message": ...} objects.
        value = self._p.get(name)
        if isinstance(value, str):
            return value
        if isinstance(value, Mapping):
            inner = value.get(key)
            if isinstance(inner, str):
                return inner
        return None


def parse_event(raw: RawEvent | Mapping[str, Any]) -> AgentEvent:
    """
    Turn a raw record into its typed variant.

    Never raises for payload problems: missing fields default and are listed
    in `defaulted`. Unrecognised kinds become `UnknownEvent`.
    """

    if not isinstance(raw, RawEvent):
        raw = RawEvent.from_dict(raw)
    ts = raw.timestamp
    f = _Fields(raw.payload)

    try:
        kind = EventKind(raw.kind)
    except ValueError:
        return UnknownEvent(raw_kind=raw.kind, payload=dict(raw.payload), timestamp=ts)

    if kind is EventKind.USER_MESSAGE:
        content = f.text("content", "prompt")
        attachments = f.strings("attachments") or ()
        return UserMessage(content=content, attachments=attachments, timestamp=ts, defaulted=tuple(f.defaulted))
    if kind is EventKind.ASSISTANT_DELTA:
        delta = f.text("delta", "deltaContent")
        return AssistantDelta(delta=delta, timestamp=ts, defaulted=tuple(f.defaulted))
    if kind is EventKind.ASSISTANT_MESSAGE:
        content = f.text("content")
        return AssistantMessage(content=content, timestamp=ts, defaulted=tuple(f.defaulted))
    if kind is EventKind.ASSISTANT_INTENT:
        intent = f.text("intent")
        return IntentReport(intent=intent, timestamp=ts, defaulted=tuple(f.defaulted))
    if kind is EventKind.ASSISTANT_USAGE:
        return UsageReport(
            input_tokens=f.number("inputTokens"),
            output_tokens=f.number("outputTokens"),
            model=f.text("model"),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.REASONING_DELTA:
        return ReasoningDelta(
            reasoning_id=f.text("reasoningId"),
            delta=f.text("delta", "deltaContent"),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.REASONING:
        return ReasoningFinal(
            reasoning_id=f.text("reasoningId"),
            content=f.text("content"),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.TOOL_START:
        return ToolStart(
            tool_call_id=f.text("toolCallId"),
            tool_name=f.text("toolName"),
            args=f.mapping("args", "arguments", "toolArgs"),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.TOOL_PARTIAL:
        return ToolPartial(
            tool_call_id=f.text("toolCallId"),
            output=f.text("output", "partialOutput"),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.TOOL_PROGRESS:
        return ToolProgress(
            tool_call_id=f.text("toolCallId"),
            message=f.text("message", "progressMessage"),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.TOOL_COMPLETE:
        return ToolComplete(
            tool_call_id=f.text("toolCallId"),
            success=f.flag("success", default=True),
            result=f.nested_text("result", "content"),
            error=f.nested_text("error", "message"),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.SUBAGENT_STARTED:
        call_id = f.text("toolCallId")
        name = f.text("name")
        display = f.optional_text("displayName") or name
        return SubagentStarted(
            tool_call_id=call_id,
            name=name,
            display_name=display,
            description=f.text("description"),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.SUBAGENT_COMPLETED:
        return SubagentCompleted(
            tool_call_id=f.text("toolCallId"),
            name=f.text("name"),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.SUBAGENT_FAILED:
        return SubagentFailed(
            tool_call_id=f.text("toolCallId"),
            name=f.text("name"),
            error=f.text("error", default="Unknown error"),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.USER_ASK:
        return AskUserRequest(
            request_id=f.text("requestId"),
            question=f.text("question"),
            choices=f.strings("choices"),
            allow_freeform=f.flag("allowFreeform", default=True),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.USER_ASK_ANSWERED:
        return AskUserAnswered(
            request_id=f.text("requestId"),
            answer=f.text("answer"),
            timestamp=ts,
            defaulted=tuple(f.defaulted),
        )
    if kind is EventKind.SESSION_IDLE:
        return SessionIdle(timestamp=ts)

    if kind in SESSION_EVENT_KINDS:
        return SessionEvent(event_kind=kind, payload=dict(raw.payload), timestamp=ts)
    return UnknownEvent(raw_kind=raw.kind, payload=dict(raw.payload), timestamp=ts)


def to_raw(event: AgentEvent) -> RawEvent:
    """Inverse of `parse_event` for typed variants (used by hosts and tests)."""

    ts = event.timestamp
    if isinstance(event, UserMessage):
        payload: dict[str, Any] = {"content": event.content}
        if event.attachments:
            payload["attachments"] = list(event.attachments)
    elif isinstance(event, AssistantDelta):
        payload = {"delta": event.delta}
    elif isinstance(event, AssistantMessage):
        payload = {"content": event.content}
    elif isinstance(event, IntentReport):
        payload = {"intent": event.intent}
    elif isinstance(event, UsageReport):
        payload = {"inputTokens": event.input_tokens, "outputTokens": event.output_tokens, "model": event.model}
    elif isinstance(event, ReasoningDelta):
        payload = {"reasoningId": event.reasoning_id, "delta": event.delta}
    elif isinstance(event, ReasoningFinal):
        payload = {"reasoningId": event.reasoning_id, "content": event.content}
    elif isinstance(event, ToolStart):
        payload = {"toolCallId": event.tool_call_id, "toolName": event.tool_name, "args": dict(event.args)}
    elif isinstance(event, ToolPartial):
        payload = {"toolCallId": event.tool_call_id, "output": event.output}
    elif isinstance(event, ToolProgress):
        payload = {"toolCallId": event.tool_call_id, "message": event.message}
    elif isinstance(event, ToolComplete):
        payload = {"toolCallId": event.tool_call_id, "success": event.success}
        if event.result is not None:
            payload["result"] = event.result
        if event.error is not None:
            payload["error"] = event.error
    elif isinstance(event, SubagentStarted):
        payload = {
            "toolCallId": event.tool_call_id,
            "name": event.name,
            "displayName": event.display_name,
            "description": event.description,
        }
    elif isinstance(event, SubagentCompleted):
        payload = {"toolCallId": event.tool_call_id, "name": event.name}
    elif isinstance(event, SubagentFailed):
        payload = {"toolCallId": event.tool_call_id, "name": event.name, "error": event.error}
    elif isinstance(event, AskUserRequest):
        payload = {"requestId": event.request_id, "question": event.question, "allowFreeform": event.allow_freeform}
        if event.choices is not None:
            payload["choices"] = list(event.choices)
    elif isinstance(event, AskUserAnswered):
        payload = {"requestId": event.request_id, "answer": event.answer}
    elif isinstance(event, SessionIdle):
        payload = {}
    else:
        payload = dict(event.payload)
    return RawEvent(kind=str(event.kind), payload=payload, timestamp=ts)
