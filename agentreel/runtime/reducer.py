from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Iterable, Mapping

from .accumulator import PreviewBuffer, StreamAccumulator
from .correlator import Correlator
from .error_codes import ErrorCode
from .ids import SequentialIds
from .log import get_logger
from .protocol import (
    AgentEvent,
    AskUserAnswered,
    AskUserRequest,
    AssistantDelta,
    AssistantMessage,
    EventKind,
    IntentReport,
    RawEvent,
    ReasoningDelta,
    ReasoningFinal,
    SessionEvent,
    SessionIdle,
    SubagentCompleted,
    SubagentFailed,
    SubagentStarted,
    ToolComplete,
    ToolPartial,
    ToolProgress,
    ToolStart,
    UnknownEvent,
    UsageReport,
    UserMessage,
    parse_event,
)
from .tool_catalog import (
    INTENT_TOOL,
    intent_from_args,
    normalize_hidden,
    result_key,
    subagent_title,
    tool_title,
    tool_type_for,
)
from .transcript import (
    AskUserEntry,
    AssistantEntry,
    Entry,
    ReasoningEntry,
    SessionEventEntry,
    ToolCallEntry,
    ToolType,
    Transcript,
    UserEntry,
)

logger = get_logger(__name__)


class SignalKind(StrEnum):
    ENTRY_APPENDED = "entry_appended"
    ENTRY_UPDATED = "entry_updated"
    INTENT_CHANGED = "intent_changed"
    ACTIVITY_CHANGED = "activity_changed"
    PREVIEW_CHANGED = "preview_changed"
    USAGE_UPDATED = "usage_updated"
    MODEL_CHANGED = "model_changed"


@dataclass(frozen=True, slots=True)
class Signal:
    kind: SignalKind
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SessionSignals:
    """Transient indicators that live beside the transcript, not in it."""

    intent: str | None = None
    waiting: bool = False
    generating: bool = False
    generating_since: int | None = None
    preview: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    model: str | None = None

    def elapsed_s(self, now_ms: int) -> int:
        if not self.generating or self.generating_since is None:
            return 0
        return max(0, (now_ms - self.generating_since) // 1000)


@dataclass(slots=True)
class Diagnostics:
    events: int = 0
    unknown_correlation: int = 0
    malformed: int = 0
    unknown_kind: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "events": self.events,
            ErrorCode.UNKNOWN_CORRELATION.value: self.unknown_correlation,
            ErrorCode.MALFORMED_EVENT.value: self.malformed,
            ErrorCode.UNKNOWN_EVENT_KIND.value: self.unknown_kind,
            ErrorCode.REDUCER_FAILED.value: self.failed,
        }


class TranscriptReducer:
    """
    Folds agent events into a `Transcript` plus `SessionSignals`.

    One event at a time, never reentrant. A failure while handling an event is
    logged and counted, and never escapes `apply`.
    """

    def __init__(
        self,
        *,
        hidden_tools: Iterable[str] | None = None,
        preview_chars: int = 120,
        model: str | None = None,
    ) -> None:
        self.transcript = Transcript()
        self.state = SessionSignals(model=model)
        self.diagnostics = Diagnostics()
        self.hidden_tools = normalize_hidden(hidden_tools)

        self._ids = SequentialIds("entry")
        self._streams = StreamAccumulator()
        self._preview = PreviewBuffer(max_chars=preview_chars)
        self._tools: Correlator[ToolCallEntry] = Correlator("tool", on_supersede=self._close_superseded)
        self._subagents: Correlator[ToolCallEntry] = Correlator("subagent", on_supersede=self._close_superseded)
        self._reasoning: Correlator[ReasoningEntry] = Correlator("reasoning")
        self._asks: Correlator[AskUserEntry] = Correlator("ask")
        self._hidden_calls: set[str] = set()
        self._current_assistant: AssistantEntry | None = None
        self._signals: list[Signal] = []

        self._handlers: dict[type, Callable[[Any], None]] = {
            UserMessage: self._on_user_message,
            AssistantDelta: self._on_assistant_delta,
            AssistantMessage: self._on_assistant_message,
            IntentReport: self._on_intent,
            UsageReport: self._on_usage,
            ToolStart: self._on_tool_start,
            ToolPartial: self._on_tool_partial,
            ToolProgress: self._on_tool_progress,
            ToolComplete: self._on_tool_complete,
            SubagentStarted: self._on_subagent_started,
            SubagentCompleted: self._on_subagent_completed,
            SubagentFailed: self._on_subagent_failed,
            ReasoningDelta: self._on_reasoning_delta,
            ReasoningFinal: self._on_reasoning_final,
            AskUserRequest: self._on_ask,
            AskUserAnswered: self._on_ask_answered,
            SessionIdle: self._on_idle,
            SessionEvent: self._on_session_event,
            UnknownEvent: self._on_unknown,
        }

    # --- public API ---

    def apply(self, event: AgentEvent | RawEvent | Mapping[str, Any]) -> list[Signal]:
        self.diagnostics.events += 1
        self._signals = []
        try:
            if isinstance(event, (RawEvent, Mapping)):
                event = parse_event(event)
            if event.defaulted:
                self.diagnostics.malformed += 1
                logger.debug("malformed event", kind=str(event.kind), defaulted=list(event.defaulted))
            handler = self._handlers[type(event)]
            handler(event)
        except Exception:
            self.diagnostics.failed += 1
            logger.exception("failed to reduce event", kind=str(getattr(event, "kind", "?")))
            self._signals = []
        signals, self._signals = self._signals, []
        return signals

    def apply_all(self, events: Iterable[AgentEvent | RawEvent | Mapping[str, Any]]) -> list[Signal]:
        out: list[Signal] = []
        for event in events:
            out.extend(self.apply(event))
        return out

    @property
    def open_tool_calls(self) -> list[str]:
        return self._tools.open_ids()

    @property
    def current_assistant(self) -> AssistantEntry | None:
        return self._current_assistant

    # --- emit helpers ---

    def _emit(self, kind: SignalKind, **payload: Any) -> None:
        self._signals.append(Signal(kind=kind, payload=payload))

    def _append(self, entry: Entry) -> None:
        position = self.transcript.append(entry)
        self._emit(SignalKind.ENTRY_APPENDED, position=position, entry_id=entry.entry_id, entry_type=entry.entry_type)

    def _updated(self, entry: Entry, **extra: Any) -> None:
        self._emit(
            SignalKind.ENTRY_UPDATED,
            position=self.transcript.position(entry.entry_id),
            entry_id=entry.entry_id,
            entry_type=entry.entry_type,
            **extra,
        )

    def _set_activity(
        self,
        *,
        waiting: bool | None = None,
        generating: bool | None = None,
        since: int | None = None,
        reset_since: bool = False,
    ) -> None:
        st = self.state
        before = (st.waiting, st.generating, st.generating_since)
        if waiting is not None:
            st.waiting = waiting
        if generating is not None:
            st.generating = generating
        if reset_since:
            st.generating_since = since
        after = (st.waiting, st.generating, st.generating_since)
        if after != before:
            self._emit(
                SignalKind.ACTIVITY_CHANGED,
                waiting=st.waiting,
                generating=st.generating,
                generating_since=st.generating_since,
            )

    def _set_intent(self, intent: str | None) -> None:
        if intent == self.state.intent:
            return
        self.state.intent = intent
        self._emit(SignalKind.INTENT_CHANGED, intent=intent)

    def _set_preview(self, text: str) -> None:
        if text == self.state.preview:
            return
        self.state.preview = text
        self._emit(SignalKind.PREVIEW_CHANGED, preview=text)

    def _clear_preview(self) -> None:
        self._preview.clear()
        self._set_preview("")

    def _set_model(self, model: str) -> None:
        if not model or model == self.state.model:
            return
        previous = self.state.model
        self.state.model = model
        self._emit(SignalKind.MODEL_CHANGED, model=model, previous_model=previous)

    def _close_superseded(self, entry: ToolCallEntry) -> None:
        if entry.completed:
            return
        entry.completed = True
        entry.success = None
        entry.error = "superseded"
        entry.payload["completed"] = True
        self._updated(entry, completed=True)

    def _unknown_correlation(self, namespace: str, correlation_id: str, kind: str) -> None:
        self.diagnostics.unknown_correlation += 1
        logger.debug("dropping event for unknown correlation id", namespace=namespace, correlation_id=correlation_id, kind=kind)

    # --- user / assistant ---

    def _on_user_message(self, ev: UserMessage) -> None:
        entry = UserEntry(
            entry_id=self._ids.next(),
            content=ev.content,
            attachments=list(ev.attachments),
            created_at=ev.timestamp,
        )
        self._append(entry)
        self._set_activity(waiting=True, generating=True, since=ev.timestamp, reset_since=True)
        self._current_assistant = None

    def _on_assistant_delta(self, ev: AssistantDelta) -> None:
        self._set_activity(waiting=False)
        self._set_preview(self._preview.feed(ev.delta))
        entry = self._current_assistant
        if entry is not None:
            entry.content = self._streams.append(entry.entry_id, ev.delta)
            entry.streaming = True
            self._updated(entry, delta=ev.delta)
            return
        entry = AssistantEntry(entry_id=self._ids.next(), content="", streaming=True, created_at=ev.timestamp)
        entry.content = self._streams.append(entry.entry_id, ev.delta)
        self._current_assistant = entry
        self._append(entry)

    def _on_assistant_message(self, ev: AssistantMessage) -> None:
        self._clear_preview()
        entry = self._current_assistant
        if entry is not None:
            self._streams.finalize(entry.entry_id)
            if entry.streaming:
                entry.streaming = False
                self._updated(entry, streaming=False)
            return
        if ev.content:
            entry = AssistantEntry(
                entry_id=self._ids.next(),
                content=ev.content,
                streaming=False,
                created_at=ev.timestamp,
            )
            self._append(entry)

    def _on_intent(self, ev: IntentReport) -> None:
        self._set_activity(waiting=False)
        self._set_intent(ev.intent or None)

    def _on_usage(self, ev: UsageReport) -> None:
        self.state.input_tokens += ev.input_tokens
        self.state.output_tokens += ev.output_tokens
        self._set_model(ev.model)
        self._emit(
            SignalKind.USAGE_UPDATED,
            input_tokens=self.state.input_tokens,
            output_tokens=self.state.output_tokens,
            model=self.state.model,
        )

    # --- tools ---

    def _on_tool_start(self, ev: ToolStart) -> None:
        self._set_activity(waiting=False)
        self._clear_preview()
        self._current_assistant = None

        if ev.tool_name in self.hidden_tools:
            if ev.tool_call_id:
                self._hidden_calls.add(ev.tool_call_id)
            if ev.tool_name == INTENT_TOOL:
                intent = intent_from_args(ev.args)
                if intent:
                    self._set_intent(intent)
            return

        tool_type = tool_type_for(ev.tool_name)
        payload = dict(ev.args)
        payload["completed"] = False
        payload["_toolName"] = ev.tool_name
        entry = ToolCallEntry(
            entry_id=self._ids.next(),
            tool_type=tool_type,
            tool_name=ev.tool_name,
            title=tool_title(ev.tool_name, tool_type, ev.args),
            correlation_id=ev.tool_call_id,
            payload=payload,
            created_at=ev.timestamp,
        )
        self._tools.register(ev.tool_call_id, entry)
        self._append(entry)

    def _find_tool(self, tool_call_id: str, kind: str) -> ToolCallEntry | None:
        entry = self._tools.find(tool_call_id)
        if entry is None and tool_call_id not in self._hidden_calls:
            self._unknown_correlation("tool", tool_call_id, kind)
        return entry

    def _on_tool_partial(self, ev: ToolPartial) -> None:
        entry = self._find_tool(ev.tool_call_id, str(ev.kind))
        if entry is None:
            return
        existing = entry.payload.get("output")
        entry.payload["output"] = (str(existing) if existing else "") + ev.output
        self._updated(entry, delta=ev.output)

    def _on_tool_progress(self, ev: ToolProgress) -> None:
        entry = self._find_tool(ev.tool_call_id, str(ev.kind))
        if entry is None:
            return
        entry.payload["progress"] = ev.message
        self._updated(entry, progress=ev.message)

    def _on_tool_complete(self, ev: ToolComplete) -> None:
        entry = self._find_tool(ev.tool_call_id, str(ev.kind))
        if entry is None:
            self._hidden_calls.discard(ev.tool_call_id)
            return
        entry.completed = True
        entry.success = ev.success
        entry.payload["completed"] = True
        entry.payload["success"] = ev.success
        if ev.error:
            entry.error = ev.error
            entry.payload["error"] = ev.error
        if ev.result:
            key = result_key(entry.tool_type, entry.payload)
            if key is not None:
                entry.payload[key] = ev.result
        self._tools.forget(ev.tool_call_id)
        self._updated(entry, completed=True, success=ev.success)

    def _on_subagent_started(self, ev: SubagentStarted) -> None:
        entry = ToolCallEntry(
            entry_id=self._ids.next(),
            tool_type=ToolType.GENERIC,
            tool_name="subagent",
            title=subagent_title(ev.display_name, ev.description),
            correlation_id=ev.tool_call_id,
            payload={"name": ev.name, "completed": False},
            created_at=ev.timestamp,
        )
        # Keyed apart from tools: the id is the parent task call's, which stays open.
        self._subagents.register(ev.tool_call_id, entry)
        self._append(entry)

    def _finish_subagent(self, tool_call_id: str, kind: str, *, success: bool, error: str | None) -> None:
        entry = self._subagents.forget(tool_call_id)
        if entry is None:
            self._unknown_correlation("subagent", tool_call_id, kind)
            return
        entry.completed = True
        entry.success = success
        entry.payload["completed"] = True
        entry.payload["success"] = success
        if error is not None:
            entry.error = error
            entry.payload["error"] = error
        self._updated(entry, completed=True, success=success)

    def _on_subagent_completed(self, ev: SubagentCompleted) -> None:
        self._finish_subagent(ev.tool_call_id, str(ev.kind), success=True, error=None)

    def _on_subagent_failed(self, ev: SubagentFailed) -> None:
        self._finish_subagent(ev.tool_call_id, str(ev.kind), success=False, error=ev.error)

    # --- reasoning ---

    def _on_reasoning_delta(self, ev: ReasoningDelta) -> None:
        entry = self._reasoning.find(ev.reasoning_id)
        if entry is None:
            entry = ReasoningEntry(
                entry_id=self._ids.next(),
                reasoning_id=ev.reasoning_id,
                content="",
                streaming=True,
                created_at=ev.timestamp,
            )
            entry.content = self._streams.append(entry.entry_id, ev.delta)
            self._reasoning.register(ev.reasoning_id, entry)
            self._append(entry)
            return
        entry.content = self._streams.append(entry.entry_id, ev.delta)
        entry.streaming = True
        self._updated(entry, delta=ev.delta)

    def _on_reasoning_final(self, ev: ReasoningFinal) -> None:
        entry = self._reasoning.forget(ev.reasoning_id)
        if entry is None:
            if ev.content:
                entry = ReasoningEntry(
                    entry_id=self._ids.next(),
                    reasoning_id=ev.reasoning_id,
                    content=ev.content,
                    streaming=False,
                    created_at=ev.timestamp,
                )
                self._append(entry)
            return
        self._streams.finalize(entry.entry_id)
        if not entry.content and ev.content:
            entry.content = ev.content
        entry.streaming = False
        self._updated(entry, streaming=False)

    # --- ask-user ---

    def _on_ask(self, ev: AskUserRequest) -> None:
        self._current_assistant = None
        self._set_activity(waiting=False)
        entry = AskUserEntry(
            entry_id=self._ids.next(),
            request_id=ev.request_id,
            question=ev.question,
            choices=list(ev.choices) if ev.choices is not None else None,
            allow_freeform=ev.allow_freeform,
            created_at=ev.timestamp,
        )
        self._asks.register(ev.request_id, entry)
        self._append(entry)

    def _on_ask_answered(self, ev: AskUserAnswered) -> None:
        entry = self._asks.forget(ev.request_id)
        if entry is None:
            self._unknown_correlation("ask", ev.request_id, str(ev.kind))
            return
        entry.answered = True
        entry.answer = ev.answer
        self._updated(entry, answered=True)

    # --- session ---

    def _on_idle(self, ev: SessionIdle) -> None:
        for entry_id in self._streams.finalize_all():
            entry = self.transcript.get(entry_id)
            if isinstance(entry, (AssistantEntry, ReasoningEntry)) and entry.streaming:
                entry.streaming = False
                self._updated(entry, streaming=False)
        self._current_assistant = None
        self._reasoning.clear()
        self._set_intent(None)
        self._clear_preview()
        self._set_activity(waiting=False, generating=False, since=None, reset_since=True)

    def _on_session_event(self, ev: SessionEvent) -> None:
        entry = SessionEventEntry(
            entry_id=self._ids.next(),
            event_kind=str(ev.event_kind),
            payload=dict(ev.payload),
            created_at=ev.timestamp,
        )
        self._append(entry)
        if ev.event_kind is EventKind.SESSION_MODEL_CHANGE:
            new_model = ev.payload.get("newModel")
            if isinstance(new_model, str):
                self._set_model(new_model)

    def _on_unknown(self, ev: UnknownEvent) -> None:
        self.diagnostics.unknown_kind += 1
        logger.debug("ignoring unknown event kind", kind=ev.raw_kind)


def reduce(
    state: TranscriptReducer | None,
    event: AgentEvent | RawEvent | Mapping[str, Any],
) -> tuple[TranscriptReducer, list[Signal]]:
    """Functional form of `TranscriptReducer.apply`; a None state starts fresh."""

    if state is None:
        state = TranscriptReducer()
    signals = state.apply(event)
    return state, signals
