from __future__ import annotations

from unittest.mock import Mock, patch

from agentreel.runtime.protocol import UserMessage
from agentreel.runtime.reducer import SignalKind, TranscriptReducer, reduce
from agentreel.runtime.transcript import (
    AskUserEntry,
    AssistantEntry,
    ReasoningEntry,
    SessionEventEntry,
    ToolCallEntry,
    ToolType,
    UserEntry,
)


def _kinds(signals):
    return [s.kind for s in signals]


class TestAssistantStreaming:
    def test_deltas_concatenate_into_one_entry(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.message_delta", delta="Hel"))
        r.apply(ev("assistant.message_delta", delta="lo"))
        assert len(r.transcript) == 1
        entry = r.transcript[0]
        assert isinstance(entry, AssistantEntry)
        assert entry.content == "Hello"
        assert entry.streaming is True

    def test_first_delta_appends_later_deltas_update(self, ev):
        r = TranscriptReducer()
        first = r.apply(ev("assistant.message_delta", delta="a"))
        second = r.apply(ev("assistant.message_delta", delta="b"))
        assert SignalKind.ENTRY_APPENDED in _kinds(first)
        updated = [s for s in second if s.kind is SignalKind.ENTRY_UPDATED]
        assert updated[0].payload["delta"] == "b"
        assert updated[0].payload["position"] == 0

    def test_final_message_closes_stream_keeping_deltas(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.message_delta", delta="Hi"))
        r.apply(ev("assistant.message", content="Hi there"))
        entry = r.transcript[0]
        assert entry.content == "Hi"
        assert entry.streaming is False

    def test_final_without_deltas_appends_completed_entry(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.message", content="Done."))
        entry = r.transcript[0]
        assert isinstance(entry, AssistantEntry)
        assert entry.content == "Done."
        assert entry.streaming is False

    def test_empty_final_without_deltas_adds_nothing(self, ev):
        r = TranscriptReducer()
        assert r.apply(ev("assistant.message", content="")) == []
        assert len(r.transcript) == 0

    def test_repeated_deltas_are_not_deduplicated(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.message_delta", delta="ab"))
        r.apply(ev("assistant.message_delta", delta="ab"))
        assert r.transcript[0].content == "abab"

    def test_tool_start_splits_assistant_entries(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.message_delta", delta="before"))
        r.apply(ev("tool.start", toolCallId="t1", toolName="bash", args={"command": "ls"}))
        r.apply(ev("assistant.message_delta", delta="after"))
        types = [e.entry_type for e in r.transcript]
        assert types == ["assistant", "tool_call", "assistant"]
        assert r.transcript[2].content == "after"

    def test_user_message_starts_new_turn(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.message_delta", delta="one"))
        r.apply(ev("user.message", content="next"))
        r.apply(ev("assistant.message_delta", delta="two"))
        assert [e.entry_type for e in r.transcript] == ["assistant", "user", "assistant"]

    def test_delta_alias_field(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.message_delta", deltaContent="x"))
        assert r.transcript[0].content == "x"
        assert r.diagnostics.malformed == 0


class TestActivity:
    def test_user_message_sets_waiting_and_generating(self, ev):
        r = TranscriptReducer()
        signals = r.apply(ev("user.message", ts=5_000, content="hi", attachments=["a.png"]))
        entry = r.transcript[0]
        assert isinstance(entry, UserEntry)
        assert entry.attachments == ["a.png"]
        assert r.state.waiting is True
        assert r.state.generating is True
        assert r.state.generating_since == 5_000
        assert SignalKind.ACTIVITY_CHANGED in _kinds(signals)

    def test_first_delta_clears_waiting_only(self, ev):
        r = TranscriptReducer()
        r.apply(ev("user.message", content="hi"))
        r.apply(ev("assistant.message_delta", delta="x"))
        assert r.state.waiting is False
        assert r.state.generating is True

    def test_idle_resets_everything(self, ev):
        r = TranscriptReducer()
        r.apply(ev("user.message", content="hi"))
        r.apply(ev("assistant.intent", intent="Reading files"))
        r.apply(ev("assistant.message_delta", delta="partial"))
        r.apply(ev("assistant.reasoning_delta", reasoningId="r1", delta="hmm"))
        r.apply(ev("session.idle"))
        assert r.state.waiting is False
        assert r.state.generating is False
        assert r.state.generating_since is None
        assert r.state.intent is None
        assert r.state.preview == ""
        assert all(not e.streaming for e in r.transcript if isinstance(e, (AssistantEntry, ReasoningEntry)))

    def test_idle_leaves_open_tool_calls_open(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.start", toolCallId="t1", toolName="bash", args={"command": "sleep 9"}))
        r.apply(ev("session.idle"))
        assert r.transcript[0].completed is False
        assert r.open_tool_calls == ["t1"]

    def test_elapsed_seconds(self, ev):
        r = TranscriptReducer()
        r.apply(ev("user.message", ts=10_000, content="hi"))
        assert r.state.elapsed_s(13_500) == 3
        r.apply(ev("session.idle"))
        assert r.state.elapsed_s(20_000) == 0

    def test_preview_is_bounded(self, ev):
        r = TranscriptReducer(preview_chars=5)
        r.apply(ev("assistant.message_delta", delta="abcdefgh"))
        assert r.state.preview == "defgh"

    def test_preview_cleared_by_final(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.message_delta", delta="abc"))
        signals = r.apply(ev("assistant.message", content="abc"))
        assert r.state.preview == ""
        assert SignalKind.PREVIEW_CHANGED in _kinds(signals)


class TestTools:
    def test_start_and_complete_correlate(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.start", toolCallId="t1", toolName="bash", args={"command": "ls"}))
        r.apply(ev("tool.complete", toolCallId="t1", success=True, result="a\nb"))
        entry = r.transcript[0]
        assert isinstance(entry, ToolCallEntry)
        assert entry.tool_type is ToolType.SHELL
        assert entry.title == "ls"
        assert entry.completed is True
        assert entry.success is True
        assert entry.payload["output"] == "a\nb"
        assert r.open_tool_calls == []

    def test_interleaved_calls_update_their_own_entries(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.start", toolCallId="a", toolName="view", args={"path": "x.py"}))
        r.apply(ev("tool.start", toolCallId="b", toolName="view", args={"path": "y.py"}))
        r.apply(ev("tool.complete", toolCallId="a", success=False, error={"message": "denied"}))
        first, second = r.transcript[0], r.transcript[1]
        assert first.completed and first.success is False and first.error == "denied"
        assert second.completed is False

    def test_complete_without_start_is_dropped(self, ev):
        r = TranscriptReducer()
        assert r.apply(ev("tool.complete", toolCallId="ghost", success=True)) == []
        assert len(r.transcript) == 0
        assert r.diagnostics.unknown_correlation == 1

    def test_partial_output_accumulates(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.start", toolCallId="t1", toolName="bash", args={"command": "make"}))
        r.apply(ev("tool.partial", toolCallId="t1", partialOutput="line1\n"))
        r.apply(ev("tool.partial", toolCallId="t1", output="line2\n"))
        r.apply(ev("tool.complete", toolCallId="t1", success=True, result="ignored"))
        assert r.transcript[0].payload["output"] == "line1\nline2\n"

    def test_progress_message(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.start", toolCallId="t1", toolName="fetch", args={"url": "https://x"}))
        signals = r.apply(ev("tool.progress", toolCallId="t1", progressMessage="50%"))
        assert r.transcript[0].payload["progress"] == "50%"
        assert signals[0].payload["progress"] == "50%"

    def test_result_keys_by_tool_type(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.start", toolCallId="r", toolName="view", args={"path": "a"}))
        r.apply(ev("tool.complete", toolCallId="r", success=True, result={"content": "file body"}))
        r.apply(ev("tool.start", toolCallId="e", toolName="edit", args={"path": "a"}))
        r.apply(ev("tool.complete", toolCallId="e", success=True, result="patched"))
        assert r.transcript[0].payload["content"] == "file body"
        assert r.transcript[1].payload["result"] == "patched"

    def test_titles(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.start", toolCallId="1", toolName="grep", args={"pattern": "TODO"}))
        r.apply(ev("tool.start", toolCallId="2", toolName="task", args={"description": "write tests"}))
        r.apply(ev("tool.start", toolCallId="3", toolName="web_fetch", args={"url": "https://example.com"}))
        r.apply(ev("tool.start", toolCallId="4", toolName="noop", args={"path": "ignored"}))
        titles = [e.title for e in r.transcript]
        assert titles == ["TODO", "Sub-agent: write tests", "web_fetch: https://example.com", "noop"]

    def test_hidden_tools_produce_no_entries(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.start", toolCallId="h", toolName="report_intent", args={"intent": "Exploring"}))
        r.apply(ev("tool.complete", toolCallId="h", success=True))
        r.apply(ev("tool.start", toolCallId="q", toolName="ask_user", args={"question": "?"}))
        assert len(r.transcript) == 0
        assert r.state.intent == "Exploring"
        assert r.diagnostics.unknown_correlation == 0

    def test_custom_hidden_tools(self, ev):
        r = TranscriptReducer(hidden_tools=["secret"])
        r.apply(ev("tool.start", toolCallId="1", toolName="secret", args={}))
        r.apply(ev("tool.start", toolCallId="2", toolName="ask_user", args={"question": "?"}))
        assert [e.tool_name for e in r.transcript] == ["ask_user"]

    def test_reused_open_id_supersedes_previous(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.start", toolCallId="dup", toolName="bash", args={"command": "one"}))
        r.apply(ev("tool.start", toolCallId="dup", toolName="bash", args={"command": "two"}))
        r.apply(ev("tool.complete", toolCallId="dup", success=True))
        first, second = r.transcript[0], r.transcript[1]
        assert first.completed is True and first.success is None and first.error == "superseded"
        assert second.completed is True and second.success is True

    def test_subagent_lifecycle(self, ev):
        r = TranscriptReducer()
        r.apply(
            ev(
                "subagent.started",
                toolCallId="s1",
                name="explore",
                displayName="Explorer",
                description="map the repo",
            )
        )
        r.apply(ev("subagent.failed", toolCallId="s1", name="explore"))
        entry = r.transcript[0]
        assert entry.title == "Sub-agent Explorer: map the repo"
        assert entry.completed is True
        assert entry.success is False
        assert entry.error == "Unknown error"

    def test_subagent_completed(self, ev):
        r = TranscriptReducer()
        r.apply(ev("subagent.started", toolCallId="s1", name="explore", description="d"))
        r.apply(ev("subagent.completed", toolCallId="s1", name="explore"))
        entry = r.transcript[0]
        assert entry.title == "Sub-agent explore: d"
        assert entry.success is True

    def test_subagent_shares_parent_task_call_id(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.start", toolCallId="t1", toolName="task", args={"description": "explore"}))
        r.apply(ev("subagent.started", toolCallId="t1", name="explore", description="d"))
        r.apply(ev("subagent.completed", toolCallId="t1", name="explore"))
        r.apply(ev("tool.complete", toolCallId="t1", success=True, result="done"))
        task, subagent = r.transcript[0], r.transcript[1]
        assert task.completed is True and task.success is True and task.error is None
        assert subagent.completed is True and subagent.success is True
        assert r.diagnostics.unknown_correlation == 0
        assert r.open_tool_calls == []

    def test_stray_subagent_completion_is_counted(self, ev):
        r = TranscriptReducer()
        assert r.apply(ev("subagent.completed", toolCallId="ghost", name="x")) == []
        assert r.diagnostics.unknown_correlation == 1


class TestReasoning:
    def test_reasoning_stream_and_final(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.reasoning_delta", reasoningId="r1", delta="think "))
        r.apply(ev("assistant.reasoning_delta", reasoningId="r1", delta="more"))
        r.apply(ev("assistant.reasoning", reasoningId="r1", content="ignored"))
        entry = r.transcript[0]
        assert isinstance(entry, ReasoningEntry)
        assert entry.content == "think more"
        assert entry.streaming is False

    def test_final_only_reasoning(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.reasoning", reasoningId="r2", content="whole thought"))
        entry = r.transcript[0]
        assert entry.content == "whole thought"
        assert entry.streaming is False

    def test_separate_ids_separate_entries(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.reasoning_delta", reasoningId="a", delta="1"))
        r.apply(ev("assistant.reasoning_delta", reasoningId="b", delta="2"))
        r.apply(ev("assistant.reasoning_delta", reasoningId="a", delta="3"))
        assert [e.content for e in r.transcript] == ["13", "2"]


class TestAskUser:
    def test_ask_and_answer(self, ev):
        r = TranscriptReducer()
        r.apply(ev("user.ask", requestId="q1", question="Pick one", choices=["a", "b"], allowFreeform=False))
        r.apply(ev("user.ask_answered", requestId="q1", answer="b"))
        entry = r.transcript[0]
        assert isinstance(entry, AskUserEntry)
        assert entry.choices == ["a", "b"]
        assert entry.allow_freeform is False
        assert entry.answered is True
        assert entry.answer == "b"

    def test_answer_without_ask_is_dropped(self, ev):
        r = TranscriptReducer()
        assert r.apply(ev("user.ask_answered", requestId="nope", answer="x")) == []
        assert r.diagnostics.unknown_correlation == 1


class TestSessionEvents:
    def test_session_events_become_entries(self, ev):
        r = TranscriptReducer()
        r.apply(ev("session.error", errorType="rate_limit", message="slow down", statusCode=429))
        r.apply(ev("session.truncation", tokensRemoved=100, messagesRemoved=2))
        r.apply(ev("turn.start"))
        kinds = [e.event_kind for e in r.transcript]
        assert kinds == ["session.error", "session.truncation", "turn.start"]
        assert all(isinstance(e, SessionEventEntry) for e in r.transcript)
        assert r.transcript[0].payload["statusCode"] == 429

    def test_model_change_updates_state(self, ev):
        r = TranscriptReducer(model="gpt-4.1")
        signals = r.apply(ev("session.model_change", previousModel="gpt-4.1", newModel="claude-sonnet"))
        assert r.state.model == "claude-sonnet"
        changed = [s for s in signals if s.kind is SignalKind.MODEL_CHANGED]
        assert changed[0].payload == {"model": "claude-sonnet", "previous_model": "gpt-4.1"}

    def test_usage_accumulates(self, ev):
        r = TranscriptReducer()
        r.apply(ev("assistant.usage", inputTokens=10, outputTokens=5, model="m1"))
        signals = r.apply(ev("assistant.usage", inputTokens=3, outputTokens=2, model="m1"))
        assert (r.state.input_tokens, r.state.output_tokens, r.state.model) == (13, 7, "m1")
        assert signals[-1].payload == {"input_tokens": 13, "output_tokens": 7, "model": "m1"}


class TestDiagnostics:
    def test_unknown_kind_is_counted_and_ignored(self, ev):
        r = TranscriptReducer()
        assert r.apply(ev("vendor.custom", x=1)) == []
        assert r.diagnostics.unknown_kind == 1
        assert len(r.transcript) == 0

    def test_malformed_event_uses_defaults(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.start", toolCallId="t1"))
        assert r.diagnostics.malformed == 1
        assert r.transcript[0].tool_name == ""

    def test_handler_failure_is_isolated(self, ev):
        r = TranscriptReducer()
        with patch.dict(r._handlers, {UserMessage: Mock(side_effect=RuntimeError("boom"))}):
            assert r.apply(ev("user.message", content="x")) == []
        assert r.diagnostics.failed == 1
        r.apply(ev("assistant.message_delta", delta="still works"))
        assert r.transcript[0].content == "still works"

    def test_to_dict_uses_error_codes(self, ev):
        r = TranscriptReducer()
        r.apply(ev("tool.complete", toolCallId="x", success=True))
        d = r.diagnostics.to_dict()
        assert d["events"] == 1
        assert d["unknown_correlation"] == 1

    def test_accepts_flat_mappings(self):
        r = TranscriptReducer()
        r.apply({"type": "user.message", "content": "flat", "timestamp": 7})
        assert r.transcript[0].content == "flat"
        assert r.transcript[0].created_at == 7


def test_entry_ids_are_sequential(ev):
    r = TranscriptReducer()
    r.apply(ev("user.message", content="a"))
    r.apply(ev("assistant.message", content="b"))
    assert [e.entry_id for e in r.transcript] == ["entry-1", "entry-2"]


def test_reduce_function_form(ev):
    state, signals = reduce(None, ev("user.message", content="hi"))
    state, _ = reduce(state, ev("assistant.message", content="yo"))
    assert len(state.transcript) == 2
    assert signals[0].kind is SignalKind.ENTRY_APPENDED
