from __future__ import annotations

from agentreel.runtime.error_codes import ErrorCode
from agentreel.runtime.protocol import RawEvent
from agentreel.runtime.replay import encode_log
from agentreel.runtime.stores import FileEventLogStore, MemoryEventLogStore
from agentreel.runtime.validate import (
    ValidationIssue,
    has_errors,
    validate_events,
    validate_log_file,
    validate_session_log,
)


def _codes(issues):
    return [i.code for i in issues]


class TestValidateEvents:
    def test_clean_stream(self, ev):
        events = [
            ev("user.message", content="hi"),
            ev("tool.start", toolCallId="t", toolName="bash", args={"command": "ls"}),
            ev("tool.complete", toolCallId="t", success=True),
            ev("session.idle"),
        ]
        assert validate_events(events) == []

    def test_unknown_kind_is_warning_unless_strict(self, ev):
        events = [ev("vendor.custom")]
        (issue,) = validate_events(events)
        assert issue.severity == "warning"
        assert issue.code is ErrorCode.UNKNOWN_EVENT_KIND
        (issue,) = validate_events(events, strict=True)
        assert issue.severity == "error"

    def test_missing_kind_is_error(self):
        issues = validate_events([RawEvent("", {}, 1)])
        assert has_errors(issues)
        assert _codes(issues) == [ErrorCode.MALFORMED_EVENT]

    def test_defaulted_fields(self, ev):
        (issue,) = validate_events([ev("user.ask", requestId="q")])
        assert issue.code is ErrorCode.MALFORMED_EVENT
        assert "question" in issue.message

    def test_backwards_timestamp(self, ev):
        issues = validate_events([ev("session.idle", ts=200), ev("session.idle", ts=100)])
        assert [i.message for i in issues] == ["Timestamp goes backwards."]

    def test_correlation_problems(self, ev):
        events = [
            ev("tool.start", toolCallId="a", toolName="bash", args={}),
            ev("tool.start", toolCallId="a", toolName="bash", args={}),
            ev("tool.complete", toolCallId="ghost", success=True),
            ev("subagent.started", toolCallId="s", name="n", description="d"),
        ]
        codes = _codes(validate_events(events))
        assert codes.count(ErrorCode.DUPLICATE_START) == 1
        assert codes.count(ErrorCode.COMPLETE_WITHOUT_START) == 1
        assert codes.count(ErrorCode.START_WITHOUT_COMPLETE) == 2

    def test_subagent_pairs_with_failure(self, ev):
        events = [
            ev("subagent.started", toolCallId="s", name="n", displayName="N", description="d"),
            ev("subagent.failed", toolCallId="s", name="n", error="boom"),
        ]
        assert validate_events(events) == []

    def test_subagent_inside_task_call(self, ev):
        events = [
            ev("tool.start", toolCallId="t1", toolName="task", args={}),
            ev("subagent.started", toolCallId="t1", name="n", description="d"),
            ev("subagent.completed", toolCallId="t1", name="n"),
            ev("tool.complete", toolCallId="t1", success=True),
        ]
        assert validate_events(events) == []


class TestValidateLogs:
    def test_log_file_with_bad_lines(self, tmp_path, ev):
        path = tmp_path / "log.jsonl"
        path.write_text(encode_log([ev("session.idle")]) + "{bad\n[]\n", encoding="utf-8")
        issues = validate_log_file(path)
        assert [i.location for i in issues] == [f"{path}:2", f"{path}:3"]
        assert has_errors(issues)

    def test_missing_file(self, tmp_path):
        issues = validate_log_file(tmp_path / "nope.jsonl")
        assert _codes(issues) == [ErrorCode.EVENT_LOG_INVALID]

    def test_file_store_session(self, tmp_path, ev):
        store = FileEventLogStore(tmp_path / "events")
        store.append("s1", ev("user.message", content="hi"))
        assert validate_session_log(store, "s1") == []
        assert has_errors(validate_session_log(store, "missing"))

    def test_memory_store_session(self, ev):
        store = MemoryEventLogStore()
        store.append("s1", ev("tool.complete", toolCallId="x", success=True))
        (issue,) = validate_session_log(store, "s1", strict=True)
        assert issue.severity == "error"


def test_render():
    issue = ValidationIssue("error", "Bad thing.", "event[3]", ErrorCode.MALFORMED_EVENT)
    assert issue.render() == "error: event[3]: Bad thing. [malformed_event]"
    assert ValidationIssue("warning", "Hmm.").render() == "warning: Hmm."
