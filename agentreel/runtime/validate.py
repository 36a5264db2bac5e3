from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .error_codes import ErrorCode
from .errors import EventLogError
from .protocol import EventKind, RawEvent, UnknownEvent, parse_event
from .stores.base import EventLogStore
from .stores.fs import FileEventLogStore

# Subagent events carry the parent task's toolCallId, so they pair separately.
_STARTS = {EventKind.TOOL_START.value: "tool", EventKind.SUBAGENT_STARTED.value: "subagent"}
_ENDS = {
    EventKind.TOOL_COMPLETE.value: "tool",
    EventKind.SUBAGENT_COMPLETED.value: "subagent",
    EventKind.SUBAGENT_FAILED.value: "subagent",
}


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    severity: str  # "error" | "warning"
    message: str
    location: str | None = None
    code: ErrorCode | None = None

    def render(self) -> str:
        loc = f"{self.location}: " if self.location else ""
        code = f" [{self.code.value}]" if self.code is not None else ""
        return f"{self.severity}: {loc}{self.message}{code}"


def has_errors(issues: Iterable[ValidationIssue]) -> bool:
    return any(i.severity == "error" for i in issues)


def validate_session_log(store: EventLogStore, session_id: str, *, strict: bool = False) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if isinstance(store, FileEventLogStore):
        try:
            lines = store.read_lines(session_id)
        except EventLogError as e:
            return [ValidationIssue("error", str(e), session_id, ErrorCode.EVENT_LOG_INVALID)]
        events = _load_lines(lines, source=session_id, issues=issues)
    else:
        try:
            events = list(store.read(session_id))
        except EventLogError as e:
            return [ValidationIssue("error", str(e), session_id, ErrorCode.EVENT_LOG_INVALID)]
    issues.extend(validate_events(events, strict=strict))
    return issues


def validate_log_file(path: Path, *, strict: bool = False) -> list[ValidationIssue]:
    if not path.exists():
        return [ValidationIssue("error", "Events file not found.", str(path), ErrorCode.EVENT_LOG_INVALID)]
    issues: list[ValidationIssue] = []
    lines = path.read_text(encoding="utf-8").splitlines()
    events = _load_lines(lines, source=str(path), issues=issues)
    issues.extend(validate_events(events, strict=strict))
    return issues


def _load_lines(lines: Iterable[str], *, source: str, issues: list[ValidationIssue]) -> list[RawEvent]:
    events: list[RawEvent] = []
    for line_no, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            issues.append(ValidationIssue("error", f"Invalid JSON: {e}", f"{source}:{line_no}", ErrorCode.EVENT_LOG_INVALID))
            continue
        if not isinstance(data, dict):
            issues.append(
                ValidationIssue("error", "Event line must be a JSON object.", f"{source}:{line_no}", ErrorCode.EVENT_LOG_INVALID)
            )
            continue
        events.append(RawEvent.from_dict(data))
    return events


def validate_events(events: Iterable[RawEvent], *, strict: bool = False) -> list[ValidationIssue]:
    """
    Structural checks over a recorded stream.

    Problems the reducer tolerates (unknown kinds, stray completes, unfinished
    tool calls, defaulted fields) are warnings, or errors when `strict`.
    """

    issues: list[ValidationIssue] = []
    lenient = "error" if strict else "warning"
    open_calls: dict[tuple[str, str], int] = {}
    last_ts: int | None = None

    for idx, raw in enumerate(events):
        loc = f"event[{idx}]"
        if not raw.kind:
            issues.append(ValidationIssue("error", "Event has no kind.", loc, ErrorCode.MALFORMED_EVENT))
            continue

        parsed = parse_event(raw)
        if isinstance(parsed, UnknownEvent):
            issues.append(ValidationIssue(lenient, f"Unknown event kind: {raw.kind}", loc, ErrorCode.UNKNOWN_EVENT_KIND))
            continue
        if parsed.defaulted:
            fields = ", ".join(parsed.defaulted)
            issues.append(
                ValidationIssue(lenient, f"{raw.kind} missing or invalid fields: {fields}", loc, ErrorCode.MALFORMED_EVENT)
            )

        if last_ts is not None and raw.timestamp and raw.timestamp < last_ts:
            issues.append(ValidationIssue("warning", "Timestamp goes backwards.", loc))
        if raw.timestamp:
            last_ts = raw.timestamp

        call_id = raw.payload.get("toolCallId")
        if raw.kind in _STARTS:
            if not isinstance(call_id, str) or not call_id:
                continue
            key = (_STARTS[raw.kind], call_id)
            if key in open_calls:
                issues.append(
                    ValidationIssue(
                        lenient,
                        f"Duplicate start for toolCallId={call_id} while still open.",
                        loc,
                        ErrorCode.DUPLICATE_START,
                    )
                )
            open_calls[key] = idx
        elif raw.kind in _ENDS:
            if not isinstance(call_id, str) or not call_id:
                continue
            key = (_ENDS[raw.kind], call_id)
            if key not in open_calls:
                issues.append(
                    ValidationIssue(
                        lenient,
                        f"{raw.kind} without start for toolCallId={call_id}.",
                        loc,
                        ErrorCode.COMPLETE_WITHOUT_START,
                    )
                )
                continue
            open_calls.pop(key)

    for (_, call_id), start_idx in open_calls.items():
        issues.append(
            ValidationIssue(
                "warning",
                f"Start without completion for toolCallId={call_id}.",
                f"event[{start_idx}]",
                ErrorCode.START_WITHOUT_COMPLETE,
            )
        )
    return issues
