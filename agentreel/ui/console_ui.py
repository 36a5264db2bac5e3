from __future__ import annotations

import queue
import shutil
import sys
import threading
import time
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence, TextIO

from ..runtime.ids import now_ts_ms
from ..runtime.log import get_logger
from ..runtime.reducer import Signal, SignalKind
from ..runtime.transcript import (
    AskUserEntry,
    AssistantEntry,
    Entry,
    ReasoningEntry,
    SessionEventEntry,
    ToolCallEntry,
    Transcript,
    UserEntry,
)

logger = get_logger(__name__)


class UIEventKind(str, Enum):
    USER_SUBMITTED = "user_submitted"

    ACTIVITY = "activity"
    PREVIEW = "preview"
    INTENT = "intent"

    REASONING_DELTA = "reasoning_delta"
    REASONING_END = "reasoning_end"
    ASSISTANT_DELTA = "assistant_delta"
    ASSISTANT_COMPLETED = "assistant_completed"

    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_PROGRESS = "tool_call_progress"
    TOOL_CALL_COMPLETED = "tool_call_completed"

    ASK_USER = "ask_user"
    ASK_ANSWERED = "ask_answered"

    SESSION_EVENT = "session_event"
    USAGE = "usage"

    EXIT_REQUESTED = "exit_requested"


@dataclass(frozen=True, slots=True)
class UIEvent:
    kind: UIEventKind
    payload: dict


def ui_events_for(signals: Sequence[Signal], transcript: Transcript) -> list[UIEvent]:
    """
    Translate reducer signals into self-contained UI events.

    Runs on the pump thread; payloads are snapshots so the renderer never
    reads live transcript entries.
    """

    out: list[UIEvent] = []
    for sig in signals:
        p = sig.payload
        if sig.kind is SignalKind.ACTIVITY_CHANGED:
            out.append(
                UIEvent(
                    UIEventKind.ACTIVITY,
                    {"waiting": p.get("waiting"), "generating": p.get("generating"), "since": p.get("generating_since")},
                )
            )
            continue
        if sig.kind is SignalKind.PREVIEW_CHANGED:
            out.append(UIEvent(UIEventKind.PREVIEW, {"text": p.get("preview", "")}))
            continue
        if sig.kind is SignalKind.INTENT_CHANGED:
            out.append(UIEvent(UIEventKind.INTENT, {"intent": p.get("intent")}))
            continue
        if sig.kind is SignalKind.USAGE_UPDATED:
            out.append(UIEvent(UIEventKind.USAGE, dict(p)))
            continue
        if sig.kind not in (SignalKind.ENTRY_APPENDED, SignalKind.ENTRY_UPDATED):
            continue

        entry = transcript.get(str(p.get("entry_id") or ""))
        if entry is None:
            continue
        if sig.kind is SignalKind.ENTRY_APPENDED:
            out.extend(_appended(entry))
        else:
            out.extend(_updated(entry, p))
    return out


def _appended(entry: Entry) -> list[UIEvent]:
    if isinstance(entry, UserEntry):
        return [UIEvent(UIEventKind.USER_SUBMITTED, {"text": entry.content, "attachments": list(entry.attachments)})]
    if isinstance(entry, AssistantEntry):
        events = [UIEvent(UIEventKind.ASSISTANT_DELTA, {"text": entry.content})]
        if not entry.streaming:
            events.append(UIEvent(UIEventKind.ASSISTANT_COMPLETED, {}))
        return events
    if isinstance(entry, ToolCallEntry):
        return [UIEvent(UIEventKind.TOOL_CALL_STARTED, {"title": entry.title, "tool_type": entry.tool_type.value})]
    if isinstance(entry, ReasoningEntry):
        events = [UIEvent(UIEventKind.REASONING_DELTA, {"text": entry.content})]
        if not entry.streaming:
            events.append(UIEvent(UIEventKind.REASONING_END, {"text": entry.content}))
        return events
    if isinstance(entry, AskUserEntry):
        return [
            UIEvent(
                UIEventKind.ASK_USER,
                {"request_id": entry.request_id, "question": entry.question, "choices": list(entry.choices or [])},
            )
        ]
    if isinstance(entry, SessionEventEntry):
        return [UIEvent(UIEventKind.SESSION_EVENT, {"event_kind": entry.event_kind, "payload": dict(entry.payload)})]
    return []


def _updated(entry: Entry, p: dict[str, Any]) -> list[UIEvent]:
    if isinstance(entry, AssistantEntry):
        events: list[UIEvent] = []
        if p.get("delta"):
            events.append(UIEvent(UIEventKind.ASSISTANT_DELTA, {"text": p["delta"]}))
        if p.get("streaming") is False:
            events.append(UIEvent(UIEventKind.ASSISTANT_COMPLETED, {}))
        return events
    if isinstance(entry, ReasoningEntry):
        if p.get("delta"):
            return [UIEvent(UIEventKind.REASONING_DELTA, {"text": p["delta"]})]
        if p.get("streaming") is False:
            return [UIEvent(UIEventKind.REASONING_END, {"text": entry.content})]
        return []
    if isinstance(entry, ToolCallEntry):
        if p.get("completed"):
            return [
                UIEvent(
                    UIEventKind.TOOL_CALL_COMPLETED,
                    {"title": entry.title, "ok": entry.success is not False, "error": entry.error},
                )
            ]
        if "progress" in p:
            return [UIEvent(UIEventKind.TOOL_CALL_PROGRESS, {"title": entry.title, "message": p.get("progress")})]
        return []
    if isinstance(entry, AskUserEntry) and entry.answered:
        return [UIEvent(UIEventKind.ASK_ANSWERED, {"request_id": entry.request_id, "answer": entry.answer or ""})]
    return []


class ConsoleUI:
    """
    Single-writer, event-driven console UI (line-mode).

    - Only the renderer thread writes to the stream.
    - The session pump calls `on_signals()` to enqueue UIEvents.
    - A built-in tick loop drives the spinner without a separate writer thread.
    """

    def __init__(self, *, stream: TextIO | None = None, enable_color: bool = True, preview_chars: int = 120) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._ansi = bool(getattr(self._stream, "isatty", lambda: False)())
        self._enable_color = enable_color and self._ansi

        self._q: "queue.Queue[UIEvent]" = queue.Queue()
        self._thread: threading.Thread | None = None

        # Render state
        self._waiting = False
        self._since: int | None = None
        self._intent: str | None = None
        self._preview = ""
        self._preview_max_chars = preview_chars
        self._reasoning_buf = ""
        self._usage: dict[str, Any] = {}
        self._usage_printed: dict[str, Any] = {}

        self._assistant_open = False
        self._assistant_last_newline = True
        self._assistant_nl_run = 0
        self._assistant_fresh = False

        self._spinner_frame = 0
        self._last_spinner_paint = 0.0
        self._plain_waiting_printed = False

    # --- lifecycle ---
    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._render_loop, name="agentreel-ui", daemon=True)
        self._thread.start()

    def stop(self, *, join_timeout_s: float = 5.0) -> None:
        """Render everything queued so far, then stop the renderer thread."""

        self.emit(UIEvent(UIEventKind.EXIT_REQUESTED, {}))
        t = self._thread
        self._thread = None
        if t is not None:
            t.join(timeout=join_timeout_s)

    def emit(self, event: UIEvent) -> None:
        self._q.put_nowait(event)

    def on_signals(self, signals: Sequence[Signal], transcript: Transcript) -> None:
        for ev in ui_events_for(signals, transcript):
            self.emit(ev)

    # --- rendering ---
    def _render_loop(self) -> None:
        tick_interval_s = 0.08
        while True:
            try:
                ev = self._q.get(timeout=tick_interval_s)
            except queue.Empty:
                self._tick()
                continue
            if ev.kind is UIEventKind.EXIT_REQUESTED:
                break
            try:
                self._handle_event(ev)
            except Exception:
                # A rendering bug must not take the session down.
                logger.exception("console render failed", kind=ev.kind.value)

        self._stop_waiting(clear_line=True)
        self._ensure_newline_if_streaming()

    def _tick(self) -> None:
        if not self._waiting:
            return
        if not self._ansi:
            return
        now = time.monotonic()
        if (now - self._last_spinner_paint) < 0.06:
            return
        self._last_spinner_paint = now
        self._paint_spinner()

    def _handle_event(self, ev: UIEvent) -> None:
        k = ev.kind
        p = ev.payload

        if k is UIEventKind.USER_SUBMITTED:
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            self._println_user(str(p.get("text", "")))
            for path in p.get("attachments") or []:
                self._println_dim(f"  + {path}")
            return

        if k is UIEventKind.ACTIVITY:
            waiting = bool(p.get("waiting")) or bool(p.get("generating")) and not self._assistant_open
            since = p.get("since")
            self._since = since if isinstance(since, int) else None
            if waiting and not self._waiting:
                self._waiting = True
                self._spinner_frame = 0
                self._last_spinner_paint = 0.0
                self._plain_waiting_printed = False
                self._paint_spinner()
            elif not waiting and not p.get("generating"):
                self._stop_waiting(clear_line=True)
                self._print_usage_if_changed()
            return

        if k is UIEventKind.PREVIEW:
            self._preview = str(p.get("text") or "")[-self._preview_max_chars :]
            self._paint_spinner()
            return

        if k is UIEventKind.INTENT:
            intent = p.get("intent")
            self._intent = str(intent) if intent else None
            self._paint_spinner()
            return

        if k is UIEventKind.REASONING_DELTA:
            s = str(p.get("text", "") or "")
            if s:
                self._reasoning_buf = (self._reasoning_buf + s)[-self._preview_max_chars :]
            self._paint_spinner()
            return

        if k is UIEventKind.REASONING_END:
            snippet = (str(p.get("text") or "") or self._reasoning_buf).strip().replace("\n", " ")
            self._reasoning_buf = ""
            if snippet:
                self._stop_waiting(clear_line=True)
                self._ensure_newline_if_streaming()
                cols = shutil.get_terminal_size((80, 20)).columns
                preview_width = max(20, min(int(cols * 0.6), 72))
                self._println_dim(f"(think: {self._elide_tail(snippet, preview_width)})")
            return

        if k is UIEventKind.ASSISTANT_DELTA:
            delta = str(p.get("text", "") or "")
            if not delta:
                return
            self._stop_waiting(clear_line=True)
            self._start_assistant_if_needed()
            # Avoid an empty "Assistant:" line when the first chunk begins with newlines.
            if self._assistant_fresh:
                delta = delta.lstrip("\n")
            delta = self._compact_blank_lines(delta)
            if not delta:
                return
            self._write(delta)
            self._assistant_last_newline = delta.endswith("\n")
            self._assistant_fresh = False
            return

        if k is UIEventKind.ASSISTANT_COMPLETED:
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            return

        if k is UIEventKind.TOOL_CALL_STARTED:
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            self._println_dim(f"[tool] {self._one_line(p.get('title'))} …")
            return

        if k is UIEventKind.TOOL_CALL_PROGRESS:
            msg = self._one_line(p.get("message"))
            if msg:
                self._stop_waiting(clear_line=True)
                self._ensure_newline_if_streaming()
                self._println_dim(f"[progress] {msg}")
            return

        if k is UIEventKind.TOOL_CALL_COMPLETED:
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            title = self._one_line(p.get("title"))
            if bool(p.get("ok", True)):
                self._println_dim(f"[tool] {title} done")
            else:
                err = self._one_line(p.get("error"))
                self._println_red(f"[tool] {title} failed" + (f": {err}" if err else ""))
            return

        if k is UIEventKind.ASK_USER:
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            self._println_yellow(f"[ask] {p.get('question', '')}")
            choices = p.get("choices") or []
            for i, choice in enumerate(choices, start=1):
                self._println_dim(f"  {i}. {choice}")
            return

        if k is UIEventKind.ASK_ANSWERED:
            self._println_dim(f"[answer] {p.get('answer', '')}")
            return

        if k is UIEventKind.SESSION_EVENT:
            line, color = session_event_line(str(p.get("event_kind", "")), p.get("payload") or {})
            if not line:
                return
            self._stop_waiting(clear_line=True)
            self._ensure_newline_if_streaming()
            if color == "red":
                self._println_red(line)
            elif color == "yellow":
                self._println_yellow(line)
            else:
                self._println_dim(line)
            return

        if k is UIEventKind.USAGE:
            self._usage = dict(p)
            return

    def _print_usage_if_changed(self) -> None:
        if not self._usage or self._usage == self._usage_printed:
            return
        self._usage_printed = dict(self._usage)
        model = self._usage.get("model")
        line = f"[usage] {self._usage.get('input_tokens', 0)} in / {self._usage.get('output_tokens', 0)} out"
        if model:
            line += f" · {model}"
        self._println_dim(line)

    # --- low-level printing ---
    def _one_line(self, value: Any) -> str:
        if value is None:
            return ""
        return " ".join(str(value).splitlines()).strip()

    def _color(self, s: str, code: str) -> str:
        if not self._enable_color:
            return s
        return f"\x1b[{code}m{s}\x1b[0m"

    def _write(self, s: str) -> None:
        self._stream.write(s)
        try:
            self._stream.flush()
        except (OSError, ValueError):
            pass

    def _println(self, s: str = "") -> None:
        self._write(s + "\n")

    def _println_dim(self, s: str) -> None:
        self._println(self._color(s, "2"))

    def _println_red(self, s: str) -> None:
        self._println(self._color(s, "31"))

    def _println_yellow(self, s: str) -> None:
        self._println(self._color(s, "33"))

    def _println_user(self, text: str) -> None:
        prefix = self._color("You: ", "1;32") if self._enable_color else "You: "
        self._println(prefix + text)

    def _start_assistant_if_needed(self) -> None:
        if self._assistant_open:
            return
        prefix = self._color("Assistant: ", "1;36") if self._enable_color else "Assistant: "
        self._write(prefix)
        self._assistant_open = True
        self._assistant_last_newline = False
        self._assistant_nl_run = 0
        self._assistant_fresh = True

    def _ensure_newline_if_streaming(self) -> None:
        if not self._assistant_open:
            return
        if not self._assistant_last_newline:
            self._println()
        self._assistant_open = False
        self._assistant_last_newline = True
        self._assistant_nl_run = 0

    def _compact_blank_lines(self, delta: str) -> str:
        # Line-mode output: collapse 2+ newlines into 1 newline.
        out: list[str] = []
        nl_run = self._assistant_nl_run
        for ch in delta:
            if ch == "\r":
                continue
            if ch == "\n":
                if nl_run >= 1:
                    continue
                nl_run += 1
                out.append(ch)
                continue
            nl_run = 0
            out.append(ch)
        self._assistant_nl_run = nl_run
        return "".join(out)

    def _stop_waiting(self, *, clear_line: bool) -> None:
        if not self._waiting:
            return
        self._waiting = False
        if clear_line:
            self._clear_spinner_line()

    def _clear_spinner_line(self) -> None:
        if not self._ansi:
            return
        self._write("\r\x1b[2K\r")

    def _paint_spinner(self) -> None:
        if not self._waiting:
            return
        if not self._ansi:
            if not self._plain_waiting_printed:
                self._println_dim("Thinking…")
                self._plain_waiting_printed = True
            return
        frames: Sequence[str] = ("◌", "◍", "●", "◍")
        ch = frames[self._spinner_frame % len(frames)]
        self._spinner_frame += 1
        msg = self._intent or "Thinking"
        if self._since is not None:
            msg += f" {max(0, (now_ts_ms() - self._since) // 1000)}s"
        snippet_raw = (self._preview or self._reasoning_buf).strip().replace("\n", " ")

        cols = shutil.get_terminal_size((80, 20)).columns
        max_cols = max(20, int(cols) - 1)

        prefix = f"{ch} {msg}"
        if snippet_raw:
            avail = max(0, max_cols - self._display_width(prefix) - 3)
            snippet = self._elide_tail(snippet_raw, min(avail, 50))
            line = f"{prefix} ({snippet})" if snippet else f"{prefix}…"
        else:
            line = f"{prefix}…"

        # The spinner must never wrap; wrapping breaks in-place updates.
        line = _truncate_to_width(line, max_cols)
        self._write("\r\x1b[2K\r" + line)

    def _display_width(self, s: str) -> int:
        return _display_width(s)

    def _elide_tail(self, s: str, width: int) -> str:
        return _elide_tail(s, width)


def session_event_line(event_kind: str, payload: dict[str, Any]) -> tuple[str, str]:
    """Banner text and color ("red" | "yellow" | "dim") for a session event; empty text hides it."""

    def _get(key: str) -> str:
        value = payload.get(key)
        return "" if value is None else str(value)

    if event_kind == "session.error":
        status = f" (status {_get('statusCode')})" if payload.get("statusCode") is not None else ""
        kind = _get("errorType") or "error"
        return f"[error] {kind}: {_get('message')}{status}", "red"
    if event_kind == "session.model_change":
        prev = _get("previousModel")
        arrow = f"{prev} → " if prev else ""
        return f"[model] {arrow}{_get('newModel')}", "dim"
    if event_kind == "session.truncation":
        return (
            f"[context] truncated {_get('tokensRemoved') or 0} tokens, {_get('messagesRemoved') or 0} messages",
            "yellow",
        )
    if event_kind == "session.compaction_start":
        pre = f" ({_get('preTokens')} tokens)" if payload.get("preTokens") is not None else ""
        return f"[compaction] started{pre}", "dim"
    if event_kind == "session.compaction_complete":
        post = f" ({_get('postTokens')} tokens)" if payload.get("postTokens") is not None else ""
        return f"[compaction] done{post}", "dim"
    if event_kind == "session.shutdown":
        return "[session] shutdown", "dim"
    if event_kind == "skill.invoked":
        return f"[skill] {_get('name')}", "dim"
    if event_kind == "hook.end":
        ok = payload.get("success") is not False
        return f"[hook] {_get('hookType')} {'ok' if ok else 'failed'}", "dim" if ok else "red"
    if event_kind == "permission.requested":
        target = f" {_get('target')}" if payload.get("target") else ""
        return f"[permission] {_get('kind')}{target} needs approval", "yellow"
    if event_kind == "permission.resolved":
        prefix = f" ({_get('rulePathPrefix')})" if payload.get("rulePathPrefix") else ""
        return f"[permission] {_get('kind')}: {_get('decision')}{prefix}", "dim"
    # turn.* and hook.start carry no user-facing text.
    return "", "dim"


def print_transcript(transcript: Transcript, stream: TextIO | None = None) -> None:
    """Plain rendering of a finished transcript (no spinner, no color)."""

    out = stream if stream is not None else sys.stdout
    for entry in transcript:
        for line in _entry_lines(entry):
            out.write(line + "\n")


def _entry_lines(entry: Entry) -> list[str]:
    if isinstance(entry, UserEntry):
        lines = [f"You: {entry.content}"]
        lines.extend(f"  + {p}" for p in entry.attachments)
        return lines
    if isinstance(entry, AssistantEntry):
        suffix = " …" if entry.streaming else ""
        return [f"Assistant: {entry.content}{suffix}"]
    if isinstance(entry, ReasoningEntry):
        one_line = " ".join(entry.content.split())
        return [f"(think: {_elide_tail(one_line, 72)})"] if one_line else []
    if isinstance(entry, ToolCallEntry):
        title = " ".join(entry.title.splitlines())
        if not entry.completed:
            return [f"[tool] {title} …"]
        if entry.success is False:
            err = f": {entry.error}" if entry.error else ""
            return [f"[tool] {title} failed{err}"]
        if entry.success is None:
            return [f"[tool] {title} ({entry.error or 'closed'})"]
        return [f"[tool] {title} done"]
    if isinstance(entry, AskUserEntry):
        lines = [f"[ask] {entry.question}"]
        lines.extend(f"  {i}. {c}" for i, c in enumerate(entry.choices or [], start=1))
        if entry.answered:
            lines.append(f"[answer] {entry.answer or ''}")
        return lines
    if isinstance(entry, SessionEventEntry):
        line, _ = session_event_line(entry.event_kind, entry.payload)
        return [line] if line else []
    return []


def _display_width(s: str) -> int:
    w = 0
    for ch in s:
        if unicodedata.combining(ch):
            continue
        eaw = unicodedata.east_asian_width(ch)
        w += 2 if eaw in {"W", "F"} else 1
    return w


def _truncate_to_width(s: str, width: int) -> str:
    if width <= 0:
        return ""
    if _display_width(s) <= width:
        return s
    out: list[str] = []
    used = 0
    for ch in s:
        if unicodedata.combining(ch):
            out.append(ch)
            continue
        eaw = unicodedata.east_asian_width(ch)
        cw = 2 if eaw in {"W", "F"} else 1
        if used + cw > width:
            break
        out.append(ch)
        used += cw
    return "".join(out)


def _elide_tail(s: str, width: int) -> str:
    if width <= 0:
        return ""
    if _display_width(s) <= width:
        return s
    # Keep the tail behind a leading ellipsis.
    if width == 1:
        return "…"
    target = width - 1
    out_rev: list[str] = []
    used = 0
    for ch in reversed(s):
        if unicodedata.combining(ch):
            out_rev.append(ch)
            continue
        eaw = unicodedata.east_asian_width(ch)
        cw = 2 if eaw in {"W", "F"} else 1
        if used + cw > target:
            break
        out_rev.append(ch)
        used += cw
    return "…" + "".join(reversed(out_rev))
