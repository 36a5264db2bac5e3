from __future__ import annotations

import json
from typing import Any, Iterable, Iterator, Mapping

from .log import get_logger
from .protocol import RawEvent
from .reducer import Signal, TranscriptReducer
from .transcript import Transcript

logger = get_logger(__name__)

DEFAULT_SPEED = 4.0
MIN_DELAY_MS = 50


def decode_log(lines: Iterable[str]) -> list[RawEvent]:
    """Parse JSONL lines into raw events; blank and invalid lines are skipped."""

    out: list[RawEvent] = []
    for lineno, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            raw = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("skipping invalid event log line", line=lineno)
            continue
        if not isinstance(raw, dict):
            logger.debug("skipping non-object event log line", line=lineno)
            continue
        out.append(RawEvent.from_dict(raw))
    return out


def encode_log(events: Iterable[RawEvent | Mapping[str, Any]]) -> str:
    lines: list[str] = []
    for event in events:
        if not isinstance(event, RawEvent):
            event = RawEvent.from_dict(event)
        lines.append(json.dumps(event.to_dict(), ensure_ascii=False, sort_keys=True))
    return "".join(line + "\n" for line in lines)


class ReplayCodec:
    """
    Rebuilds a transcript from a recorded event log.

    Replay runs the same reducer as a live session, against a fresh state, and
    has no policy, broker or runtime to talk to. Recorded permission events
    come back as session-event entries, so no decision is asked again.
    """

    def __init__(self, *, hidden_tools: Iterable[str] | None = None, preview_chars: int = 120) -> None:
        self.hidden_tools = None if hidden_tools is None else tuple(hidden_tools)
        self.preview_chars = preview_chars

    def reducer(self, *, model: str | None = None) -> TranscriptReducer:
        return TranscriptReducer(hidden_tools=self.hidden_tools, preview_chars=self.preview_chars, model=model)

    def replay_reducer(
        self,
        events: Iterable[RawEvent | Mapping[str, Any]],
        *,
        working_root: str | None = None,
        model: str | None = None,
    ) -> TranscriptReducer:
        reducer = self.reducer(model=model)
        for event in events:
            reducer.apply(event)
        logger.debug("replayed session log", working_root=working_root, model=model, events=reducer.diagnostics.events)
        return reducer

    def replay(
        self,
        events: Iterable[RawEvent | Mapping[str, Any]],
        *,
        working_root: str | None = None,
        model: str | None = None,
    ) -> Transcript:
        return self.replay_reducer(events, working_root=working_root, model=model).transcript


class ReplayPlayer:
    """
    Step-through playback over a recorded log.

    `cursor` is the index of the last applied event (-1 before the first).
    """

    def __init__(self, events: Iterable[RawEvent | Mapping[str, Any]], codec: ReplayCodec | None = None) -> None:
        self.events: list[RawEvent] = [e if isinstance(e, RawEvent) else RawEvent.from_dict(e) for e in events]
        self.codec = codec or ReplayCodec()
        self._reducer = self.codec.reducer()
        self.cursor = -1
        self.last_signals: list[Signal] = []

    def __len__(self) -> int:
        return len(self.events)

    @property
    def at_end(self) -> bool:
        return self.cursor >= len(self.events) - 1

    @property
    def reducer(self) -> TranscriptReducer:
        return self._reducer

    def current(self) -> RawEvent | None:
        if 0 <= self.cursor < len(self.events):
            return self.events[self.cursor]
        return None

    def step(self) -> RawEvent | None:
        """Apply the next event; returns it, or None at the end."""

        if self.at_end:
            return None
        self.cursor += 1
        event = self.events[self.cursor]
        self.last_signals = self._reducer.apply(event)
        return event

    def seek(self, index: int) -> None:
        index = max(-1, min(index, len(self.events) - 1))
        if index < self.cursor:
            self._reducer = self.codec.reducer()
            self.cursor = -1
        while self.cursor < index:
            self.step()

    def transcript(self) -> Transcript:
        return self._reducer.transcript

    def delay_ms(self, speed: float = DEFAULT_SPEED) -> int:
        """Wait before the next step: the recorded gap divided by `speed`, at least 50 ms."""

        if self.at_end or self.cursor < 0:
            return MIN_DELAY_MS
        gap = self.events[self.cursor + 1].timestamp - self.events[self.cursor].timestamp
        if speed <= 0:
            speed = DEFAULT_SPEED
        return int(max(MIN_DELAY_MS, gap / speed))

    def __iter__(self) -> Iterator[RawEvent]:
        while not self.at_end:
            event = self.step()
            if event is None:
                return
            yield event

