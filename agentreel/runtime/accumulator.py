from __future__ import annotations


class StreamAccumulator:
    """
    Concatenates text deltas per stream id.

    Deltas are appended verbatim; repeated deltas are not de-duplicated.
    Finalizing closes the stream but keeps its content readable.
    """

    def __init__(self) -> None:
        self._content: dict[str, str] = {}
        self._open: set[str] = set()

    def append(self, stream_id: str, delta: str) -> str:
        text = self._content.get(stream_id, "") + delta
        self._content[stream_id] = text
        self._open.add(stream_id)
        return text

    def finalize(self, stream_id: str) -> str:
        self._open.discard(stream_id)
        return self._content.get(stream_id, "")

    def content(self, stream_id: str) -> str:
        return self._content.get(stream_id, "")

    def is_open(self, stream_id: str) -> bool:
        return stream_id in self._open

    def open_streams(self) -> list[str]:
        return sorted(self._open)

    def finalize_all(self) -> list[str]:
        closed = self.open_streams()
        self._open.clear()
        return closed


class PreviewBuffer:
    """Rolling tail of the assistant text shown next to the spinner."""

    def __init__(self, max_chars: int = 120) -> None:
        self.max_chars = max_chars
        self._text = ""

    def feed(self, delta: str) -> str:
        text = self._text + delta
        if len(text) > self.max_chars:
            text = text[-self.max_chars :]
        self._text = text
        return text

    def clear(self) -> None:
        self._text = ""

    @property
    def text(self) -> str:
        return self._text
