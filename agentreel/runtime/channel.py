from __future__ import annotations

import queue
import threading
from typing import Any, Iterator, Mapping

from .protocol import RawEvent

_CLOSED = object()


class ChannelClosed(RuntimeError):
    pass


class EventChannel:
    """
    Single-consumer queue of raw events.

    Any number of producers may `put`; exactly one consumer iterates. Closing
    enqueues a sentinel, so everything published before `close()` is still
    delivered and iteration then ends.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._q: queue.Queue[Any] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def put(self, event: RawEvent | Mapping[str, Any]) -> None:
        if not isinstance(event, RawEvent):
            event = RawEvent.from_dict(event)
        with self._lock:
            if self._closed.is_set():
                raise ChannelClosed("Event channel is closed.")
            self._q.put(event)

    def get(self, timeout: float | None = None) -> RawEvent | None:
        """Next event, or None once the channel is closed and drained (or on timeout)."""

        try:
            item = self._q.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            # Keep the sentinel for any later get().
            self._q.put(_CLOSED)
            return None
        return item

    def close(self) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._q.put(_CLOSED)

    def pending(self) -> int:
        return self._q.qsize()

    def __iter__(self) -> Iterator[RawEvent]:
        while True:
            item = self._q.get()
            if item is _CLOSED:
                self._q.put(_CLOSED)
                return
            yield item
