from __future__ import annotations

from typing import Generic, Iterator, TypeVar

from .log import get_logger

logger = get_logger(__name__)

E = TypeVar("E")


class Correlator(Generic[E]):
    """
    Maps a correlation id (tool call id, reasoning id, ask request id) to the
    transcript entry it opened.

    At most one entry per id is open: registering an id that is still open
    hands the superseded entry to `on_supersede` before replacing it.
    """

    def __init__(self, namespace: str, *, on_supersede=None) -> None:
        self.namespace = namespace
        self._open: dict[str, E] = {}
        self._on_supersede = on_supersede

    def register(self, correlation_id: str, entry: E) -> E | None:
        previous = self._open.get(correlation_id)
        if previous is not None and previous is not entry:
            logger.debug("correlation id reused while open", namespace=self.namespace, correlation_id=correlation_id)
            if self._on_supersede is not None:
                self._on_supersede(previous)
        self._open[correlation_id] = entry
        return previous

    def find(self, correlation_id: str) -> E | None:
        return self._open.get(correlation_id)

    def forget(self, correlation_id: str) -> E | None:
        return self._open.pop(correlation_id, None)

    def open_ids(self) -> list[str]:
        return list(self._open)

    def clear(self) -> None:
        self._open.clear()

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._open

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._open))

    def __len__(self) -> int:
        return len(self._open)
