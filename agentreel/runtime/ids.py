from __future__ import annotations

import time
import uuid


def new_id(prefix: str) -> str:
    ts = time.time_ns()
    rand = uuid.uuid4().hex
    return f"{prefix}_{ts:016x}_{rand}"


def now_ts_ms() -> int:
    return int(time.time() * 1000)


class SequentialIds:
    """
    Deterministic id source for transcript entries.

    Ids depend only on how many entries were created before, so replaying the
    same event log always yields the same ids.
    """

    def __init__(self, prefix: str = "entry") -> None:
        self._prefix = prefix
        self._next = 1

    def next(self) -> str:
        value = f"{self._prefix}-{self._next}"
        self._next += 1
        return value

    @property
    def issued(self) -> int:
        return self._next - 1
