from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import PermissionNotPendingError, PermissionTimeoutError
from .ids import new_id
from .log import get_logger
from .permissions import EvalResult, PermissionDecision, PermissionPolicy, PermissionRequest
from .protocol import EventKind, RawEvent

logger = get_logger(__name__)

Publisher = Callable[[RawEvent], None]


@dataclass(slots=True, eq=False)
class _Pending:
    request_id: str
    request: PermissionRequest
    done: threading.Event = field(default_factory=threading.Event)
    decision: PermissionDecision | None = None


class PermissionBroker:
    """
    Serializes permission prompts: one active request, the rest queued FIFO.

    `request()` is called from the agent runtime's thread and blocks until the
    user answers via `respond()` (from the UI thread). Requests the policy
    already allows return immediately without prompting.
    """

    def __init__(self, policy: PermissionPolicy, *, publish: Publisher | None = None) -> None:
        self.policy = policy
        self._publish = publish
        self._lock = threading.Lock()
        self._queue: deque[_Pending] = deque()
        self._active: _Pending | None = None

    def request(self, request: PermissionRequest, *, timeout_s: float | None = None) -> PermissionDecision:
        if self.policy.evaluate(request) is EvalResult.ALLOW:
            return PermissionDecision.ALLOW

        pending = _Pending(request_id=new_id("perm"), request=request)
        with self._lock:
            self._queue.append(pending)
            queued = len(self._queue)
            activated = self._activate_next_locked()
        if pending is not activated:
            logger.debug("permission request queued", kind=request.kind, position=queued)
        if activated is not None:
            self._announce(activated)

        if not pending.done.wait(timeout=timeout_s):
            withdrawn, nxt = self._withdraw(pending)
            if not withdrawn:
                # respond() took it first; its decision is about to land.
                pending.done.wait()
                assert pending.decision is not None
                return pending.decision
            logger.info("permission request timed out", kind=request.kind, timeout_s=timeout_s)
            self._emit(
                EventKind.PERMISSION_RESOLVED,
                {"kind": request.kind, "decision": PermissionDecision.DENY.value, "reason": "timeout"},
            )
            if nxt is not None:
                self._announce(nxt)
            raise PermissionTimeoutError(f"Permission request timed out after {timeout_s}s: {request.kind}")
        assert pending.decision is not None
        return pending.decision

    def respond(self, decision: PermissionDecision | str, rule_path_prefix: str | None = None) -> PermissionRequest:
        decision = PermissionDecision(decision)
        with self._lock:
            pending = self._active
            if pending is None:
                raise PermissionNotPendingError("No permission request is pending.")
            self._active = None

        request = pending.request
        prefix = rule_path_prefix or request.working_root or None
        try:
            if decision is PermissionDecision.ALWAYS:
                if prefix:
                    self.policy.add_rule(request.kind, prefix)
                else:
                    logger.warning("no path prefix for 'always' decision; rule not stored", kind=request.kind)

            payload: dict[str, Any] = {"kind": request.kind, "decision": decision.value}
            if decision is PermissionDecision.ALWAYS and prefix:
                payload["rulePathPrefix"] = prefix
            self._emit(EventKind.PERMISSION_RESOLVED, payload)
        finally:
            # The runtime is unblocked even when persisting the rule fails.
            pending.decision = decision
            pending.done.set()
            with self._lock:
                nxt = self._activate_next_locked()
            if nxt is not None:
                self._announce(nxt)
        return request

    def active(self) -> PermissionRequest | None:
        with self._lock:
            return self._active.request if self._active is not None else None

    def pending_count(self) -> int:
        """Requests waiting behind the active one."""

        with self._lock:
            return len(self._queue)

    # --- internals ---

    def _activate_next_locked(self) -> _Pending | None:
        if self._active is not None or not self._queue:
            return None
        self._active = self._queue.popleft()
        return self._active

    def _withdraw(self, pending: _Pending) -> tuple[bool, _Pending | None]:
        with self._lock:
            if self._active is pending:
                self._active = None
                return True, self._activate_next_locked()
            if pending in self._queue:
                self._queue.remove(pending)
                return True, None
            return False, None

    def _announce(self, pending: _Pending) -> None:
        request = pending.request
        payload: dict[str, Any] = {"kind": request.kind, "workingRoot": request.working_root}
        target = request.target_path
        if target is not None:
            payload["target"] = target
        self._emit(EventKind.PERMISSION_REQUESTED, payload)

    def _emit(self, kind: EventKind, payload: dict[str, Any]) -> None:
        if self._publish is None:
            return
        self._publish(RawEvent.now(kind.value, payload))
