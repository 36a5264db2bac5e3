from __future__ import annotations

import threading
from typing import Any, Callable, Iterable, Mapping, Protocol

from .channel import EventChannel
from .errors import EventLogError
from .ids import new_id
from .log import get_logger
from .permission_broker import PermissionBroker
from .permissions import PermissionDecision, PermissionPolicy, PermissionRequest
from .protocol import EventKind, RawEvent
from .reducer import Signal, TranscriptReducer
from .replay import ReplayCodec
from .stores.base import EventLogStore, SessionStore
from .transcript import Transcript

logger = get_logger(__name__)

SignalSink = Callable[[list[Signal]], None]


class AgentRuntime(Protocol):
    """The external agent this session drives."""

    def send_message(self, prompt: str, attachments: list[str] | None = None) -> None: ...

    def abort(self) -> None: ...

    def answer(self, request_id: str, answer: str) -> None: ...


class Session:
    """
    One conversation with the agent runtime.

    Inbound events go through `publish()` into the channel; a single pump
    (`run()` on the caller's thread or `start()` on a daemon thread) records
    each event to the event log, reduces it, and hands the resulting signals to
    `sink`.
    """

    def __init__(
        self,
        *,
        policy: PermissionPolicy,
        working_root: str,
        model: str,
        runtime: AgentRuntime | None = None,
        session_id: str | None = None,
        event_log: EventLogStore | None = None,
        session_store: SessionStore | None = None,
        codec: ReplayCodec | None = None,
        max_session_logs: int = 50,
        sink: SignalSink | None = None,
        reducer: TranscriptReducer | None = None,
    ) -> None:
        self.session_id = session_id or new_id("sess")
        self.working_root = working_root
        self.model = model
        self.runtime = runtime
        self.policy = policy
        self.event_log = event_log
        self.session_store = session_store
        self.codec = codec or ReplayCodec()
        self.max_session_logs = max_session_logs
        self.sink = sink

        self.reducer = reducer or self.codec.reducer(model=model)
        self.channel = EventChannel()
        self.broker = PermissionBroker(policy, publish=self.publish)
        self.record_failures = 0

        self._lock = threading.RLock()
        self._thread: threading.Thread | None = None
        self._meta_saved = False

    # --- lifecycle ---

    @classmethod
    def start_new(cls, **kwargs: Any) -> "Session":
        """A fresh session; its metadata is persisted with the first recorded event."""

        kwargs.pop("session_id", None)
        return cls(**kwargs)

    @classmethod
    def restore(
        cls,
        session_id: str,
        *,
        policy: PermissionPolicy,
        event_log: EventLogStore,
        session_store: SessionStore | None = None,
        codec: ReplayCodec | None = None,
        working_root: str | None = None,
        model: str | None = None,
        **kwargs: Any,
    ) -> "Session":
        """Rebuild a recorded session's transcript and keep appending to its log."""

        meta: dict[str, Any] = {}
        if session_store is not None:
            meta = session_store.get_session(session_id)
        root = working_root or str(meta.get("working_root") or "")
        chosen_model = model or str(meta.get("model") or "")
        codec = codec or ReplayCodec()
        events = list(event_log.read(session_id))
        reducer = codec.replay_reducer(events, working_root=root, model=chosen_model or None)
        session = cls(
            policy=policy,
            working_root=root,
            model=chosen_model,
            session_id=session_id,
            event_log=event_log,
            session_store=session_store,
            codec=codec,
            reducer=reducer,
            **kwargs,
        )
        session._meta_saved = bool(meta)
        logger.info("session restored", session_id=session_id, events=len(events), entries=len(reducer.transcript))
        return session

    def reset(self) -> None:
        """Start a new conversation: new session id and an empty transcript."""

        with self._lock:
            self.session_id = new_id("sess")
            self.reducer = self.codec.reducer(model=self.model)
            self._meta_saved = False
        logger.info("session reset", session_id=self.session_id)

    def close(self, *, timeout_s: float | None = 5.0) -> None:
        self.channel.close()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout_s)

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._thread = threading.Thread(target=self.run, name=f"agentreel-pump-{self.session_id}", daemon=True)
        self._thread.start()
        return self._thread

    def run(self) -> None:
        for raw in self.channel:
            self.handle(raw)

    def pump(self) -> int:
        """Process whatever is queued right now without blocking; returns the count."""

        n = 0
        while True:
            raw = self.channel.get(timeout=0)
            if raw is None:
                return n
            self.handle(raw)
            n += 1

    # --- inbound ---

    def publish(self, event: RawEvent | Mapping[str, Any]) -> None:
        self.channel.put(event)

    def handle(self, raw: RawEvent) -> list[Signal]:
        with self._lock:
            self._record(raw)
            signals = self.reducer.apply(raw)
            if raw.kind == EventKind.SESSION_IDLE.value:
                self._prune()
        if self.sink is not None and signals:
            self.sink(signals)
        return signals

    @property
    def transcript(self) -> Transcript:
        return self.reducer.transcript

    # --- outbound ---

    def send_message(self, prompt: str, attachments: Iterable[str] | None = None) -> None:
        attachments_list = list(attachments) if attachments is not None else None
        payload: dict[str, Any] = {"content": prompt}
        if attachments_list:
            payload["attachments"] = attachments_list
        self.publish(RawEvent.now(EventKind.USER_MESSAGE.value, payload))
        if self.runtime is None:
            return
        try:
            self.runtime.send_message(prompt, attachments_list)
        except Exception as e:
            logger.exception("agent runtime failed to accept message", session_id=self.session_id)
            self.publish(
                RawEvent.now(
                    EventKind.SESSION_ERROR.value,
                    {"errorType": type(e).__name__, "message": str(e)},
                )
            )
            self.publish(RawEvent.now(EventKind.SESSION_IDLE.value))

    def abort(self, *, settle: bool = True) -> None:
        """
        Abort the current turn.

        Streaming entries stay open until a session.idle arrives; with
        `settle` that idle is published once the runtime has returned.
        """

        if self.runtime is not None:
            self.runtime.abort()
        if settle:
            self.publish(RawEvent.now(EventKind.SESSION_IDLE.value))

    def answer(self, request_id: str, answer: str) -> None:
        self.publish(RawEvent.now(EventKind.USER_ASK_ANSWERED.value, {"requestId": request_id, "answer": answer}))
        if self.runtime is not None:
            self.runtime.answer(request_id, answer)

    def request_permission(
        self,
        request: PermissionRequest | Mapping[str, Any],
        *,
        timeout_s: float | None = None,
    ) -> PermissionDecision:
        if not isinstance(request, PermissionRequest):
            request = PermissionRequest.from_dict(request, working_root=self.working_root)
        elif not request.working_root:
            request = PermissionRequest(kind=request.kind, fields=dict(request.fields), working_root=self.working_root)
        return self.broker.request(request, timeout_s=timeout_s)

    def respond_permission(self, decision: PermissionDecision | str, rule_path_prefix: str | None = None) -> None:
        self.broker.respond(decision, rule_path_prefix)

    def set_working_root(self, path: str) -> None:
        self.working_root = path
        self._update_meta({"working_root": path})

    def set_model(self, model: str) -> None:
        previous = self.model
        if model == previous:
            return
        self.model = model
        self._update_meta({"model": model})
        self.publish(
            RawEvent.now(EventKind.SESSION_MODEL_CHANGE.value, {"previousModel": previous, "newModel": model})
        )

    # --- persistence ---

    def meta(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "working_root": self.working_root,
            "model": self.model,
        }

    def _ensure_meta(self) -> None:
        if self._meta_saved or self.session_store is None:
            return
        self.session_store.create_session(self.meta())
        self._meta_saved = True

    def _update_meta(self, patch: dict[str, Any]) -> None:
        if self.session_store is None:
            return
        with self._lock:
            if not self._meta_saved:
                return
            self.session_store.update_session(self.session_id, patch)

    def _record(self, raw: RawEvent) -> None:
        if self.event_log is None:
            return
        try:
            self._ensure_meta()
            self.event_log.append(self.session_id, raw)
        except (OSError, EventLogError):
            self.record_failures += 1
            logger.exception("failed to record event", session_id=self.session_id, kind=raw.kind)

    def _prune(self) -> None:
        if self.event_log is None:
            return
        deleted = self.event_log.prune(self.max_session_logs, keep=[self.session_id])
        if self.session_store is not None:
            for session_id in deleted:
                self.session_store.delete_session(session_id)

