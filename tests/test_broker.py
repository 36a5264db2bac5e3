from __future__ import annotations

import threading
import time

import pytest

from agentreel.runtime.channel import ChannelClosed, EventChannel
from agentreel.runtime.errors import PermissionNotPendingError, PermissionTimeoutError
from agentreel.runtime.permission_broker import PermissionBroker
from agentreel.runtime.permissions import (
    PermissionDecision,
    PermissionPolicy,
    PermissionRequest,
    PermissionRule,
)
from agentreel.runtime.protocol import RawEvent
from agentreel.runtime.stores import MemoryRuleStore

ROOT = "/home/user/project"


def _wait_until(predicate, timeout_s: float = 2.0) -> None:
    deadline = time.monotonic() + timeout_s
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.005)


def _request_in_thread(broker: PermissionBroker, request: PermissionRequest, results: list, **kwargs):
    def run():
        try:
            results.append(broker.request(request, **kwargs))
        except TimeoutError as e:
            results.append(e)

    t = threading.Thread(target=run, daemon=True)
    t.start()
    return t


@pytest.fixture
def published() -> list[RawEvent]:
    return []


@pytest.fixture
def broker(published) -> PermissionBroker:
    return PermissionBroker(PermissionPolicy(MemoryRuleStore()), publish=published.append)


class TestPermissionBroker:
    def test_allowed_request_returns_without_prompt(self, broker, published):
        request = PermissionRequest("read", {"path": f"{ROOT}/a"}, ROOT)
        assert broker.request(request) is PermissionDecision.ALLOW
        assert published == []
        assert broker.active() is None

    def test_request_blocks_until_respond(self, broker, published):
        results: list = []
        request = PermissionRequest("write", {"path": "/etc/hosts"}, ROOT)
        t = _request_in_thread(broker, request, results)
        _wait_until(lambda: broker.active() is not None)
        assert published[0].kind == "permission.requested"
        assert published[0].payload == {"kind": "write", "workingRoot": ROOT, "target": "/etc/hosts"}
        assert results == []

        assert broker.respond("deny") == request
        t.join(timeout=2)
        assert results == [PermissionDecision.DENY]
        assert published[-1].payload == {"kind": "write", "decision": "deny"}

    def test_requests_are_served_fifo(self, broker, published):
        results_a: list = []
        results_b: list = []
        req_a = PermissionRequest("shell", {"command": "a"}, ROOT)
        req_b = PermissionRequest("shell", {"command": "b"}, ROOT)
        ta = _request_in_thread(broker, req_a, results_a)
        _wait_until(lambda: broker.active() is not None)
        tb = _request_in_thread(broker, req_b, results_b)
        _wait_until(lambda: broker.pending_count() == 1)

        assert broker.active() == req_a
        broker.respond(PermissionDecision.ALLOW)
        ta.join(timeout=2)
        assert broker.active() == req_b
        broker.respond(PermissionDecision.DENY)
        tb.join(timeout=2)

        assert results_a == [PermissionDecision.ALLOW]
        assert results_b == [PermissionDecision.DENY]
        kinds = [e.kind for e in published]
        assert kinds == [
            "permission.requested",
            "permission.resolved",
            "permission.requested",
            "permission.resolved",
        ]

    def test_always_stores_rule_for_working_root(self, published):
        store = MemoryRuleStore()
        broker = PermissionBroker(PermissionPolicy(store), publish=published.append)
        results: list = []
        t = _request_in_thread(broker, PermissionRequest("shell", {"command": "make"}, ROOT), results)
        _wait_until(lambda: broker.active() is not None)
        broker.respond("always")
        t.join(timeout=2)
        assert results == [PermissionDecision.ALWAYS]
        assert store.load() == [PermissionRule("shell", ROOT)]
        assert published[-1].payload["rulePathPrefix"] == ROOT
        # The stored rule now covers the same request.
        assert broker.request(PermissionRequest("shell", {"command": "make"}, ROOT)) is PermissionDecision.ALLOW

    def test_always_with_explicit_prefix(self, broker):
        results: list = []
        t = _request_in_thread(broker, PermissionRequest("write", {"path": "/tmp/x/y"}, ROOT), results)
        _wait_until(lambda: broker.active() is not None)
        broker.respond("always", "/tmp/x")
        t.join(timeout=2)
        assert broker.policy.get_rules() == [PermissionRule("write", "/tmp/x")]

    def test_respond_without_pending_raises(self, broker):
        with pytest.raises(PermissionNotPendingError):
            broker.respond("allow")

    def test_timeout_denies_and_advances_queue(self, broker, published):
        results_a: list = []
        results_b: list = []
        ta = _request_in_thread(broker, PermissionRequest("shell", {"command": "a"}, ROOT), results_a, timeout_s=0.05)
        _wait_until(lambda: broker.active() is not None)
        req_b = PermissionRequest("shell", {"command": "b"}, ROOT)
        tb = _request_in_thread(broker, req_b, results_b)
        ta.join(timeout=2)

        assert isinstance(results_a[0], PermissionTimeoutError)
        assert results_a[0].code == "permission_timeout"
        _wait_until(lambda: broker.active() == req_b)
        timeout_events = [e for e in published if e.payload.get("reason") == "timeout"]
        assert timeout_events[0].payload["decision"] == "deny"

        broker.respond("allow")
        tb.join(timeout=2)
        assert results_b == [PermissionDecision.ALLOW]


class TestEventChannel:
    def test_fifo_and_close_drains(self):
        ch = EventChannel()
        ch.put(RawEvent("a", {}, 1))
        ch.put({"kind": "b", "payload": {}, "timestamp": 2})
        ch.close()
        assert [e.kind for e in ch] == ["a", "b"]
        assert ch.get(timeout=0) is None
        assert ch.closed

    def test_put_after_close_raises(self):
        ch = EventChannel()
        ch.close()
        with pytest.raises(ChannelClosed):
            ch.put(RawEvent("a", {}, 1))

    def test_get_timeout(self):
        ch = EventChannel()
        assert ch.get(timeout=0.01) is None
        ch.put(RawEvent("a", {}, 1))
        assert ch.pending() == 1
        assert ch.get(timeout=0).kind == "a"

    def test_many_producers_one_consumer(self):
        ch = EventChannel()

        def produce(n: int) -> None:
            for i in range(50):
                ch.put(RawEvent("p", {"n": n, "i": i}, i))

        threads = [threading.Thread(target=produce, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        ch.close()
        events = list(ch)
        assert len(events) == 200
        for n in range(4):
            assert [e.payload["i"] for e in events if e.payload["n"] == n] == list(range(50))
