import queue
import threading

import pytest

from clusteroperator.kube import GroupVersionResource as GVR
from clusteroperator.watchbuilder import (
    SelfHealingWatch,
    WatchPool,
    is_namespace_scope,
    new_dynamic_watch,
    new_watch_pool,
)


class FakeWatch:
    def __init__(self, events, closed=False):
        self.result_queue = queue.Queue()
        for event in events:
            self.result_queue.put(event)
        if closed:
            self.result_queue.put(None)


class FakeClient:
    def __init__(self, watches=None):
        self.calls = []
        self._watches = list(watches or [])
        self._lock = threading.Lock()

    def watch(self, gvr, namespace):
        with self._lock:
            self.calls.append((gvr, namespace))
            if self._watches:
                return self._watches.pop(0)
        return FakeWatch([("ADDED", gvr.resource)])


def collect(out, count):
    return [out.get(timeout=5) for _ in range(count)]


def test_new_dynamic_watch_records_watch_action():
    client = FakeClient()
    gvr = GVR("", "v1", "Pods")
    watch = new_dynamic_watch(client, gvr)
    assert client.calls == [(gvr, "")]
    assert watch.result_queue.get_nowait() == ("ADDED", "Pods")


def test_cluster_scoped_watch_has_no_namespace():
    client = FakeClient()
    gvr = GVR("", "v1", "nodes")
    new_dynamic_watch(client, gvr)
    assert client.calls == [(gvr, None)]


@pytest.mark.parametrize("resource, expected", [
    ("pods", True), ("deployments", True), ("nodes", False),
    ("ClusterRoleBinding", False), ("namespaces", False),
])
def test_is_namespace_scope(resource, expected):
    assert is_namespace_scope(GVR("", "v1", resource)) is expected


def test_run_until_watch_closes_forwards_events():
    watch = SelfHealingWatch(FakeClient(), GVR("", "v1", "pods"))
    watch.current_watch = FakeWatch(["a", "b"], closed=True)
    out = queue.Queue()
    watch.run_until_watch_closes(out, threading.Event())
    assert collect(out, 2) == ["a", "b"]
    assert out.empty()


def test_self_healing_watch_reopens_after_close():
    client = FakeClient([FakeWatch(["a", "b"], closed=True), FakeWatch(["c"])])
    watch = SelfHealingWatch(client, GVR("", "v1", "pods"), poll_interval=0.01)
    ready, stop, out = threading.Event(), threading.Event(), queue.Queue()
    thread = threading.Thread(target=watch.run, args=(ready, out, stop), daemon=True)
    thread.start()
    try:
        assert collect(out, 3) == ["a", "b", "c"]
        assert ready.is_set()
    finally:
        stop.set()
        thread.join(timeout=5)
    assert len(client.calls) == 2
    assert not thread.is_alive()


def test_self_healing_watch_retries_failures():
    attempts = []
    created = []

    def flaky(client, gvr):
        attempts.append(gvr)
        if len(attempts) < 3:
            raise ConnectionError("down")
        fake = FakeWatch(["ok"])
        created.append(fake)
        return fake

    watch = SelfHealingWatch(None, GVR("", "v1", "pods"), make_watch=flaky,
                             retry_delay=0, poll_interval=0.01)
    ready, stop, out = threading.Event(), threading.Event(), queue.Queue()
    thread = threading.Thread(target=watch.run, args=(ready, out, stop), daemon=True)
    thread.start()
    try:
        assert out.get(timeout=5) == "ok"
        assert ready.is_set()
    finally:
        stop.set()
        thread.join(timeout=5)
    assert len(created) == 1
    assert watch.current_watch is created[0]
    assert not thread.is_alive()


def test_watch_pool_delivers_from_all_watches():
    client = FakeClient()
    gvrs = [GVR("", "v1", "pods"), GVR("apps", "v1", "deployments")]
    pool = new_watch_pool(client, gvrs)
    assert [w.gvr for w in pool.pool] == gvrs
    stop, out = threading.Event(), queue.Queue()
    pool.run(out, stop)
    try:
        events = collect(out, 2)
    finally:
        stop.set()
        for thread in pool.threads:
            thread.join(timeout=5)
    assert sorted(events) == [("ADDED", "deployments"), ("ADDED", "pods")]
    assert sorted(call[0].resource for call in client.calls) == ["deployments", "pods"]


def test_watch_pool_returns_on_stop_when_never_ready():
    def failing(client, gvr):
        raise ConnectionError("down")

    pool = WatchPool([SelfHealingWatch(None, GVR("", "v1", "pods"),
                                       make_watch=failing, retry_delay=0.01)])
    stop = threading.Event()
    stop.set()
    pool.run(queue.Queue(), stop)
    for thread in pool.threads:
        thread.join(timeout=5)
    assert pool.pool[0].current_watch is None