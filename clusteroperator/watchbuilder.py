"""Self-healing watches over cluster resources.

Cluster-scoped kinds of interest are ClusterRole, ClusterRoleBinding, Namespace,
Node, MutatingWebhookConfiguration, ValidatingWebhookConfiguration, APIService
and PodSecurityPolicy; everything else (Pods, workloads, Roles, Services,
Ingresses, NetworkPolicies and the like) is watched across all namespaces.

A client passed to these functions has ``watch(gvr, namespace)``, where
``namespace`` is ``""`` for all namespaces or None for a cluster-scoped
resource. It returns a watch whose ``result_queue`` yields events and then
None once the watch has closed.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Optional

from clusteroperator.kube import GroupVersionResource

log = logging.getLogger(__name__)

_CLUSTER_SCOPED = frozenset({
    "clusterrole", "clusterroles",
    "clusterrolebinding", "clusterrolebindings",
    "namespace", "namespaces",
    "node", "nodes",
    "mutatingwebhookconfiguration", "mutatingwebhookconfigurations",
    "validatingwebhookconfiguration", "validatingwebhookconfigurations",
    "apiservice", "apiservices",
    "podsecuritypolicy", "podsecuritypolicies",
})


def is_namespace_scope(gvr: GroupVersionResource) -> bool:
    """Whether the resource lives inside namespaces."""
    return gvr.resource.lower() not in _CLUSTER_SCOPED


def new_dynamic_watch(client: Any, gvr: GroupVersionResource) -> Any:
    """Open a watch on a resource, across all namespaces if it is namespaced."""
    namespace: Optional[str] = "" if is_namespace_scope(gvr) else None
    return client.watch(gvr, namespace)


MakeWatch = Callable[[Any, GroupVersionResource], Any]


class SelfHealingWatch:
    """A watch that is reopened whenever it closes or fails to open."""

    def __init__(self, client: Any, gvr: GroupVersionResource,
                 make_watch: MakeWatch = new_dynamic_watch,
                 retry_delay: float = 0.1, poll_interval: float = 0.1) -> None:
        self.client = client
        self.gvr = gvr
        self.make_watch = make_watch
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval
        self.current_watch: Any = None

    def run_until_watch_closes(self, out: "queue.Queue", stop_event: threading.Event) -> None:
        """Forward events to ``out`` until the watch closes or ``stop_event`` is set."""
        events = self.current_watch.result_queue
        while not stop_event.is_set():
            try:
                event = events.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            if event is None:
                return
            out.put(event)

    def run(self, ready: threading.Event, out: "queue.Queue",
            stop_event: threading.Event) -> None:
        """Keep a watch open until stopped; ``ready`` is set once the first opens."""
        while not stop_event.is_set():
            log.debug("creating watch for GVR %s", self.gvr)
            try:
                watch = self.make_watch(self.client, self.gvr)
            except Exception as exc:  # the watch heals itself by retrying
                log.warning("got error when creating a watch for gvr %s: %s", self.gvr, exc)
                stop_event.wait(self.retry_delay)
                continue
            self.current_watch = watch
            ready.set()
            self.run_until_watch_closes(out, stop_event)


class WatchPool:
    """Runs a set of self-healing watches feeding one queue."""

    def __init__(self, pool: list) -> None:
        self.pool = list(pool)
        self.threads: list[threading.Thread] = []

    def run(self, out: "queue.Queue", stop_event: threading.Event) -> None:
        """Start every watch and return once all are open (or on stop)."""
        log.info("Watch pool: starting")
        readies = []
        for watch in self.pool:
            ready = threading.Event()
            thread = threading.Thread(target=watch.run, args=(ready, out, stop_event),
                                      name=f"watch-{watch.gvr.resource}", daemon=True)
            thread.start()
            readies.append(ready)
            self.threads.append(thread)
        for ready in readies:
            while not ready.wait(0.05):
                if stop_event.is_set():
                    return
        log.info("Watch pool: started ok")


def new_watch_pool(client: Any, gvrs: list) -> WatchPool:
    """Build a pool with one self-healing watch per resource."""
    return WatchPool([SelfHealingWatch(client, gvr) for gvr in gvrs])