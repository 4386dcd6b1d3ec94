import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from clusteroperator.exporter import HTTPExporterConfig, init_http_exporter
from clusteroperator.kube import (
    AdmissionAttributes,
    GroupVersionKind,
    GroupVersionResource,
    KubernetesClient,
    Operation,
    UserInfo,
)
from clusteroperator.rulebinding import LabelSelector, RBCache, RuleBinding, RuleBindingRule
from clusteroperator.validator import AdmissionValidator, Forbidden


def make_client():
    return KubernetesClient([
        {"kind": "Pod",
         "metadata": {"name": "web-1", "namespace": "default", "labels": {"app": "web"},
                      "ownerReferences": [{"kind": "ReplicaSet", "name": "web-rs"}]},
         "spec": {"nodeName": "node-a"}},
        {"kind": "ReplicaSet",
         "metadata": {"name": "web-rs", "namespace": "default",
                      "ownerReferences": [{"kind": "Deployment", "name": "web"}]}},
    ])


@pytest.fixture
def collector():
    sent = []

    class Handler(BaseHTTPRequestHandler):
        def _handle(self):
            length = int(self.headers.get("Content-Length", 0))
            body = self.rfile.read(length)
            sent.append((self.command, self.path, json.loads(body)))
            self.send_response(200)
            self.send_header("Content-Length", "0")
            self.end_headers()

        do_POST = _handle
        do_PUT = _handle

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    try:
        yield f"http://{host}:{port}", sent
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def setup(collector):
    url, sent = collector
    client = make_client()
    exporter = init_http_exporter(HTTPExporterConfig(url=url), "cluster-a")
    cache = RBCache(client)
    cache.add_rule_binding(RuleBinding(
        name="rb", namespace="default",
        pod_selector=LabelSelector(match_labels={"app": "web"}),
        rules=[RuleBindingRule(rule_id="R2000")]))
    return AdmissionValidator(client, exporter, cache), sent


def exec_attrs(name="web-1"):
    return AdmissionAttributes(
        object={"kind": "PodExecOptions", "container": "main"},
        kind=GroupVersionKind(kind="PodExecOptions"),
        namespace="default",
        name=name,
        resource=GroupVersionResource(resource="pods"),
        subresource="exec",
        operation=Operation.CONNECT,
        user_info=UserInfo(name="alice"),
    )


def test_exec_is_forbidden_and_exported(setup):
    validator, sent = setup
    with pytest.raises(Forbidden) as info:
        validator.validate(exec_attrs())
    assert info.value.attrs.name == "web-1"
    assert len(sent) == 1
    method, path, payload = sent[0]
    assert (method, path) == ("POST", "/v1/runtimealerts")
    alert = payload["spec"]["alerts"][0]
    assert alert["ruleID"] == "R2000"
    assert alert["workloadName"] == "web"
    assert alert["workloadKind"] == "Deployment"
    assert alert["containerName"] == "main"
    assert alert["clusterName"] == "cluster-a"


def test_missing_pod_is_forbidden_without_export(setup):
    validator, sent = setup
    with pytest.raises(Forbidden) as info:
        validator.validate(exec_attrs(name="ghost"))
    assert "failed to fetch resource" in str(info.value)
    assert sent == []


def test_request_without_object_is_allowed(setup):
    validator, sent = setup
    attrs = exec_attrs()
    attrs.object = None
    assert validator.validate(attrs) is None
    assert sent == []


def test_pod_request_not_matching_rule_is_allowed(setup):
    validator, sent = setup
    pod = make_client().get("Pod", "default", "web-1")
    attrs = AdmissionAttributes(object=pod, kind=GroupVersionKind(version="v1", kind="Pod"),
                                namespace="default", name="web-1",
                                resource=GroupVersionResource(version="v1", resource="pods"))
    assert validator.validate(attrs) is None
    assert sent == []


@pytest.mark.parametrize("operation", list(Operation))
def test_handles_every_operation(setup, operation):
    validator, _ = setup
    assert validator.handles(operation) is True


def test_forbidden_message_names_resource():
    err = Forbidden(exec_attrs(), "denied")
    assert str(err) == 'pods "web-1" is forbidden: denied'
    assert err.cause == "denied"