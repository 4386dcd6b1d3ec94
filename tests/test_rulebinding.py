import queue

import pytest

from clusteroperator.failure import RuleEvaluator
from clusteroperator.rulebinding import (
    RULE_BINDING_ALERT_GVR,
    LabelSelector,
    LabelSelectorRequirement,
    RBCache,
    RuleBinding,
    RuleBindingRule,
    resources_to_watch,
    unique_name,
    unstructured_to_rule_binding,
)


class RuleMock(RuleEvaluator):
    def __init__(self, rule_id="", rule_name="", parameters=None):
        self._id = rule_id
        self._name = rule_name
        self._parameters = dict(parameters or {})

    @property
    def id(self):
        return self._id

    @property
    def name(self):
        return self._name

    def process_event(self, event, access):
        return None

    def set_parameters(self, parameters):
        self._parameters = dict(parameters)

    def get_parameters(self):
        return dict(self._parameters)


class RuleCreatorMock:
    def create_rule_by_id(self, rule_id):
        return RuleMock(rule_id=rule_id)

    def create_rule_by_name(self, name):
        return RuleMock(rule_name=name)

    def create_rules_by_tags(self, tags):
        return [RuleMock(rule_name=tag) for tag in tags]


def new_cache_mock(**kwargs):
    return RBCache(object(), rule_creator=RuleCreatorMock(), **kwargs)


def test_new_cache():
    client = object()
    cache = RBCache(client)
    assert cache.k8s_client is client
    assert cache.rule_creator.create_rule_by_id("R2000").id == "R2000"
    assert len(cache.watch_resources()) == 1


def make_pod():
    return {"metadata": {"name": "testPod", "namespace": "testNamespace",
                         "labels": {"app": "testPod"}}}


def rb_with_selector(selector):
    return RuleBinding(name="testRB", namespace="testNamespace", pod_selector=selector,
                       rules=[RuleBindingRule(rule_id="R2000")])


@pytest.mark.parametrize("selector, expected", [
    (LabelSelector(match_labels={"app": "testPod"}), ["R2000"]),
    (LabelSelector(match_expressions=[
        LabelSelectorRequirement("app", "In", ["testPod"])]), ["R2000"]),
    (LabelSelector(match_labels={"app": "testPod1"}), []),
])
def test_runtime_obj_add_handler(selector, expected):
    cache = new_cache_mock()
    cache.add_rule_binding(rb_with_selector(selector))
    pod = make_pod()
    cache.add_handler(pod)
    result = cache.list_rules_for_object(pod)
    assert [r.id for r in result] == expected


@pytest.mark.parametrize("rule, expected", [
    (RuleBindingRule(rule_id="rule-1", parameters={"param1": "value1"}),
     [("", "rule-1", {"param1": "value1"})]),
    (RuleBindingRule(rule_name="rule-1", parameters={"param1": "value1"}),
     [("rule-1", "", {"param1": "value1"})]),
    (RuleBindingRule(rule_tags=["tag1", "tag2"], parameters={"param1": "value1"}),
     [("tag1", "", {"param1": "value1"}), ("tag2", "", {"param1": "value1"})]),
    (RuleBindingRule(), []),
])
def test_create_rule(rule, expected):
    cache = new_cache_mock()
    result = cache.create_rule(rule)
    assert [(r.name, r.id, r.get_parameters()) for r in result] == expected


def test_resources_to_watch():
    result = resources_to_watch()
    assert len(result) == 1
    assert result[0].gvr == RULE_BINDING_ALERT_GVR
    assert result[0].list_options == {}


def test_unstructured_to_rule_binding_valid():
    rb = unstructured_to_rule_binding({
        "apiVersion": "v1",
        "kind": "RuntimeAlertRuleBinding",
        "metadata": {"name": "rule-1", "namespace": "default"},
        "spec": {"ruleName": "rule-1"},
    })
    assert (rb.name, rb.namespace, rb.rules) == ("rule-1", "default", [])


def test_unstructured_to_rule_binding_invalid():
    with pytest.raises(ValueError):
        unstructured_to_rule_binding({
            "apiVersion": "v1",
            "kind": "RuntimeAlertRuleBinding",
            "metadata": {"name": "rule-1", "namespace": "default"},
            "spec": "invalid",
        })


@pytest.mark.parametrize("obj, expected", [
    ({"metadata": {"name": "pod-1", "namespace": "default"}}, "default/pod-1"),
    ({"metadata": {"name": "pod-1", "namespace": ""}}, "/pod-1"),
    ({"metadata": {"name": "", "namespace": "default"}}, "default/"),
    ({"metadata": {"name": "", "namespace": ""}}, "/"),
    (RuleBinding(name="name-1", namespace="default"), "default/name-1"),
    (RuleBinding(name="name-1", namespace=""), "/name-1"),
    (RuleBinding(name="", namespace="default"), "default/"),
    (RuleBinding(name="", namespace=""), "/"),
])
def test_unique_name(obj, expected):
    assert unique_name(obj) == expected


def test_cluster_objects_respect_include_label():
    cache = new_cache_mock()
    cache.add_rule_binding(rb_with_selector(LabelSelector(match_labels={"app": "x"})))
    node = {"metadata": {"name": "node-1"}}
    excluded = {"metadata": {"name": "node-2", "labels": {"includeClusterObjects": "false"}}}
    assert [r.id for r in cache.list_rules_for_object(node)] == ["R2000"]
    assert cache.list_rules_for_object(excluded) == []


def test_namespace_selector_filters_namespaces():
    namespaces = [
        {"metadata": {"name": "prod", "labels": {"env": "prod"}}},
        {"metadata": {"name": "dev", "labels": {"env": "dev"}}},
    ]
    cache = new_cache_mock(namespace_lister=lambda: namespaces)
    rb = RuleBinding(name="rb", namespace="prod",
                     namespace_selector=LabelSelector(match_labels={"env": "prod"}),
                     rules=[RuleBindingRule(rule_id="R2000")])
    cache.add_rule_binding(rb)
    in_prod = {"metadata": {"name": "p", "namespace": "prod"}}
    in_dev = {"metadata": {"name": "p", "namespace": "dev"}}
    assert [r.id for r in cache.list_rules_for_object(in_prod)] == ["R2000"]
    assert cache.list_rules_for_object(in_dev) == []


def test_namespace_selector_without_lister_skips_binding():
    cache = new_cache_mock()
    rb = RuleBinding(name="rb", namespace="prod",
                     namespace_selector=LabelSelector(match_labels={"env": "prod"}),
                     rules=[RuleBindingRule(rule_id="R2000")])
    cache.add_rule_binding(rb)
    assert cache.list_rules_for_object({"metadata": {"name": "p", "namespace": "prod"}}) == []


def test_delete_and_modify_handlers():
    cache = new_cache_mock()
    binding = {"metadata": {"name": "rb", "namespace": "ns"},
               "spec": {"rules": [{"ruleID": "R2000"}]}}
    pod = {"metadata": {"name": "p", "namespace": "ns"}}
    cache.add_handler(binding)
    assert [r.id for r in cache.list_rules_for_object(pod)] == ["R2000"]
    modified = {"metadata": {"name": "rb", "namespace": "ns"},
                "spec": {"rules": [{"ruleID": "R2001"}]}}
    cache.modify_handler(modified)
    assert [r.id for r in cache.list_rules_for_object(pod)] == ["R2001"]
    cache.delete_handler(modified)
    assert cache.list_rules_for_object(pod) == []


def test_add_handler_ignores_invalid_binding():
    cache = new_cache_mock()
    notifier = queue.Queue()
    cache.add_notifier(notifier)
    cache.add_handler({"metadata": {"name": "rb", "namespace": "ns"}, "spec": "invalid"})
    assert cache.list_rules_for_object({"metadata": {"name": "p", "namespace": "ns"}}) == []
    assert notifier.empty()


@pytest.mark.parametrize("req, labels, expected", [
    (LabelSelectorRequirement("app", "NotIn", ["web"]), {"app": "db"}, True),
    (LabelSelectorRequirement("app", "NotIn", ["web"]), {"app": "web"}, False),
    (LabelSelectorRequirement("app", "Exists"), {}, False),
    (LabelSelectorRequirement("app", "DoesNotExist"), {}, True),
])
def test_label_selector_operators(req, labels, expected):
    assert LabelSelector(match_expressions=[req]).matches(labels) is expected


def test_label_selector_unknown_operator():
    selector = LabelSelector(match_expressions=[LabelSelectorRequirement("a", "Near")])
    with pytest.raises(ValueError):
        selector.matches({"a": "b"})