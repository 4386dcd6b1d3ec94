"""Cache of runtime alert rule bindings and the rules they create."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from clusteroperator.failure import RuleEvaluator
from clusteroperator.kube import GroupVersionResource
from clusteroperator.rules import RuleCreator

log = logging.getLogger(__name__)

INCLUDE_CLUSTER_OBJECTS = "includeClusterObjects"

RULE_BINDING_ALERT_GVR = GroupVersionResource(
    group="kubescape.io", version="v1", resource="runtimerulealertbindings")

_OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")


def _metadata(obj: dict) -> dict:
    meta = obj.get("metadata") or {}
    return meta if isinstance(meta, dict) else {}


def _labels(obj: dict) -> dict:
    labels = _metadata(obj).get("labels") or {}
    return labels if isinstance(labels, dict) else {}


@dataclass
class LabelSelectorRequirement:
    key: str
    operator: str
    values: list = field(default_factory=list)

    def matches(self, labels: dict) -> bool:
        if self.operator == "In":
            return self.key in labels and labels[self.key] in self.values
        if self.operator == "NotIn":
            return self.key not in labels or labels[self.key] not in self.values
        if self.operator == "Exists":
            return self.key in labels
        if self.operator == "DoesNotExist":
            return self.key not in labels
        raise ValueError(f"{self.operator!r} is not a valid label selector operator")


@dataclass
class LabelSelector:
    match_labels: dict = field(default_factory=dict)
    match_expressions: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "LabelSelector":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("label selector must be a mapping")
        labels = data.get("matchLabels") or {}
        if not isinstance(labels, dict):
            raise ValueError("matchLabels must be a mapping")
        expressions = data.get("matchExpressions") or []
        if not isinstance(expressions, list):
            raise ValueError("matchExpressions must be a list")
        requirements = []
        for expr in expressions:
            if not isinstance(expr, dict):
                raise ValueError("label selector requirement must be a mapping")
            requirements.append(LabelSelectorRequirement(
                key=str(expr.get("key", "")),
                operator=str(expr.get("operator", "")),
                values=list(expr.get("values") or []),
            ))
        return cls(match_labels=dict(labels), match_expressions=requirements)

    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions

    def matches(self, labels: dict) -> bool:
        """Whether the labels satisfy every label and expression; empty matches all."""
        labels = labels or {}
        if any(labels.get(k) != v for k, v in self.match_labels.items()):
            return False
        return all(req.matches(labels) for req in self.match_expressions)


@dataclass
class RuleBindingRule:
    rule_id: str = ""
    rule_name: str = ""
    rule_tags: list = field(default_factory=list)
    parameters: Optional[dict] = None


@dataclass
class RuleBinding:
    name: str = ""
    namespace: str = ""
    pod_selector: LabelSelector = field(default_factory=LabelSelector)
    namespace_selector: LabelSelector = field(default_factory=LabelSelector)
    rules: list = field(default_factory=list)


@dataclass
class WatchResource:
    gvr: GroupVersionResource
    list_options: dict = field(default_factory=dict)


def unique_name(obj: Any) -> str:
    """Return 'namespace/name' for a mapping object or a rule binding."""
    if isinstance(obj, dict):
        meta = _metadata(obj)
        return f"{meta.get('namespace', '') or ''}/{meta.get('name', '') or ''}"
    return f"{obj.namespace}/{obj.name}"


def _to_rule(data: Any) -> RuleBindingRule:
    if not isinstance(data, dict):
        raise ValueError("rule binding rule must be a mapping")
    tags = data.get("ruleTags") or []
    if not isinstance(tags, list):
        raise ValueError("ruleTags must be a list")
    params = data.get("parameters")
    if params is not None and not isinstance(params, dict):
        raise ValueError("parameters must be a mapping")
    return RuleBindingRule(
        rule_id=str(data.get("ruleID", "") or ""),
        rule_name=str(data.get("ruleName", "") or ""),
        rule_tags=[str(t) for t in tags],
        parameters=params,
    )


def unstructured_to_rule_binding(obj: dict) -> RuleBinding:
    """Convert a mapping object into a RuleBinding, raising ValueError if malformed."""
    if not isinstance(obj, dict):
        raise ValueError("object must be a mapping")
    meta = obj.get("metadata") or {}
    if not isinstance(meta, dict):
        raise ValueError("metadata must be a mapping")
    spec = obj.get("spec")
    if spec is None:
        spec = {}
    if not isinstance(spec, dict):
        raise ValueError("spec must be a mapping")
    rules = spec.get("rules") or []
    if not isinstance(rules, list):
        raise ValueError("rules must be a list")
    return RuleBinding(
        name=str(meta.get("name", "") or ""),
        namespace=str(meta.get("namespace", "") or ""),
        pod_selector=LabelSelector.from_dict(spec.get("podSelector")),
        namespace_selector=LabelSelector.from_dict(spec.get("namespaceSelector")),
        rules=[_to_rule(r) for r in rules],
    )


def resources_to_watch() -> list:
    """The resources the cache needs to watch."""
    return [WatchResource(RULE_BINDING_ALERT_GVR, {})]


def _diff(a: list, b: list) -> list:
    remaining = {unique_name(n.pod): n for n in a}
    result = []
    for n in b:
        key = unique_name(n.pod)
        if key in remaining:
            del remaining[key]
        else:
            result.append(n)
    result.extend(remaining.values())
    return result


NamespaceLister = Callable[[], Iterable[dict]]


class RBCache:
    """Keeps rule bindings and the rules created for each of them."""

    def __init__(self, k8s_client: Any, rule_creator: Optional[Any] = None,
                 namespace_lister: Optional[NamespaceLister] = None) -> None:
        self.k8s_client = k8s_client
        self.rule_creator = rule_creator if rule_creator is not None else RuleCreator()
        self._namespace_lister = namespace_lister
        self._bindings: dict[str, RuleBinding] = {}
        self._rules: dict[str, list] = {}
        self._lock = threading.Lock()
        self._watch_resources = resources_to_watch()
        self._notifiers: list = []

    def watch_resources(self) -> list:
        return list(self._watch_resources)

    def _namespaces_matching(self, selector: LabelSelector) -> list:
        if self._namespace_lister is None:
            raise LookupError("no namespace lister configured")
        return [_metadata(ns).get("name", "") for ns in self._namespace_lister()
                if selector.matches(_labels(ns))]

    def list_rules_for_object(self, obj: dict) -> list:
        """Return the rules of every binding that applies to the object."""
        with self._lock:
            bindings = list(self._bindings.items())
        namespace = _metadata(obj).get("namespace", "") or ""
        labels = _labels(obj)
        names = []
        for name, rb in bindings:
            if not namespace:
                if labels.get(INCLUDE_CLUSTER_OBJECTS, "true") == "false":
                    continue
                names.append(name)
                continue
            try:
                if not rb.pod_selector.matches(labels):
                    continue
                if not rb.namespace_selector.is_empty():
                    try:
                        matching = self._namespaces_matching(rb.namespace_selector)
                    except LookupError as exc:
                        log.error("failed to list namespaces for %s: %s", name, exc)
                        continue
                    if namespace not in matching:
                        continue
            except ValueError as exc:
                log.error("invalid selector in rule binding %s: %s", name, exc)
                continue
            names.append(name)

        result = []
        with self._lock:
            for name in names:
                result.extend(self._rules.get(name, []))
        return result

    def add_notifier(self, notifier: Any) -> None:
        self._notifiers.append(notifier)

    def _notify(self, notifications: list) -> None:
        for notifier in self._notifiers:
            for n in notifications:
                notifier.put(n)

    def add_handler(self, obj: Any) -> None:
        notifications: list = []
        if isinstance(obj, dict):
            try:
                rb = unstructured_to_rule_binding(obj)
            except ValueError as exc:
                log.error("failed to convert object to rule binding: %s", exc)
                return
            notifications = self.add_rule_binding(rb)
        self._notify(notifications)

    def modify_handler(self, obj: Any) -> None:
        notifications: list = []
        if isinstance(obj, dict):
            try:
                rb = unstructured_to_rule_binding(obj)
            except ValueError as exc:
                log.error("failed to convert object to rule binding: %s", exc)
                return
            removed = self.delete_rule_binding(unique_name(rb))
            added = self.add_rule_binding(rb)
            notifications = _diff(removed, added)
        self._notify(notifications)

    def delete_handler(self, obj: Any) -> None:
        notifications: list = []
        if isinstance(obj, dict):
            notifications = self.delete_rule_binding(unique_name(obj))
        self._notify(notifications)

    def add_rule_binding(self, rule_binding: RuleBinding) -> list:
        """Store a binding and create its rules; returns pod notifications."""
        name = unique_name(rule_binding)
        log.info("RuleBinding added/modified: %s", name)
        created = self._create_rules(rule_binding.rules)
        with self._lock:
            self._bindings[name] = rule_binding
            self._rules[name] = created
        return []

    def delete_rule_binding(self, name: str) -> list:
        """Remove a binding and its rules; returns pod notifications."""
        log.info("RuleBinding deleted: %s", name)
        with self._lock:
            self._bindings.pop(name, None)
            self._rules.pop(name, None)
        return []

    def _create_rules(self, rules: list) -> list:
        return [created for rule in rules for created in self.create_rule(rule)]

    def create_rule(self, rule: RuleBindingRule) -> list:
        """Create rules by id, then by name, then by tags, applying parameters."""
        if rule.rule_id:
            created = self.rule_creator.create_rule_by_id(rule.rule_id)
            if created is not None:
                if rule.parameters is not None:
                    created.set_parameters(rule.parameters)
                return [created]
        if rule.rule_name:
            created = self.rule_creator.create_rule_by_name(rule.rule_name)
            if created is not None:
                if rule.parameters is not None:
                    created.set_parameters(rule.parameters)
                return [created]
        if rule.rule_tags:
            by_tags = self.rule_creator.create_rules_by_tags(rule.rule_tags)
            if by_tags:
                if rule.parameters is not None:
                    for created in by_tags:
                        created.set_parameters(rule.parameters)
                return list(by_tags)
        return []


RuleEvaluator = RuleEvaluator