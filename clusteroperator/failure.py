"""Rule failure records, the rule evaluator contract and workload id helpers."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

_WLID_PREFIX = "wlid://"


def make_wlid(cluster_name: str, namespace: str, kind: str, name: str) -> str:
    """Build a Kubernetes workload id."""
    return f"{_WLID_PREFIX}cluster-{cluster_name}/namespace-{namespace}/{kind.lower()}-{name}"


def _wlid_parts(wlid: str) -> dict[str, str]:
    body = wlid[len(_WLID_PREFIX):] if wlid.startswith(_WLID_PREFIX) else wlid
    parts: dict[str, str] = {}
    for segment in body.split("/"):
        if segment.startswith("cluster-") and "cluster" not in parts:
            parts["cluster"] = segment[len("cluster-"):]
        elif segment.startswith("namespace-") and "namespace" not in parts:
            parts["namespace"] = segment[len("namespace-"):]
        elif "-" in segment and "kind" not in parts:
            kind, _, name = segment.partition("-")
            parts["kind"] = kind
            parts["name"] = name
    return parts


def cluster_from_wlid(wlid: str) -> str:
    return _wlid_parts(wlid).get("cluster", "")


def namespace_from_wlid(wlid: str) -> str:
    return _wlid_parts(wlid).get("namespace", "")


def kind_from_wlid(wlid: str) -> str:
    return _wlid_parts(wlid).get("kind", "")


def name_from_wlid(wlid: str) -> str:
    return _wlid_parts(wlid).get("name", "")


@dataclass
class BaseRuntimeAlert:
    alert_name: str = ""
    severity: int = 0
    fix_suggestions: str = ""
    timestamp: Optional[datetime] = None


@dataclass
class RuleAlert:
    rule_description: str = ""


@dataclass
class AdmissionAlert:
    kind: Any = None
    object_name: str = ""
    request_namespace: str = ""
    resource: Any = None
    operation: Any = None
    object: Optional[dict] = None
    subresource: str = ""
    user_info: Any = None
    dry_run: bool = False
    options: Optional[dict] = None
    old_object: Optional[dict] = None


@dataclass
class RuntimeAlertK8sDetails:
    cluster_name: str = ""
    node_name: str = ""
    namespace: str = ""
    pod_name: str = ""
    pod_namespace: str = ""
    container_name: str = ""
    workload_name: str = ""
    workload_namespace: str = ""
    workload_kind: str = ""


class RuleFailure(Protocol):
    """What a rule reports when an admission event breaks it."""

    base_runtime_alert: BaseRuntimeAlert
    runtime_process_details: dict
    rule_alert: RuleAlert
    admission_alert: AdmissionAlert
    runtime_alert_k8s_details: RuntimeAlertK8sDetails
    rule_id: str

    def set_workload_details(self, workload_details: str) -> None: ...


class RuleEvaluator(abc.ABC):
    """A rule that inspects admission events."""

    @property
    @abc.abstractmethod
    def id(self) -> str: ...

    @property
    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    def process_event(self, event: Any, access: Any) -> Optional[RuleFailure]: ...

    @abc.abstractmethod
    def set_parameters(self, parameters: dict) -> None: ...

    @abc.abstractmethod
    def get_parameters(self) -> dict: ...


@dataclass
class GenericRuleFailure:
    base_runtime_alert: BaseRuntimeAlert = field(default_factory=BaseRuntimeAlert)
    runtime_process_details: dict = field(default_factory=dict)
    rule_alert: RuleAlert = field(default_factory=RuleAlert)
    admission_alert: AdmissionAlert = field(default_factory=AdmissionAlert)
    runtime_alert_k8s_details: RuntimeAlertK8sDetails = field(default_factory=RuntimeAlertK8sDetails)
    rule_id: str = ""

    def set_workload_details(self, workload_details: str) -> None:
        """Fill workload fields from a workload id; an empty id changes nothing."""
        if not workload_details:
            return
        details = self.runtime_alert_k8s_details
        details.cluster_name = cluster_from_wlid(workload_details)
        details.workload_kind = kind_from_wlid(workload_details)
        details.workload_namespace = namespace_from_wlid(workload_details)
        details.workload_name = name_from_wlid(workload_details)