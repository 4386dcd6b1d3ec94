"""Admission rules, their descriptors and the factory that creates them."""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from clusteroperator.failure import (
    AdmissionAlert,
    BaseRuntimeAlert,
    GenericRuleFailure,
    RuleAlert,
    RuleEvaluator,
    RuntimeAlertK8sDetails,
)
from clusteroperator.kube import (
    AdmissionAttributes,
    KubernetesClient,
    ResourceNotFoundError,
    UserInfo,
    get_container_name_from_exec_to_pod_event,
    get_controller_details,
)

log = logging.getLogger(__name__)

RULE_PRIORITY_NONE = 0
RULE_PRIORITY_LOW = 1
RULE_PRIORITY_MED = 5
RULE_PRIORITY_HIGH = 8
RULE_PRIORITY_CRITICAL = 10
RULE_PRIORITY_SYSTEM_ISSUE = 1000

R2000_ID = "R2000"
R2000_NAME = "Exec to pod"
R2001_ID = "R2001"
R2001_NAME = "Port forward"

_FIX_SUGGESTION = ("If this is a legitimate action, please consider removing this "
                   "workload from the binding of this rule")


@dataclass
class RuleDescriptor:
    id: str
    name: str
    description: str = ""
    priority: int = RULE_PRIORITY_NONE
    tags: list = field(default_factory=list)
    rule_creation_func: Optional[Callable[[], RuleEvaluator]] = None

    def has_tags(self, tags) -> bool:
        """Whether any of the given tags is one of this rule's tags."""
        return any(tag in self.tags for tag in tags)

    def create(self) -> RuleEvaluator:
        if self.rule_creation_func is None:
            raise ValueError(f"rule {self.id} has no creation function")
        return self.rule_creation_func()


class BaseRule(RuleEvaluator):
    """Common parameter storage for rules."""

    def __init__(self) -> None:
        self._parameters: dict = {}
        self._lock = threading.Lock()

    def set_parameters(self, parameters: dict) -> None:
        with self._lock:
            self._parameters.update(parameters)

    def get_parameters(self) -> dict:
        with self._lock:
            return dict(self._parameters)

    def _build_failure(self, event: AdmissionAttributes, client: KubernetesClient,
                       priority: int, description: str,
                       with_container: bool) -> Optional[GenericRuleFailure]:
        try:
            kind, name, namespace, node = get_controller_details(event, client)
        except (ValueError, ResourceNotFoundError) as exc:
            log.error("Failed to get parent workload details: %s", exc)
            return None

        container = ""
        if with_container:
            try:
                container = get_container_name_from_exec_to_pod_event(event)
            except ValueError as exc:
                log.error("Failed to get container name from exec to pod event: %s", exc)

        user = event.user_info
        return GenericRuleFailure(
            base_runtime_alert=BaseRuntimeAlert(
                alert_name=self.name,
                fix_suggestions=_FIX_SUGGESTION,
                severity=priority,
                timestamp=datetime.now(timezone.utc),
            ),
            admission_alert=AdmissionAlert(
                kind=event.kind,
                object_name=event.name,
                request_namespace=event.namespace,
                resource=event.resource,
                operation=event.operation,
                object=event.object,
                subresource=event.subresource,
                user_info=UserInfo(name=user.name, uid=user.uid,
                                   groups=list(user.groups),
                                   extra=copy.deepcopy(user.extra)),
                dry_run=event.dry_run,
                options=event.options,
                old_object=event.old_object,
            ),
            rule_alert=RuleAlert(rule_description=description),
            runtime_alert_k8s_details=RuntimeAlertK8sDetails(
                pod_name=event.name,
                pod_namespace=event.namespace,
                namespace=event.namespace,
                workload_name=name,
                workload_namespace=namespace,
                workload_kind=kind,
                node_name=node,
                container_name=container,
            ),
            rule_id=self.id,
        )


class R2000ExecToPod(BaseRule):
    """Detects exec into a pod."""

    @property
    def id(self) -> str:
        return R2000_ID

    @property
    def name(self) -> str:
        return R2000_NAME

    def process_event(self, event: Optional[AdmissionAttributes],
                      access: KubernetesClient) -> Optional[GenericRuleFailure]:
        """Return a failure for an exec request, or None for anything else."""
        if event is None or event.kind.kind != "PodExecOptions":
            return None
        return self._build_failure(
            event, access, R2000_EXEC_TO_POD_DESCRIPTOR.priority,
            f"Exec to pod detected on pod {event.name}", with_container=True)


class R2001PortForward(BaseRule):
    """Detects port forwarding to a pod."""

    @property
    def id(self) -> str:
        return R2001_ID

    @property
    def name(self) -> str:
        return R2001_NAME

    def process_event(self, event: Optional[AdmissionAttributes],
                      access: KubernetesClient) -> Optional[GenericRuleFailure]:
        """Return a failure for a port-forward request, or None for anything else."""
        if event is None or event.kind.kind != "PodPortForwardOptions":
            return None
        return self._build_failure(
            event, access, R2001_PORT_FORWARD_DESCRIPTOR.priority,
            f"Port forward detected on pod {event.name}", with_container=False)


R2000_EXEC_TO_POD_DESCRIPTOR = RuleDescriptor(
    id=R2000_ID,
    name=R2000_NAME,
    description="Detecting exec to pod",
    tags=["exec"],
    priority=RULE_PRIORITY_LOW,
    rule_creation_func=R2000ExecToPod,
)

R2001_PORT_FORWARD_DESCRIPTOR = RuleDescriptor(
    id=R2001_ID,
    name=R2001_NAME,
    description="Detecting port forward",
    tags=["portforward"],
    priority=RULE_PRIORITY_LOW,
    rule_creation_func=R2001PortForward,
)


class RuleCreator:
    """Creates rules by id, name or tags from a list of descriptors."""

    def __init__(self, descriptors: Optional[list] = None) -> None:
        self._descriptors = list(descriptors) if descriptors is not None else [
            R2000_EXEC_TO_POD_DESCRIPTOR,
            R2001_PORT_FORWARD_DESCRIPTOR,
        ]

    def create_rules_by_tags(self, tags) -> list:
        return [d.create() for d in self._descriptors if d.has_tags(tags)]

    def create_rule_by_id(self, rule_id: str) -> Optional[RuleEvaluator]:
        return next((d.create() for d in self._descriptors if d.id == rule_id), None)

    def create_rule_by_name(self, name: str) -> Optional[RuleEvaluator]:
        return next((d.create() for d in self._descriptors if d.name == name), None)

    def all_rule_descriptors(self) -> list:
        return list(self._descriptors)