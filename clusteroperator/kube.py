"""Admission request attributes and lookups of pod owners in a cluster."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

log = logging.getLogger(__name__)


class ResourceNotFoundError(LookupError):
    """Raised when a requested Kubernetes object does not exist."""


@dataclass(frozen=True)
class GroupVersionKind:
    group: str = ""
    version: str = ""
    kind: str = ""


@dataclass(frozen=True)
class GroupVersionResource:
    group: str = ""
    version: str = ""
    resource: str = ""

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Resource={self.resource}"


class Operation(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


@dataclass
class UserInfo:
    name: str = ""
    uid: str = ""
    groups: list = field(default_factory=list)
    extra: Optional[dict] = None


@dataclass
class AdmissionAttributes:
    """The parts of an admission request that rules look at."""

    object: Optional[dict] = None
    old_object: Optional[dict] = None
    kind: GroupVersionKind = field(default_factory=GroupVersionKind)
    namespace: str = ""
    name: str = ""
    resource: GroupVersionResource = field(default_factory=GroupVersionResource)
    subresource: str = ""
    operation: Operation = Operation.CREATE
    options: Optional[dict] = None
    dry_run: bool = False
    user_info: UserInfo = field(default_factory=UserInfo)


class KubernetesClient:
    """Object store answering lookups by kind, namespace and name.

    Objects are plain dictionaries in their usual JSON form. Subclasses may
    override ``get`` to query a live API server.
    """

    def __init__(self, objects: Iterable[dict] = ()) -> None:
        self._objects: dict[tuple[str, str, str], dict] = {}
        for obj in objects:
            self.add(obj)

    def add(self, obj: dict) -> None:
        meta = obj.get("metadata") or {}
        key = (obj.get("kind", ""), meta.get("namespace", ""), meta.get("name", ""))
        self._objects[key] = obj

    def get(self, kind: str, namespace: str, name: str) -> dict:
        try:
            return self._objects[(kind, namespace, name)]
        except KeyError:
            raise ResourceNotFoundError(
                f'{kind} "{name}" not found in namespace "{namespace}"') from None


def _owner_references(obj: dict) -> list:
    return list((obj.get("metadata") or {}).get("ownerReferences") or [])


def get_pod_details(client: KubernetesClient, pod_name: str, namespace: str) -> dict:
    """Fetch a pod, raising ResourceNotFoundError if it does not exist."""
    try:
        return client.get("Pod", namespace, pod_name)
    except ResourceNotFoundError as exc:
        raise ResourceNotFoundError(f"failed to get pod: {exc}") from exc


def _resolve_parent(kind: str, name: str, namespace: str, client: KubernetesClient,
                    parent_kind: str) -> tuple[str, str, str]:
    try:
        obj = client.get(kind, namespace, name)
    except ResourceNotFoundError:
        return kind, name, namespace
    owners = _owner_references(obj)
    if owners and owners[0].get("kind") == parent_kind:
        return parent_kind, owners[0].get("name", ""), namespace
    return kind, name, namespace


def extract_pod_owner(pod: dict, client: KubernetesClient) -> tuple[str, str, str]:
    """Return the kind, name and namespace of the controller owning a pod."""
    namespace = (pod.get("metadata") or {}).get("namespace", "")
    for ref in _owner_references(pod):
        kind = ref.get("kind", "")
        name = ref.get("name", "")
        if kind == "ReplicaSet":
            return _resolve_parent("ReplicaSet", name, namespace, client, "Deployment")
        if kind == "Job":
            return _resolve_parent("Job", name, namespace, client, "CronJob")
        if kind in ("StatefulSet", "DaemonSet"):
            return kind, name, namespace
    return "", "", ""


def get_controller_details(event: AdmissionAttributes,
                           client: KubernetesClient) -> tuple[str, str, str, str]:
    """Return kind, name and namespace of the pod's controller, and the pod's node."""
    if not event.name or not event.namespace:
        raise ValueError("invalid pod details from admission event")
    pod = get_pod_details(client, event.name, event.namespace)
    kind, name, namespace = extract_pod_owner(pod, client)
    node_name = (pod.get("spec") or {}).get("nodeName", "")
    return kind, name, namespace, node_name


def get_container_name_from_exec_to_pod_event(event: AdmissionAttributes) -> str:
    """Return the container targeted by an exec request."""
    if event.subresource != "exec":
        raise ValueError("not an exec subresource")
    obj = event.object
    if obj is None:
        raise ValueError("event object is nil")
    if not isinstance(obj, dict):
        raise ValueError("object is not an unstructured mapping")
    container = obj.get("container", "")
    if container is None:
        return ""
    if not isinstance(container, str):
        raise ValueError(f"failed to decode PodExecOptions: container is {type(container).__name__}")
    return container