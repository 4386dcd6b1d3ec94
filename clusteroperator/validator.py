"""Admission validation that runs bound rules and reports failures."""

from __future__ import annotations

import logging
from typing import Any, Optional

from clusteroperator.kube import AdmissionAttributes, KubernetesClient, ResourceNotFoundError

log = logging.getLogger(__name__)


class Forbidden(Exception):
    """Raised when an admission request is refused."""

    def __init__(self, attrs: AdmissionAttributes, cause: Optional[Any] = None) -> None:
        self.attrs = attrs
        self.cause = cause
        message = f'{attrs.resource.resource} "{attrs.name}" is forbidden'
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class AdmissionValidator:
    """Checks admission requests against the rules bound to their objects."""

    def __init__(self, kubernetes_client: KubernetesClient, exporter: Any,
                 rule_binding_cache: Any) -> None:
        self.kubernetes_client = kubernetes_client
        self.exporter = exporter
        self.rule_binding_cache = rule_binding_cache

    def handles(self, operation: Any) -> bool:
        """All operations are handled."""
        return True

    def _fetch_resource(self, attrs: AdmissionAttributes) -> dict:
        try:
            return self.kubernetes_client.get("Pod", attrs.namespace, attrs.name)
        except ResourceNotFoundError as exc:
            raise ResourceNotFoundError(f"failed to fetch resource: {exc}") from exc

    def validate(self, attrs: AdmissionAttributes) -> None:
        """Raise Forbidden if a bound rule reports a failure for the request."""
        if attrs.object is None:
            return
        if attrs.resource.resource == "pods" and attrs.kind.kind != "Pod":
            try:
                obj = self._fetch_resource(attrs)
            except ResourceNotFoundError as exc:
                raise Forbidden(attrs, f"failed to fetch resource: {exc}") from exc
        else:
            obj = attrs.object

        for rule in self.rule_binding_cache.list_rules_for_object(obj):
            failure = rule.process_event(attrs, self.kubernetes_client)
            if failure is not None:
                log.info("Rule failed: %s", failure.rule_id)
                self.exporter.send_admission_alert(failure)
                raise Forbidden(attrs)