"""HTTP exporter for admission alerts and registry scan status."""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from clusteroperator.failure import (
    AdmissionAlert,
    BaseRuntimeAlert,
    RuleAlert,
    RuleFailure,
    RuntimeAlertK8sDetails,
)

log = logging.getLogger(__name__)

ALERT_TYPE_RULE = 0
ALERT_TYPE_ADMISSION = 2
REGISTRY_SCAN_STATUSES_KIND = "RegistryScanStatuses"
REGISTRY_SCAN_STATUSES_PATH = "registryscanstatuses"

Transport = Callable[[str, str, dict, bytes, float], int]


@dataclass
class HTTPExporterConfig:
    url: str = ""
    headers: Optional[dict] = None
    timeout_seconds: int = 0
    method: str = ""
    max_alerts_per_minute: int = 0

    def validate(self) -> None:
        """Fill defaults and check the configuration, raising ValueError if invalid."""
        if not self.method:
            self.method = "POST"
        elif self.method not in ("POST", "PUT"):
            raise ValueError("method must be POST or PUT")
        if self.timeout_seconds == 0:
            self.timeout_seconds = 5
        if self.max_alerts_per_minute == 0:
            self.max_alerts_per_minute = 100
        if self.headers is None:
            self.headers = {}
        if not self.url:
            raise ValueError("URL is required")

    @classmethod
    def from_dict(cls, data: dict) -> "HTTPExporterConfig":
        low = {k.lower(): v for k, v in data.items()}
        return cls(
            url=low.get("url", ""),
            headers=low.get("headers"),
            timeout_seconds=int(low.get("timeoutseconds", 0)),
            method=low.get("method", ""),
            max_alerts_per_minute=int(low.get("maxalertsperminute", 0)),
        )


@dataclass
class RuntimeAlert:
    message: str = ""
    host_name: str = ""
    alert_type: int = ALERT_TYPE_RULE
    base_runtime_alert: BaseRuntimeAlert = field(default_factory=BaseRuntimeAlert)
    admission_alert: Optional[AdmissionAlert] = None
    runtime_alert_k8s_details: RuntimeAlertK8sDetails = field(default_factory=RuntimeAlertK8sDetails)
    rule_alert: RuleAlert = field(default_factory=RuleAlert)
    rule_id: str = ""

    def to_dict(self) -> dict:
        b = self.base_runtime_alert
        k = self.runtime_alert_k8s_details
        return {
            "message": self.message,
            "hostName": self.host_name,
            "alertType": self.alert_type,
            "alertName": b.alert_name,
            "severity": b.severity,
            "fixSuggestions": b.fix_suggestions,
            "timestamp": b.timestamp.isoformat() if b.timestamp else None,
            "admissionAlert": asdict(self.admission_alert) if self.admission_alert else None,
            "clusterName": k.cluster_name,
            "nodeName": k.node_name,
            "namespace": k.namespace,
            "podName": k.pod_name,
            "podNamespace": k.pod_namespace,
            "containerName": k.container_name,
            "workloadName": k.workload_name,
            "workloadNamespace": k.workload_namespace,
            "workloadKind": k.workload_kind,
            "ruleDescription": self.rule_alert.rule_description,
            "ruleID": self.rule_id,
        }


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value):
        return asdict(value)
    return str(value)


def _urllib_transport(method: str, url: str, headers: dict, body: bytes, timeout: float) -> int:
    request = urllib.request.Request(url, data=body, method=method, headers=headers)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            response.read()
            return response.status
    except urllib.error.HTTPError as exc:
        return exc.code


class HTTPExporter:
    """Posts alerts to an HTTP endpoint, limiting how many go out per minute."""

    def __init__(self, config: HTTPExporterConfig, cluster_name: str,
                 transport: Transport = _urllib_transport,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self.cluster_name = cluster_name
        self.host = ""
        self._transport = transport
        self._clock = clock
        self._lock = threading.Lock()
        self.alert_count = 0
        self._count_start: Optional[float] = None
        self.alert_limit_notified = False

    def _check_alert_limit(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._count_start is None:
                self._count_start = now
            if now - self._count_start > 60:
                self._count_start = now
                self.alert_count = 0
                self.alert_limit_notified = False
            self.alert_count += 1
            return self.alert_count > self.config.max_alerts_per_minute

    def _send_alert_limit_reached(self) -> None:
        alert = RuntimeAlert(
            message="Alert limit reached",
            host_name=self.host,
            alert_type=ALERT_TYPE_RULE,
            base_runtime_alert=BaseRuntimeAlert(
                alert_name="AlertLimitReached",
                severity=1000,
                fix_suggestions="Check logs for more information",
            ),
            runtime_alert_k8s_details=RuntimeAlertK8sDetails(
                cluster_name=self.cluster_name, node_name="Operator"),
        )
        log.error("Alert limit reached (alerts=%d)", self.alert_count)
        self._send_in_alert_list(alert)

    def send_admission_alert(self, rule_failure: RuleFailure) -> None:
        if self._check_alert_limit() and not self.alert_limit_notified:
            self._send_alert_limit_reached()
            self.alert_limit_notified = True
            return
        src = rule_failure.runtime_alert_k8s_details
        details = RuntimeAlertK8sDetails(**asdict(src))
        details.cluster_name = self.cluster_name
        description = rule_failure.rule_alert.rule_description
        alert = RuntimeAlert(
            message=description,
            host_name=self.host,
            alert_type=ALERT_TYPE_ADMISSION,
            base_runtime_alert=BaseRuntimeAlert(timestamp=datetime.now(timezone.utc)),
            admission_alert=rule_failure.admission_alert,
            runtime_alert_k8s_details=details,
            rule_alert=RuleAlert(rule_description=description),
            rule_id=rule_failure.rule_id,
        )
        self._send_in_alert_list(alert)

    def _send_in_alert_list(self, alert: RuntimeAlert, process_tree: Optional[dict] = None) -> None:
        payload = {
            "kind": "RuntimeAlerts",
            "apiVersion": "kubescape.io/v1",
            "spec": {"alerts": [alert.to_dict()], "processTree": process_tree or {}},
        }
        try:
            body = json.dumps(payload, default=_json_default).encode()
        except (TypeError, ValueError) as exc:
            log.error("failed to marshal alerts list: %s", exc)
            return
        self._export_message("runtimealerts", body)

    def send_registry_status(self, guid: str, status: str, status_message: str,
                             scan_time: datetime) -> None:
        payload = {
            "kind": REGISTRY_SCAN_STATUSES_KIND,
            "apiVersion": "kubescape.io/v1",
            "metadata": {},
            "spec": {
                "guid": guid,
                "scanStatus": status,
                "scanStatusMessage": status_message,
                "scanTime": scan_time.isoformat(),
            },
        }
        self._export_message(REGISTRY_SCAN_STATUSES_PATH, json.dumps(payload).encode())

    def _export_message(self, path: str, body: bytes) -> None:
        url = f"{self.config.url}/v1/{path}"
        try:
            status = self._transport(self.config.method, url, dict(self.config.headers or {}),
                                     body, float(self.config.timeout_seconds))
        except OSError as exc:
            log.error("failed to send HTTP request: %s", exc)
            return
        if not 200 <= status < 300:
            log.error("Received non-2xx status code %d", status)


def init_http_exporter(config: HTTPExporterConfig, cluster_name: str) -> HTTPExporter:
    """Validate the configuration and build an exporter."""
    config.validate()
    return HTTPExporter(config, cluster_name)