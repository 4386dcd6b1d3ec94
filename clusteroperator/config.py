"""Operator configuration loading and validation."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from clusteroperator.exporter import HTTPExporterConfig


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or is invalid."""


_UNITS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "μs": 1e-6, "ms": 1e-3, "s": 1.0,
          "m": 60.0, "h": 3600.0}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: Any) -> timedelta:
    """Parse a duration such as '1h30m' or a number of nanoseconds."""
    if isinstance(text, timedelta):
        return text
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return timedelta(seconds=text / 1e9)
    s = str(text).strip()
    sign = 1
    if s[:1] in "+-" and s:
        sign = -1 if s[0] == "-" else 1
        s = s[1:]
    if s == "0":
        return timedelta(0)
    if not s:
        raise ConfigError(f"invalid duration {text!r}")
    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(s):
        if match.start() != pos:
            raise ConfigError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    if pos != len(s):
        raise ConfigError(f"invalid duration {text!r}")
    return timedelta(seconds=sign * total)


def _lower(data: Any) -> dict:
    return {k.lower(): v for k, v in data.items()} if isinstance(data, dict) else {}


@dataclass
class Component:
    enabled: bool = False


@dataclass
class Capabilities:
    configuration_scan: str = ""
    continuous_scan: str = ""
    network_generator: str = ""
    node_scan: str = ""
    otel: str = ""
    relevancy: str = ""
    runtime_observability: str = ""
    node_sbom_generation: str = ""
    seccomp: str = ""
    vulnerability_scan: str = ""
    admission_controller: str = ""


_CAPABILITY_KEYS = {
    "configurationscan": "configuration_scan", "continuousscan": "continuous_scan",
    "networkgenerator": "network_generator", "nodescan": "node_scan", "otel": "otel",
    "relevancy": "relevancy", "runtimeobservability": "runtime_observability",
    "nodesbomgeneration": "node_sbom_generation", "seccomp": "seccomp",
    "vulnerabilityscan": "vulnerability_scan", "admissioncontroller": "admission_controller",
}


@dataclass
class Components:
    host_scanner: Component = field(default_factory=Component)
    kubescape: Component = field(default_factory=Component)
    kubescape_scheduler: Component = field(default_factory=Component)
    kubevuln: Component = field(default_factory=Component)
    kubevuln_scheduler: Component = field(default_factory=Component)
    node_agent: Component = field(default_factory=Component)
    operator: Component = field(default_factory=Component)
    otel_collector: Component = field(default_factory=Component)
    persistence: Component = field(default_factory=Component)
    service_discovery: Component = field(default_factory=Component)
    storage: Component = field(default_factory=Component)


_COMPONENT_KEYS = {
    "hostscanner": "host_scanner", "kubescape": "kubescape",
    "kubescapescheduler": "kubescape_scheduler", "kubevuln": "kubevuln",
    "kubevulnscheduler": "kubevuln_scheduler", "nodeagent": "node_agent",
    "operator": "operator", "otelcollector": "otel_collector", "persistence": "persistence",
    "servicediscovery": "service_discovery", "storage": "storage",
}


@dataclass
class ServiceScanConfig:
    enabled: bool = False
    interval: timedelta = timedelta(0)


@dataclass
class Server:
    account: str = ""
    discovery_url: str = ""
    otel_url: str = ""


@dataclass
class Configurations:
    persistence: str = ""
    server: Server = field(default_factory=Server)


@dataclass
class CapabilitiesConfig:
    capabilities: Capabilities = field(default_factory=Capabilities)
    components: Components = field(default_factory=Components)
    configurations: Configurations = field(default_factory=Configurations)
    service_scan_config: ServiceScanConfig = field(default_factory=ServiceScanConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "CapabilitiesConfig":
        top = _lower(data)
        caps = _lower(top.get("capabilities"))
        comps = _lower(top.get("components"))
        confs = _lower(top.get("configurations"))
        server = _lower(confs.get("server"))
        scan = _lower(top.get("servicescanconfig"))
        return cls(
            capabilities=Capabilities(**{attr: str(caps[key]) for key, attr in
                                         _CAPABILITY_KEYS.items() if key in caps}),
            components=Components(**{
                attr: Component(bool(_lower(comps[key]).get("enabled", False)))
                for key, attr in _COMPONENT_KEYS.items() if key in comps}),
            configurations=Configurations(
                persistence=str(confs.get("persistence", "")),
                server=Server(account=server.get("account", ""),
                              discovery_url=server.get("discoveryurl", ""),
                              otel_url=server.get("otelurl", ""))),
            service_scan_config=ServiceScanConfig(
                enabled=bool(scan.get("enabled", False)),
                interval=parse_duration(scan.get("interval", 0))),
        )


@dataclass
class Config:
    namespace: str = ""
    rest_api_port: str = ""
    clean_up_routine_interval: timedelta = timedelta(0)
    concurrency_workers: int = 0
    trigger_security_framework: bool = False
    matching_rules_filename: str = ""
    event_deduplication_interval: timedelta = timedelta(0)
    http_exporter_config: Optional[HTTPExporterConfig] = None
    exclude_namespaces: list = field(default_factory=list)
    include_namespaces: list = field(default_factory=list)
    pod_scan_guard_time: timedelta = timedelta(0)


_CONFIG_DEFAULTS: dict[str, Any] = {
    "namespace": "kubescape",
    "port": "4002",
    "cleanupdelay": timedelta(minutes=10),
    "workerconcurrency": 3,
    "triggersecurityframework": False,
    "matchingrulesfilename": "/etc/config/matchingRules.json",
    "eventdeduplicationinterval": timedelta(minutes=2),
    "podscanguardtime": timedelta(hours=1),
}


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "t", "true", "yes")
    return bool(value)


def _to_list(value: Any) -> list:
    if isinstance(value, str):
        return value.split()
    return list(value or [])


@dataclass
class Credentials:
    account: str = ""
    access_key: str = ""


@dataclass
class ClusterConfig:
    cluster_name: str = ""
    kubescape_url: str = ""
    kubevuln_url: str = ""


def _read_json(path: str, name: str) -> dict:
    file = Path(path) / f"{name}.json"
    try:
        with file.open(encoding="utf-8") as fh:
            data = json.load(fh)
    except OSError as exc:
        raise ConfigError(f"cannot read {file}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid JSON in {file}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{file} must hold a JSON object")
    return data


def load_capabilities_config(path: str) -> CapabilitiesConfig:
    """Load capabilities.json from the given directory."""
    return CapabilitiesConfig.from_dict(_read_json(path, "capabilities"))


def load_config(path: str) -> Config:
    """Load config.json from the given directory, with defaults and environment overrides."""
    values = dict(_CONFIG_DEFAULTS)
    values.update(_lower(_read_json(path, "config")))
    for key in list(values) + ["excludenamespaces", "includenamespaces"]:
        env = os.environ.get(key.upper())
        if env is not None:
            values[key] = env
    exporter = values.get("httpexporterconfig")
    try:
        return Config(
            namespace=str(values["namespace"]),
            rest_api_port=str(values["port"]),
            clean_up_routine_interval=parse_duration(values["cleanupdelay"]),
            concurrency_workers=int(values["workerconcurrency"]),
            trigger_security_framework=_to_bool(values["triggersecurityframework"]),
            matching_rules_filename=str(values["matchingrulesfilename"]),
            event_deduplication_interval=parse_duration(values["eventdeduplicationinterval"]),
            http_exporter_config=HTTPExporterConfig.from_dict(exporter)
            if isinstance(exporter, dict) else None,
            exclude_namespaces=_to_list(values.get("excludenamespaces")),
            include_namespaces=_to_list(values.get("includenamespaces")),
            pod_scan_guard_time=parse_duration(values["podscanguardtime"]),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(str(exc)) from exc


class OperatorConfig:
    """Combined view over all configuration sources."""

    def __init__(self, components: CapabilitiesConfig, cluster_config: ClusterConfig,
                 credentials: Credentials, event_receiver_rest_url: str,
                 service_config: Config) -> None:
        self._components = components
        self._cluster = cluster_config
        self._service = service_config
        self._account_id = credentials.account
        self._access_key = credentials.access_key

    def continuous_scan_enabled(self) -> bool:
        return self._components.capabilities.continuous_scan == "enable"

    def admission_controller_enabled(self) -> bool:
        return self._components.capabilities.admission_controller == "enable"

    def node_sbom_generation_enabled(self) -> bool:
        return self._components.capabilities.node_sbom_generation == "enable"

    def kubevuln_url(self) -> str:
        return self._cluster.kubevuln_url

    def kubescape_url(self) -> str:
        return self._cluster.kubescape_url

    def trigger_security_framework(self) -> bool:
        return self._service.trigger_security_framework

    def http_exporter_config(self) -> Optional[HTTPExporterConfig]:
        return self._service.http_exporter_config

    def namespace(self) -> str:
        return self._service.namespace

    def clean_up_routine_interval(self) -> timedelta:
        return self._service.clean_up_routine_interval

    def matching_rules_filename(self) -> str:
        return self._service.matching_rules_filename

    def concurrency_workers(self) -> int:
        return self._service.concurrency_workers

    def components(self) -> Components:
        return self._components.components

    def account_id(self) -> str:
        return self._account_id

    def access_key(self) -> str:
        return self._access_key

    def cluster_name(self) -> str:
        return self._cluster.cluster_name

    def event_receiver_url(self) -> str:
        return ""

    def guard_time(self) -> timedelta:
        return self._service.pod_scan_guard_time

    def skip_namespace(self, ns: str) -> bool:
        """Whether a namespace is filtered out; an include list wins over an exclude list."""
        if self._service.include_namespaces:
            return ns not in self._service.include_namespaces
        if self._service.exclude_namespaces:
            return ns in self._service.exclude_namespaces
        return False


def validate_config(config: OperatorConfig) -> None:
    """Raise ConfigError if required settings are missing."""
    if not config.account_id() and config.components().service_discovery.enabled:
        raise ConfigError("missing account id")
    if not config.cluster_name():
        raise ConfigError("missing cluster name in config")