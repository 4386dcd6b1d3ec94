# clusteroperator

Building blocks for an in-cluster operator that keeps watch over a Kubernetes
cluster: loading the operator configuration, checking admission requests
against rule bindings, sending alerts over HTTP, and keeping resource watches
open. It uses only the Python standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `clusteroperator.config`: `load_config(path)` and
  `load_capabilities_config(path)` read `config.json` and `capabilities.json`
  from a directory. `load_config` fills in defaults (namespace `kubescape`,
  port `4002`, cleanup delay 10 minutes, 3 workers, matching rules file
  `/etc/config/matchingRules.json`, event deduplication 2 minutes, pod scan
  guard time 1 hour) and lets environment variables named after the upper-cased
  keys override them. Durations are read by `parse_duration`, which accepts
  strings such as `"1h30m"` or a number of nanoseconds. `OperatorConfig`
  combines a `CapabilitiesConfig`, a `ClusterConfig`, `Credentials` and a
  `Config`; `skip_namespace` applies the include list, or failing that the
  exclude list. `validate_config` raises `ConfigError` when service discovery
  is enabled and no account is set, or when the cluster name is missing.
- `clusteroperator.exporter`: `HTTPExporterConfig.validate` fills in defaults
  (method `POST`, 5 second timeout, 100 alerts per minute, empty headers) and
  raises `ValueError` for a method other than `POST`/`PUT` or a missing URL.
  `init_http_exporter` validates and builds an `HTTPExporter`, which sends
  admission alerts to `<url>/v1/runtimealerts` and registry scan status to
  `<url>/v1/registryscanstatuses` as JSON. When more alerts than the limit
  arrive within a minute it sends one "Alert limit reached" alert and drops
  the rest until the minute is over. The HTTP transport and clock can be
  passed in.
- `clusteroperator.failure`: alert records (`BaseRuntimeAlert`, `RuleAlert`,
  `AdmissionAlert`, `RuntimeAlertK8sDetails`), `GenericRuleFailure`, the
  `RuleEvaluator` base class, and workload id helpers (`make_wlid`,
  `cluster_from_wlid`, `namespace_from_wlid`, `kind_from_wlid`,
  `name_from_wlid`).
- `clusteroperator.kube`: `AdmissionAttributes`, `GroupVersionKind`,
  `GroupVersionResource`, `Operation`, `UserInfo`, and `KubernetesClient`, an
  in-memory object store looked up by kind, namespace and name (subclass it and
  override `get` to talk to a real API server). `get_controller_details` and
  `extract_pod_owner` work out which Deployment, ReplicaSet, CronJob, Job,
  StatefulSet or DaemonSet owns a pod.
- `clusteroperator.rules`: the built-in rules `R2000ExecToPod` ("Exec to pod")
  and `R2001PortForward` ("Port forward"), their `RuleDescriptor`s, and
  `RuleCreator`, which builds rules by ID, name or tag.
- `clusteroperator.rulebinding`: `RBCache` holds rule bindings and the rules
  created for them; `list_rules_for_object` picks the bindings whose pod and
  namespace `LabelSelector`s match an object (namespace selectors need a
  `namespace_lister` passed to the cache). Cluster-scoped objects get every
  binding unless labelled `includeClusterObjects: "false"`.
- `clusteroperator.validator`: `AdmissionValidator.validate` runs the bound
  rules against a request; when one fails it sends an alert through the
  exporter and raises `Forbidden`.
- `clusteroperator.webhook`: `AdmissionWebhook` serves `/health` and
  `/validate` over TLS until a stop event is set, and restarts its server when
  the certificate or key file changes. Requests are always allowed: a refusal
  from the validator is recorded in the response message, not enforced.
  `handle_health` and `handle_validate` can also be called directly and return
  `(status, headers, body)`.
- `clusteroperator.loader`: `parse_matching_rules` and `FileFetcher` read
  matching rules from JSON; `TargetLoader.load_gvrs` expands them into every
  group/version/resource combination.
- `clusteroperator.watchbuilder`: `SelfHealingWatch` reopens a watch whenever
  it closes or fails to open, and `WatchPool` runs several of them into one
  queue. The client object supplies `watch(gvr, namespace)`.

## Example

```python
from clusteroperator.config import (
    CapabilitiesConfig, ClusterConfig, Config, Credentials,
    OperatorConfig, validate_config,
)

cfg = OperatorConfig(
    CapabilitiesConfig(),
    ClusterConfig(cluster_name="demo"),
    Credentials(account="example-account", access_key="placeholder"),
    "",
    Config(exclude_namespaces=["kube-system"]),
)
validate_config(cfg)
assert cfg.skip_namespace("kube-system")
```

## What it does not do

- There is no command or long-running service that wires the pieces together;
  you start the webhook, watches and exporter from your own code.
- There is no Kubernetes API client: `KubernetesClient` is an in-memory store,
  and watches need a client object you provide.
- Watch events are delivered to a queue; nothing here turns them into scan
  commands or cleans up stored scan results.