# pvcautoresizer

`pvcautoresizer` watches PersistentVolumeClaims in a Kubernetes cluster. When a
volume runs low on free space or free inodes, it raises the claim's storage
request. The request never goes above a storage limit that you set.

It has two parts:

- a resizer loop. At a fixed interval it reads volume statistics from Prometheus
  or from the kubelet metrics endpoints, and updates the claims that need more room;
- an optional mutating admission webhook, served at `/pvc/mutate`. It raises the
  request of a newly created claim to match the largest claim in its group.

## Installation

```
pip install pvcautoresizer
```

## Running

The controller runs inside the cluster. It talks to the API server with the
in-cluster service account: it needs `KUBERNETES_SERVICE_HOST`,
`KUBERNETES_SERVICE_PORT` and the mounted service account token.

You must give it a source of volume statistics. To read them from Prometheus:

```
pvc-autoresizer --prometheus-url http://prometheus.monitoring.svc:9090
```

To read them from every node's kubelet through the API server proxy instead:

```
pvc-autoresizer --use-k8s-metrics-api
```

Without either option the command prints
`enable use-k8s-metrics-api or provide prometheus-url` and exits with status 1.
It stops cleanly on `SIGINT` or `SIGTERM`.

Options:

| Option | Default | Meaning |
| --- | --- | --- |
| `--prometheus-url` | empty | Prometheus URL to query volume stats |
| `--use-k8s-metrics-api` | off | Read stats from the kubelets instead of Prometheus |
| `--interval` | `1m` | How often to check PVC capacity (e.g. `30s`, `1m30s`, `500ms`) |
| `--namespaces` | all | Comma-separated namespaces to watch; may be repeated |
| `--no-annotation-check` | off | Treat every StorageClass as enabled |
| `--metrics-addr` | `:8080` | Address of the `/metrics` endpoint; `0` or empty disables it |
| `--health-addr` | `:8081` | Address of `/healthz` and `/readyz`; `0` or empty disables it |
| `--webhook-addr` | `:9443` | Address of the mutating webhook |
| `--cert-dir` | `/certs` | Directory holding `tls.crt` and `tls.key` for the webhook |
| `--pvc-mutating-webhook-enabled` | `true` | Serve the PVC mutating webhook |
| `--development`, `--zap-devel` | off | Verbose development logging |
| `--zap-log-level` | `info` | One of `debug`, `info`, `warn`, `error` |

Boolean options may be given bare (`--development`) or with a value
(`--pvc-mutating-webhook-enabled=false`).

## Enabling resizing

Resizing works per StorageClass and per claim.

1. Annotate the StorageClass with `resize.topolvm.io/enabled: "true"`. You can skip
   this step if you pass `--no-annotation-check`.
2. On each claim, set `resize.topolvm.io/storage_limit`, for example `100Gi`. The
   resizer ignores claims with no limit or with a zero limit. It also ignores claims
   whose volume mode is not `Filesystem` and claims that are not `Bound`.

You can tune a claim with these annotations:

| Annotation | Default | Meaning |
| --- | --- | --- |
| `resize.topolvm.io/threshold` | `10%` | Resize when available bytes fall below this (percent or quantity) |
| `resize.topolvm.io/inodes-threshold` | `10%` | Resize when available inodes fall below this percent |
| `resize.topolvm.io/increase` | `10%` | Amount to add (percent of capacity or quantity) |
| `resize.topolvm.io/initial-resize-group-by` | unset | Label key that groups claims for initial sizing by the webhook |

The new request is the current capacity plus the increase, rounded up to a whole
GiB and capped at the storage limit. Once the capacity has reached the limit, the
claim is no longer resized. After each resize the controller records the reported
capacity in `resize.topolvm.io/pre_capacity_bytes` and does not resize the claim
again until the reported capacity changes. A `Resized` event is recorded on the
claim. Invalid threshold or increase annotations make the resizer skip the claim.

Claims whose volume statistics are missing (for example volumes that no pod has
mounted) are skipped and not counted as failures.

## The admission webhook

On `CREATE` of a claim that carries `resize.topolvm.io/initial-resize-group-by`,
the webhook reads the label named by that annotation. It then lists the claims in
the same namespace with the same label value. If one of them requests more
storage, the new claim's request is raised to match, capped at its storage limit.
A claim without a value for the label is rejected with code 400. A claim without
a storage limit is left alone.

## Using the library

The building blocks can be imported and used on their own:

```python
from pvcautoresizer.autoresizer import convert_size_in_bytes, convert_size
from pvcautoresizer.quantity import parse_quantity, format_quantity

parse_quantity("30Gi")                        # 32212254720
format_quantity(2147483648)                   # "2Gi"
convert_size_in_bytes("20%", 100, "10%")      # 20
convert_size("", 100, "10%")                  # 10
```

Modules:

- `pvcautoresizer.quantity` — `parse_quantity`, `format_quantity`, `QuantityError`.
- `pvcautoresizer.autoresizer` — `PVCAutoresizer` (with `run`, `reconcile` and
  `resize`), the size helpers `convert_size_in_bytes`, `convert_size`,
  `calc_size`, `pvc_storage_limit`, `is_target_pvc`, and `FailingUpdateClient`,
  a client wrapper whose every PVC update fails.
- `pvcautoresizer.sources` — `PrometheusClient`, `KubeletMetricsClient`,
  `parse_text_metrics`, `pvc_usage_from_families`, `NamespacedName`, `VolumeStats`.
- `pvcautoresizer.kube` — `KubeClient`, a small HTTP client for the API server,
  and `in_cluster_client`.
- `pvcautoresizer.hooks` — `PVCMutator`, `AdmissionResponse`, `json_patch` and
  `create_webhook_server`.
- `pvcautoresizer.metrics` — `Registry`, `Counter`, `PVCCounter` and the
  module-level `REGISTRY`.
- `pvcautoresizer.cli` — `main`, `parse_config`, `parse_duration`, `run`, `Config`.

## Metrics

The `/metrics` endpoint exports these counters in the Prometheus text format:

- `pvcautoresizer_success_resize_total` (labels `persistentvolumeclaim`, `namespace`)
- `pvcautoresizer_failed_resize_total` (labels `persistentvolumeclaim`, `namespace`)
- `pvcautoresizer_limit_reached_total` (labels `persistentvolumeclaim`, `namespace`)
- `pvcautoresizer_loop_seconds_total`
- `pvcautoresizer_metrics_client_fail_total`
- `pvcautoresizer_kubernetes_client_fail_total`

## What it does not do

- It only runs inside a cluster; there is no kubeconfig support for running it
  from elsewhere.
- It has no leader election. Run a single replica.
- It keeps no watch cache: each pass lists StorageClasses and claims from the
  API server afresh.
- The webhook server does not reload its TLS certificate while it runs, and the
  webhook configuration itself has to be installed in the cluster separately.
- `/readyz` answers `ok` once the process serves it; it does not check the webhook.