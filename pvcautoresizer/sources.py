"""Sources of volume statistics: Prometheus and the kubelet metrics endpoints."""

from __future__ import annotations

import abc
import math
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial

import requests

from .kube import ApiError, in_cluster_client
from .metrics import METRICS_CLIENT_FAIL_TOTAL

__all__ = [
    "NamespacedName",
    "VolumeStats",
    "MetricsClient",
    "MetricsSourceError",
    "PrometheusClient",
    "KubeletMetricsClient",
    "parse_text_metrics",
    "pvc_usage_from_families",
]

VOLUME_AVAILABLE_QUERY = "kubelet_volume_stats_available_bytes"
VOLUME_CAPACITY_QUERY = "kubelet_volume_stats_capacity_bytes"
INODES_AVAILABLE_QUERY = "kubelet_volume_stats_inodes_free"
INODES_CAPACITY_QUERY = "kubelet_volume_stats_inodes"


class MetricsSourceError(Exception):
    """Raised when volume statistics cannot be retrieved."""


@dataclass(frozen=True, order=True)
class NamespacedName:
    """Identifies a PersistentVolumeClaim."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class VolumeStats:
    """Volume usage figures used to decide on a resize."""

    available_bytes: int = 0
    capacity_bytes: int = 0
    available_inode_size: int = 0
    capacity_inode_size: int = 0


class MetricsClient(abc.ABC):
    """Something that reports volume statistics for PVCs."""

    @abc.abstractmethod
    def get_metrics(self) -> dict[NamespacedName, VolumeStats]:
        """Return volume statistics keyed by PVC."""


def _to_int(value: float) -> int:
    return int(value) if math.isfinite(value) else 0


def _key(labels: dict) -> NamespacedName:
    return NamespacedName(labels.get("namespace", ""), labels.get("persistentvolumeclaim", ""))


class PrometheusClient(MetricsClient):
    """Reads kubelet volume statistics from a Prometheus server."""

    timeout = 30.0

    def __init__(self, url, session=None):
        self.url = url.rstrip("/")
        self.session = session if session is not None else requests.Session()

    def get_metrics(self):
        """Return stats only for PVCs for which all four series are present."""
        available = self._query(VOLUME_AVAILABLE_QUERY)
        capacity = self._query(VOLUME_CAPACITY_QUERY)
        inodes_free = self._query(INODES_AVAILABLE_QUERY)
        inodes = self._query(INODES_CAPACITY_QUERY)
        return {
            key: VolumeStats(value, capacity[key], inodes_free[key], inodes[key])
            for key, value in available.items()
            if key in capacity and key in inodes_free and key in inodes
        }

    def _query(self, query: str) -> dict[NamespacedName, int]:
        try:
            response = self.session.get(
                f"{self.url}/api/v1/query",
                params={"query": query, "time": f"{time.time():.3f}"},
                timeout=self.timeout,
            )
            body = response.json()
            if not response.ok or body.get("status") != "success":
                raise MetricsSourceError(body.get("error") or f"{response.status_code} {response.reason}")
            data = body.get("data") or {}
            result_type = data.get("resultType", "")
            if result_type == "vector":
                return {
                    _key(item.get("metric") or {}): _to_int(float(item["value"][1]))
                    for item in data.get("result") or []
                }
        except (requests.RequestException, MetricsSourceError, KeyError, IndexError,
                TypeError, ValueError, AttributeError) as exc:
            METRICS_CLIENT_FAIL_TOTAL.inc()
            raise MetricsSourceError(f"prometheus query {query!r} failed: {exc}") from exc
        raise MetricsSourceError(f"unknown response type: {result_type}")


@dataclass
class _MetricFamily:
    name: str
    type: str = "untyped"
    samples: list[tuple[dict[str, str], float]] = field(default_factory=list)


_SAMPLE_RE = re.compile(
    r'([a-zA-Z_:][a-zA-Z0-9_:]*)\s*(?:\{((?:[^"}]|"(?:[^"\\\n]|\\.)*")*)\})?\s+(\S+)(?:\s+-?\d+)?'
)
_LABEL_RE = re.compile(r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*"((?:[^"\\\n]|\\.)*)"\s*(?:,|$)')
_ESCAPE_RE = re.compile(r"\\(.)")


def _unescape(value: str) -> str:
    return _ESCAPE_RE.sub(lambda m: "\n" if m.group(1) == "n" else m.group(1), value)


def _parse_labels(block: str, number: int) -> dict[str, str]:
    labels: dict[str, str] = {}
    pos = 0
    while block[pos:].strip():
        match = _LABEL_RE.match(block, pos)
        if match is None:
            raise MetricsSourceError(f"line {number}: invalid label set")
        labels[match.group(1)] = _unescape(match.group(2))
        pos = match.end()
    return labels


def parse_text_metrics(text):
    """Parse the Prometheus text exposition format into metric families by name."""
    families: dict[str, _MetricFamily] = {}
    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            parts = line[1:].split(None, 2)
            if len(parts) == 3 and parts[0] == "TYPE":
                families.setdefault(parts[1], _MetricFamily(parts[1])).type = parts[2].strip().lower()
            continue
        match = _SAMPLE_RE.fullmatch(line)
        if match is None:
            raise MetricsSourceError(f"line {number}: invalid sample line")
        name, block, value_text = match.groups()
        try:
            value = float(value_text)
        except ValueError as exc:
            raise MetricsSourceError(f"line {number}: invalid value {value_text!r}") from exc
        labels = _parse_labels(block or "", number)
        families.setdefault(name, _MetricFamily(name)).samples.append((labels, value))
    return families


def _gauge_samples(families, name):
    family = families.get(name)
    if family is None:
        return
    for labels, value in family.samples:
        # Only gauge families carry a gauge value; anything else reads as zero.
        yield _key(labels), _to_int(value if family.type == "gauge" else 0.0)


def pvc_usage_from_families(families):
    """Build per-PVC volume stats from parsed kubelet metric families.

    A PVC gets an entry when its available-bytes series is present; the other
    three series fill in that entry.
    """
    usage = {key: VolumeStats(available_bytes=value)
             for key, value in _gauge_samples(families, VOLUME_AVAILABLE_QUERY)}
    for query, attribute in (
        (VOLUME_CAPACITY_QUERY, "capacity_bytes"),
        (INODES_AVAILABLE_QUERY, "available_inode_size"),
        (INODES_CAPACITY_QUERY, "capacity_inode_size"),
    ):
        for key, value in _gauge_samples(families, query):
            if key in usage:
                setattr(usage[key], attribute, value)
    return usage


class KubeletMetricsClient(MetricsClient):
    """Reads volume statistics from every node's kubelet through the API server."""

    def __init__(self, api=None, max_workers=None):
        self._api = api
        self.max_workers = max_workers

    @staticmethod
    def _node_usage(api, node_name: str) -> dict[NamespacedName, VolumeStats]:
        try:
            text = api.node_metrics(node_name)
        except ApiError as exc:
            raise MetricsSourceError(f"failed to get stats from kubelet on node {node_name}: {exc}") from exc
        try:
            families = parse_text_metrics(text)
        except MetricsSourceError as exc:
            raise MetricsSourceError(
                f"failed to read response body from kubelet on node {node_name}: {exc}"
            ) from exc
        return pvc_usage_from_families(families)

    def get_metrics(self):
        try:
            api = self._api if self._api is not None else in_cluster_client()
            names = [node["metadata"]["name"] for node in api.list_nodes()]
            usage: dict[NamespacedName, VolumeStats] = {}
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                for node_usage in pool.map(partial(self._node_usage, api), names):
                    usage.update(node_usage)
        except (ApiError, MetricsSourceError) as exc:
            METRICS_CLIENT_FAIL_TOTAL.inc()
            if isinstance(exc, MetricsSourceError):
                raise
            raise MetricsSourceError(str(exc)) from exc
        return usage