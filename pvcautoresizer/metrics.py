"""Prometheus counters exported by the autoresizer."""

from __future__ import annotations

import threading
from typing import NamedTuple, Protocol

METRICS_NAMESPACE = "pvcautoresizer"

KUBERNETES_CLIENT_SUBSYSTEM = "kubernetes_client"
KUBERNETES_CLIENT_FAIL_TOTAL_KEY = "fail_total"

METRICS_CLIENT_SUBSYSTEM = "metrics_client"
METRICS_CLIENT_FAIL_TOTAL_KEY = "fail_total"

RESIZER_SUCCESS_RESIZE_TOTAL_KEY = "success_resize_total"
RESIZER_FAILED_RESIZE_TOTAL_KEY = "failed_resize_total"
RESIZER_LOOP_SECONDS_TOTAL_KEY = "loop_seconds_total"
RESIZER_LIMIT_REACHED_TOTAL_KEY = "limit_reached_total"

_PVC_LABEL = "persistentvolumeclaim"
_NAMESPACE_LABEL = "namespace"


class Sample(NamedTuple):
    """One exported time series value."""

    name: str
    labels: dict
    value: float


class _Collector(Protocol):
    name: str
    help_text: str

    def samples(self) -> list[Sample]: ...


def _full_name(name: str, namespace: str, subsystem: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


def _format_value(value: float) -> str:
    if float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


class Registry:
    """A set of collectors that can be rendered in the Prometheus text format."""

    def __init__(self):
        self._collectors: dict[str, _Collector] = {}
        self._lock = threading.Lock()

    def register(self, collector):
        """Add a collector; a second collector with the same name is an error."""
        with self._lock:
            if collector.name in self._collectors:
                raise ValueError(f"duplicate metrics collector registration attempted: {collector.name}")
            self._collectors[collector.name] = collector
        return collector

    def expose(self) -> str:
        """Render all registered metrics in the text exposition format."""
        with self._lock:
            collectors = sorted(self._collectors.values(), key=lambda c: c.name)
        lines = []
        for collector in collectors:
            lines.append(f"# HELP {collector.name} {_escape_help(collector.help_text)}")
            lines.append(f"# TYPE {collector.name} counter")
            for sample in collector.samples():
                if sample.labels:
                    rendered = ",".join(
                        f'{key}="{_escape_label(val)}"' for key, val in sample.labels.items()
                    )
                    lines.append(f"{sample.name}{{{rendered}}} {_format_value(sample.value)}")
                else:
                    lines.append(f"{sample.name} {_format_value(sample.value)}")
        return "\n".join(lines) + "\n" if lines else ""


class Counter:
    """A monotonically increasing value without labels."""

    def __init__(self, name, help_text, namespace="", subsystem=""):
        self.name = _full_name(name, namespace, subsystem)
        self.help_text = help_text
        self._value = 0.0
        self._lock = threading.Lock()

    def inc(self):
        self.add(1.0)

    def add(self, value):
        if value < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += value

    def value(self) -> float:
        with self._lock:
            return self._value

    def samples(self) -> list[Sample]:
        return [Sample(self.name, {}, self.value())]


class PVCCounter:
    """A counter partitioned by PersistentVolumeClaim name and namespace."""

    def __init__(self, name, help_text, namespace="", subsystem=""):
        self.name = _full_name(name, namespace, subsystem)
        self.help_text = help_text
        self._values: dict[tuple[str, str], float] = {}
        self._lock = threading.Lock()

    def _add(self, pvc_name: str, namespace: str, amount: float) -> None:
        key = (pvc_name, namespace)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def increment(self, pvc_name, namespace):
        self._add(pvc_name, namespace, 1.0)

    def specify_labels(self, pvc_name, namespace):
        """Create the series with a zero value so it is exported before any event."""
        self._add(pvc_name, namespace, 0.0)

    def value(self, pvc_name, namespace) -> float:
        with self._lock:
            return self._values.get((pvc_name, namespace), 0.0)

    def total(self) -> float:
        with self._lock:
            return sum(self._values.values())

    def samples(self) -> list[Sample]:
        with self._lock:
            items = sorted(self._values.items(), key=lambda item: (item[0][1], item[0][0]))
        return [
            Sample(self.name, {_PVC_LABEL: pvc, _NAMESPACE_LABEL: ns}, value)
            for (pvc, ns), value in items
        ]


REGISTRY = Registry()

KUBERNETES_CLIENT_FAIL_TOTAL = REGISTRY.register(
    Counter(
        KUBERNETES_CLIENT_FAIL_TOTAL_KEY,
        "counter that indicates how many API requests to kube-api server are failed.",
        METRICS_NAMESPACE,
        KUBERNETES_CLIENT_SUBSYSTEM,
    )
)

METRICS_CLIENT_FAIL_TOTAL = REGISTRY.register(
    Counter(
        METRICS_CLIENT_FAIL_TOTAL_KEY,
        "counter that indicates how many API requests to metrics server(e.g. prometheus) are failed.",
        METRICS_NAMESPACE,
        METRICS_CLIENT_SUBSYSTEM,
    )
)

RESIZER_SUCCESS_RESIZE_TOTAL = REGISTRY.register(
    PVCCounter(
        RESIZER_SUCCESS_RESIZE_TOTAL_KEY,
        "counter that indicates how many volume expansion processing resized succeed.",
        METRICS_NAMESPACE,
    )
)

RESIZER_FAILED_RESIZE_TOTAL = REGISTRY.register(
    PVCCounter(
        RESIZER_FAILED_RESIZE_TOTAL_KEY,
        "counter that indicates how many volume expansion processing resizes fail.",
        METRICS_NAMESPACE,
    )
)

RESIZER_LOOP_SECONDS_TOTAL = REGISTRY.register(
    Counter(
        RESIZER_LOOP_SECONDS_TOTAL_KEY,
        "counter that indicates the sum of seconds spent on volume expansion processing loops.",
        METRICS_NAMESPACE,
    )
)

RESIZER_LIMIT_REACHED_TOTAL = REGISTRY.register(
    PVCCounter(
        RESIZER_LIMIT_REACHED_TOTAL_KEY,
        "counter that indicates how many storage limits were reached.",
        METRICS_NAMESPACE,
    )
)