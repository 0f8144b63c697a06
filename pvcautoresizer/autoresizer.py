"""The periodic loop that grows PersistentVolumeClaims running out of space."""

from __future__ import annotations

import copy
import logging
import re
import threading
import time
from datetime import timedelta

from .constants import (
    AUTO_RESIZE_ENABLED_KEY,
    DEFAULT_INCREASE,
    DEFAULT_INODES_THRESHOLD,
    DEFAULT_THRESHOLD,
    PREVIOUS_CAPACITY_BYTES_ANNOTATION,
    RESIZE_INCREASE_ANNOTATION,
    RESIZE_INODES_THRESHOLD_ANNOTATION,
    RESIZE_THRESHOLD_ANNOTATION,
    STORAGE_LIMIT_ANNOTATION,
)
from .kube import ApiError
from .metrics import (
    KUBERNETES_CLIENT_FAIL_TOTAL,
    RESIZER_FAILED_RESIZE_TOTAL,
    RESIZER_LIMIT_REACHED_TOTAL,
    RESIZER_LOOP_SECONDS_TOTAL,
    RESIZER_SUCCESS_RESIZE_TOTAL,
)
from .quantity import QuantityError, format_quantity, parse_quantity
from .sources import MetricsClient, MetricsSourceError, NamespacedName, VolumeStats

__all__ = [
    "FailingUpdateClient",
    "PVCAutoresizer",
    "convert_size_in_bytes",
    "convert_size",
    "calc_size",
    "pvc_storage_limit",
    "is_target_pvc",
    "index_by_resize_enable_annotation",
    "index_by_storage_class_name",
]

log = logging.getLogger(__name__)

_GIB = 1 << 30
_RATE_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_INT_RE = re.compile(r"[+-]?\d+")


def _annotations(obj: dict) -> dict:
    return (obj.get("metadata") or {}).get("annotations") or {}


def calc_size(val_str, capacity):
    """Return ``val_str`` percent of ``capacity``, truncated to an integer."""
    number = val_str.rstrip("%")
    if not _RATE_RE.fullmatch(number):
        raise ValueError(f"invalid percentage: {val_str}")
    rate = float(number)
    if rate < 0 or rate > 100:
        raise ValueError(f"annotation value should between 0 and 100: {val_str}")
    return int(float(capacity) * rate / 100.0)


def convert_size_in_bytes(val_str, capacity, default_val):
    """Turn a percentage or an absolute quantity into a byte count."""
    val_str = val_str or default_val
    if val_str.endswith("%"):
        return calc_size(val_str, capacity)
    value = parse_quantity(val_str)
    if value <= 0:
        raise ValueError(f"annotation value should be positive: {val_str}")
    return value


def convert_size(val_str, capacity, default_val):
    """Turn a percentage of ``capacity`` into a count; other notations are errors."""
    val_str = val_str or default_val
    if val_str.endswith("%"):
        return calc_size(val_str, capacity)
    raise ValueError(f"annotation value should be in percent notation: {val_str}")


def pvc_storage_limit(pvc):
    """Return the storage limit annotation of a PVC in bytes, or 0 if unset."""
    annotation = _annotations(pvc).get(STORAGE_LIMIT_ANNOTATION)
    return parse_quantity(annotation) if annotation else 0


def is_target_pvc(pvc):
    """Tell whether a PVC is bound, a filesystem volume, and carries a storage limit."""
    try:
        limit = pvc_storage_limit(pvc)
    except QuantityError as exc:
        raise QuantityError(f"invalid storage limit: {exc}") from exc
    if limit == 0:
        return False
    mode = (pvc.get("spec") or {}).get("volumeMode")
    if mode is not None and mode != "Filesystem":
        return False
    return (pvc.get("status") or {}).get("phase") == "Bound"


def index_by_resize_enable_annotation(storage_class):
    """Index values of a StorageClass by its resize-enabled annotation."""
    annotations = _annotations(storage_class)
    if AUTO_RESIZE_ENABLED_KEY in annotations:
        return [annotations[AUTO_RESIZE_ENABLED_KEY]]
    return []


def index_by_storage_class_name(pvc):
    """Index values of a PVC by its storage class name."""
    name = (pvc.get("spec") or {}).get("storageClassName")
    return [] if name is None else [name]


class FailingUpdateClient:
    """Wraps a client so that every PVC update fails; rejected PVCs are kept."""

    def __init__(self, client):
        self._client = client
        self.rejected: list[dict] = []

    def __getattr__(self, name):
        return getattr(self._client, name)

    def update_pvc(self, pvc):
        self.rejected.append(pvc)
        raise ApiError("occurred fake error")


class PVCAutoresizer:
    """Periodically checks volume usage and raises PVC storage requests."""

    def __init__(self, metrics_client: MetricsClient, client, interval, skip_annotation_check=False):
        self.metrics_client = metrics_client
        self.client = client
        if isinstance(interval, timedelta):
            interval = interval.total_seconds()
        self.interval = float(interval)
        self.skip_annotation_check = skip_annotation_check

    def run(self, stop_event: threading.Event):
        """Reconcile every interval until ``stop_event`` is set."""
        while not stop_event.wait(self.interval):
            started = time.perf_counter()
            self.reconcile()
            RESIZER_LOOP_SECONDS_TOTAL.add(time.perf_counter() - started)

    def _storage_classes(self) -> list[dict]:
        try:
            classes = self.client.list_storage_classes()
        except ApiError:
            KUBERNETES_CLIENT_FAIL_TOTAL.inc()
            raise
        if self.skip_annotation_check:
            return list(classes)
        return [sc for sc in classes if "true" in index_by_resize_enable_annotation(sc)]

    def reconcile(self):
        """Run one pass over all eligible PVCs."""
        try:
            storage_classes = self._storage_classes()
        except ApiError as exc:
            log.error("getStorageClassList failed: %s", exc)
            return
        try:
            stats_map = self.metrics_client.get_metrics()
        except (MetricsSourceError, ApiError) as exc:
            log.error("metricsClient.GetMetrics failed: %s", exc)
            return

        for sc in storage_classes:
            sc_name = sc["metadata"]["name"]
            try:
                pvcs = self.client.list_pvcs()
            except ApiError as exc:
                KUBERNETES_CLIENT_FAIL_TOTAL.inc()
                log.error("list pvc failed: %s", exc)
                return
            for pvc in pvcs:
                if sc_name in index_by_storage_class_name(pvc):
                    self._process(pvc, stats_map)

    def _process(self, pvc: dict, stats_map: dict[NamespacedName, VolumeStats]) -> None:
        meta = pvc["metadata"]
        name, namespace = meta["name"], meta.get("namespace", "")
        try:
            if not is_target_pvc(pvc):
                return
        except QuantityError as exc:
            RESIZER_FAILED_RESIZE_TOTAL.increment(name, namespace)
            log.error("failed to check target PVC %s/%s: %s", namespace, name, exc)
            return

        for counter in (RESIZER_SUCCESS_RESIZE_TOTAL, RESIZER_FAILED_RESIZE_TOTAL, RESIZER_LIMIT_REACHED_TOTAL):
            counter.specify_labels(name, namespace)

        stats = stats_map.get(NamespacedName(namespace, name))
        if stats is None:
            # Offline volumes have no stats; this is not counted as a failure.
            log.info("failed to get volume stats for %s/%s", namespace, name)
            return
        try:
            self.resize(pvc, stats)
        except (ApiError, ValueError) as exc:
            RESIZER_FAILED_RESIZE_TOTAL.increment(name, namespace)
            log.error("failed to resize PVC %s/%s: %s", namespace, name, exc)

    def resize(self, pvc, stats):
        """Raise the storage request of ``pvc`` if it is running low.

        Returns the new request in bytes, or None when nothing was changed.
        """
        meta = pvc["metadata"]
        name, namespace = meta["name"], meta.get("namespace", "")
        where = f"{namespace}/{name}"
        annotations = _annotations(pvc)

        try:
            threshold = convert_size_in_bytes(
                annotations.get(RESIZE_THRESHOLD_ANNOTATION, ""), stats.capacity_bytes, DEFAULT_THRESHOLD
            )
            inodes_threshold = convert_size(
                annotations.get(RESIZE_INODES_THRESHOLD_ANNOTATION, ""),
                stats.capacity_inode_size,
                DEFAULT_INODES_THRESHOLD,
            )
        except ValueError as exc:
            log.warning("%s: failed to convert threshold annotation: %s", where, exc)
            return None

        capacity_text = ((pvc.get("status") or {}).get("capacity") or {}).get("storage")
        if capacity_text is None:
            log.info("%s: skip resizing because pvc capacity is not set yet", where)
            return None
        capacity = parse_quantity(str(capacity_text))
        if capacity == 0:
            log.info("%s: skip resizing because pvc capacity size is zero", where)
            return None

        try:
            increase = convert_size_in_bytes(
                annotations.get(RESIZE_INCREASE_ANNOTATION, ""), capacity, DEFAULT_INCREASE
            )
        except ValueError as exc:
            log.warning("%s: failed to convert increase annotation: %s", where, exc)
            return None

        previous = annotations.get(PREVIOUS_CAPACITY_BYTES_ANNOTATION)
        if previous is not None:
            if not _INT_RE.fullmatch(previous):
                log.warning("%s: failed to parse pre_cap_bytes annotation: %r", where, previous)
                return None
            if int(previous) == stats.capacity_bytes:
                log.info("%s: waiting for resizing... capacity=%d", where, stats.capacity_bytes)
                return None

        limit = pvc_storage_limit(pvc)
        if capacity >= limit:
            log.info("%s: volume storage limit reached", where)
            RESIZER_LIMIT_REACHED_TOTAL.increment(name, namespace)
            return None

        if not (threshold > stats.available_bytes or inodes_threshold > stats.available_inode_size):
            return None

        new_request = -(-(capacity + increase) // _GIB) * _GIB
        if new_request > limit:
            new_request = limit
            new_text = annotations[STORAGE_LIMIT_ANNOTATION]
        else:
            new_text = format_quantity(new_request)

        updated = copy.deepcopy(pvc)
        updated.setdefault("spec", {}).setdefault("resources", {}).setdefault("requests", {})["storage"] = new_text
        if updated["metadata"].get("annotations") is None:
            updated["metadata"]["annotations"] = {}
        updated["metadata"]["annotations"][PREVIOUS_CAPACITY_BYTES_ANNOTATION] = str(stats.capacity_bytes)

        try:
            self.client.update_pvc(updated)
        except ApiError:
            KUBERNETES_CLIENT_FAIL_TOTAL.inc()
            raise

        log.info(
            "%s: resize started from=%d to=%d threshold=%d available=%d inodesThreshold=%d inodesAvailable=%d",
            where, capacity, new_request, threshold, stats.available_bytes,
            inodes_threshold, stats.available_inode_size,
        )
        try:
            self.client.record_event(updated, "Normal", "Resized", f"PVC volume is resized to {new_text}")
        except ApiError as exc:
            log.warning("%s: failed to record event: %s", where, exc)
        RESIZER_SUCCESS_RESIZE_TOTAL.increment(name, namespace)
        return new_request