"""A small Kubernetes API client covering what the autoresizer needs."""

from __future__ import annotations

import os
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import requests

__all__ = ["ApiError", "KubeClient", "in_cluster_client"]

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
_TOKEN_FILE = os.path.join(SERVICE_ACCOUNT_DIR, "token")
_CA_FILE = os.path.join(SERVICE_ACCOUNT_DIR, "ca.crt")

_STORAGE_CLASSES_PATH = "/apis/storage.k8s.io/v1/storageclasses"


class ApiError(Exception):
    """Raised when a request to the Kubernetes API fails."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def _label_selector(selector: Mapping[str, str] | str | None) -> str | None:
    if selector is None:
        return None
    if isinstance(selector, str):
        return selector or None
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items())) or None


def _failure_detail(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text.strip() or response.reason or ""


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class KubeClient:
    """Talks to the Kubernetes API server over HTTP(S)."""

    component = "pvc-autoresizer"
    timeout = 30.0

    def __init__(self, base_url, token=None, ca_file=None, session=None):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        if ca_file:
            self.session.verify = ca_file

    def _request(self, method: str, path: str, *, params=None, body=None) -> requests.Response:
        try:
            response = self.session.request(
                method, self.base_url + path, params=params, json=body, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise ApiError(f"{method} {path}: {exc}") from exc
        if not response.ok:
            raise ApiError(
                f"{method} {path}: {response.status_code} {_failure_detail(response)}",
                response.status_code,
            )
        return response

    def _json(self, method: str, path: str, *, params=None, body=None) -> Any:
        response = self._request(method, path, params=params, body=body)
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(f"{method} {path}: invalid JSON response: {exc}", response.status_code) from exc

    def get(self, path, params=None):
        """GET a path and return the decoded JSON body."""
        return self._json("GET", path, params=params)

    def _items(self, path: str, params=None) -> list[dict]:
        return list(self.get(path, params).get("items") or [])

    def list_storage_classes(self):
        """Return all StorageClass objects."""
        return self._items(_STORAGE_CLASSES_PATH)

    def list_pvcs(self, namespace=None, label_selector=None):
        """Return PersistentVolumeClaims, optionally limited to a namespace and labels."""
        if namespace:
            path = f"/api/v1/namespaces/{namespace}/persistentvolumeclaims"
        else:
            path = "/api/v1/persistentvolumeclaims"
        selector = _label_selector(label_selector)
        params = {"labelSelector": selector} if selector else None
        return self._items(path, params)

    def update_pvc(self, pvc):
        """Replace a PersistentVolumeClaim and return the stored object."""
        meta = pvc["metadata"]
        path = f"/api/v1/namespaces/{meta['namespace']}/persistentvolumeclaims/{meta['name']}"
        return self._json("PUT", path, body=pvc)

    def list_nodes(self):
        """Return all Node objects."""
        return self._items("/api/v1/nodes")

    def node_metrics(self, node_name):
        """Return the kubelet metrics text of a node, fetched through the API server proxy."""
        return self._request("GET", f"/api/v1/nodes/{node_name}/proxy/metrics").text

    def record_event(self, obj, event_type, reason, message):
        """Create an Event about an object and return the created Event."""
        meta = obj.get("metadata", {})
        namespace = meta.get("namespace") or "default"
        name = meta.get("name", "")
        now = _timestamp()
        involved = {
            "kind": obj.get("kind", "PersistentVolumeClaim"),
            "apiVersion": obj.get("apiVersion", "v1"),
            "namespace": namespace,
            "name": name,
        }
        for field in ("uid", "resourceVersion"):
            if meta.get(field):
                involved[field] = meta[field]
        event = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {"name": f"{name}.{time.time_ns():x}", "namespace": namespace},
            "involvedObject": involved,
            "reason": reason,
            "message": message,
            "type": event_type,
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        return self._json("POST", f"/api/v1/namespaces/{namespace}/events", body=event)


def in_cluster_client():
    """Build a client from the service account mounted into a pod."""
    host = os.environ.get("KUBERNETES_SERVICE_HOST")
    port = os.environ.get("KUBERNETES_SERVICE_PORT")
    if not host or not port:
        raise ApiError(
            "unable to load in-cluster configuration, "
            "KUBERNETES_SERVICE_HOST and KUBERNETES_SERVICE_PORT must be defined"
        )
    if ":" in host:
        host = f"[{host}]"
    try:
        with open(_TOKEN_FILE, encoding="utf-8") as handle:
            token = handle.read().strip()
    except OSError as exc:
        raise ApiError(f"unable to read service account token: {exc}") from exc
    ca_file = _CA_FILE if os.path.exists(_CA_FILE) else None
    return KubeClient(f"https://{host}:{port}", token=token, ca_file=ca_file)