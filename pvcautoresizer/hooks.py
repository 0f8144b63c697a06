"""Mutating admission webhook that sizes new PVCs after their group."""

from __future__ import annotations

import base64
import copy
import json
import logging
import os
import ssl
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from .autoresizer import pvc_storage_limit
from .constants import INITIAL_RESIZE_GROUP_BY_ANNOTATION
from .kube import ApiError
from .quantity import QuantityError, format_quantity, parse_quantity

__all__ = ["AdmissionResponse", "PVCMutator", "json_patch", "create_webhook_server"]

log = logging.getLogger(__name__)

WEBHOOK_PATH = "/pvc/mutate"
_ADMISSION_API_VERSION = "admission.k8s.io/v1"


@dataclass
class AdmissionResponse:
    """The outcome of an admission request."""

    allowed: bool
    code: int = 200
    message: str = ""
    patch: list[dict] | None = None

    def to_review(self, uid, api_version=_ADMISSION_API_VERSION):
        """Wrap the response into an AdmissionReview document."""
        response: dict = {"uid": uid, "allowed": self.allowed}
        if self.message or self.code != 200:
            response["status"] = {"code": self.code, "message": self.message}
        if self.patch:
            response["patchType"] = "JSONPatch"
            response["patch"] = base64.b64encode(json.dumps(self.patch).encode("utf-8")).decode("ascii")
        return {"apiVersion": api_version, "kind": "AdmissionReview", "response": response}


def _errored(code: int, error) -> AdmissionResponse:
    return AdmissionResponse(allowed=False, code=code, message=str(error))


def _escape_pointer(key) -> str:
    return str(key).replace("~", "~0").replace("/", "~1")


def _diff(original, modified, path: str):
    if isinstance(original, dict) and isinstance(modified, dict):
        for key in original.keys() - modified.keys():
            yield {"op": "remove", "path": f"{path}/{_escape_pointer(key)}"}
        for key, value in modified.items():
            child = f"{path}/{_escape_pointer(key)}"
            if key not in original:
                yield {"op": "add", "path": child, "value": copy.deepcopy(value)}
            else:
                yield from _diff(original[key], value, child)
    elif type(original) is not type(modified) or original != modified:
        yield {"op": "replace", "path": path, "value": copy.deepcopy(modified)}


def json_patch(original, modified):
    """Return the JSON Patch operations that turn ``original`` into ``modified``."""
    return list(_diff(original, modified, ""))


def _storage_request(pvc: dict) -> tuple[int, str]:
    text = (((pvc.get("spec") or {}).get("resources") or {}).get("requests") or {}).get("storage")
    if text is None:
        return 0, "0"
    return parse_quantity(str(text)), str(text)


class PVCMutator:
    """Raises the request of a new PVC to the largest request of its group."""

    def __init__(self, api_reader):
        self.api_reader = api_reader

    def handle(self, request):
        """Decide on one admission request (the ``request`` part of an AdmissionReview)."""
        if request.get("operation") != "CREATE":
            return AdmissionResponse(allowed=True, message="not a Create request")
        pvc = request.get("object")
        if not isinstance(pvc, dict):
            return _errored(400, "there is no content to decode")
        meta = pvc.get("metadata") or {}

        group_key = (meta.get("annotations") or {}).get(INITIAL_RESIZE_GROUP_BY_ANNOTATION)
        if not group_key:
            return AdmissionResponse(allowed=True, message="annotation not set")
        group = (meta.get("labels") or {}).get(group_key)
        if not group:
            return _errored(400, f"no value is set to the label key {group_key}")

        try:
            limit = pvc_storage_limit(pvc)
        except QuantityError as exc:
            return _errored(500, exc)
        if limit == 0:
            return AdmissionResponse(
                allowed=True, message="ignore the PVC because it has no storage limit annotation"
            )

        namespace = meta.get("namespace") or request.get("namespace") or ""
        try:
            requested, requested_text = _storage_request(pvc)
            items = self.api_reader.list_pvcs(namespace, {group_key: group})
        except QuantityError as exc:
            return _errored(400, exc)
        except ApiError as exc:
            return _errored(500, exc)

        new_size, new_text = requested, requested_text
        for item in items:
            try:
                size, text = _storage_request(item)
            except QuantityError as exc:
                log.warning("ignoring PVC with an invalid storage request: %s", exc)
                continue
            if size > new_size:
                new_size, new_text = size, text
        if new_size > limit:
            new_size, new_text = limit, format_quantity(limit)
        if new_size == requested:
            return AdmissionResponse(allowed=True, message="PVC request storage size unchanged")

        modified = copy.deepcopy(pvc)
        modified.setdefault("spec", {}).setdefault("resources", {}).setdefault("requests", {})["storage"] = new_text
        log.info(
            "need mutate the PVC size name=%s namespace=%s from-request=%d to-request=%d",
            meta.get("name", ""), namespace, requested, new_size,
        )
        return AdmissionResponse(allowed=True, patch=json_patch(pvc, modified))


def create_webhook_server(mutator, host="", port=9443, cert_dir=None):
    """Build an HTTP(S) server that serves ``mutator`` at the webhook path.

    When ``cert_dir`` is given, TLS is enabled with ``tls.crt`` and ``tls.key``
    from that directory. The caller runs ``serve_forever`` on the result.
    """

    class _Handler(BaseHTTPRequestHandler):
        def _reply(self, status: int, payload: bytes, content_type: str = "application/json") -> None:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def do_POST(self):  # noqa: N802
            if self.path.split("?", 1)[0] != WEBHOOK_PATH:
                self._reply(404, b"404 page not found\n", "text/plain")
                return
            length = int(self.headers.get("Content-Length") or 0)
            try:
                review = json.loads(self.rfile.read(length) or b"null")
                request = review["request"]
                uid = request.get("uid", "")
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                self._reply(400, json.dumps({"error": str(exc)}).encode("utf-8"))
                return
            review_out = mutator.handle(request).to_review(uid, review.get("apiVersion") or _ADMISSION_API_VERSION)
            self._reply(200, json.dumps(review_out).encode("utf-8"))

        def log_message(self, format, *args):  # noqa: A002
            log.debug("webhook: " + format, *args)

    server = ThreadingHTTPServer((host, port), _Handler)
    if cert_dir:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        try:
            context.load_cert_chain(os.path.join(cert_dir, "tls.crt"), os.path.join(cert_dir, "tls.key"))
        except OSError:
            server.server_close()
            raise
        server.socket = context.wrap_socket(server.socket, server_side=True)
    return server