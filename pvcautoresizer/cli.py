"""Command line entry point of the autoresizer controller."""

from __future__ import annotations

import argparse
import logging
import re
import signal
import socket
import sys
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from fractions import Fraction
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from .autoresizer import PVCAutoresizer
from .hooks import PVCMutator, create_webhook_server
from .kube import ApiError, in_cluster_client
from .metrics import REGISTRY
from .sources import KubeletMetricsClient, MetricsSourceError, PrometheusClient

__all__ = ["Config", "ConfigError", "build_parser", "parse_duration", "parse_config", "run", "main"]

setup_log = logging.getLogger("pvcautoresizer.setup")

_LOG_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class ConfigError(ValueError):
    """Raised when the command line configuration cannot be used."""


@dataclass
class Config:
    """Settings of one controller run."""

    cert_dir: str = "/certs"
    webhook_addr: str = ":9443"
    metrics_addr: str = ":8080"
    health_addr: str = ":8081"
    namespaces: list[str] = field(default_factory=list)
    watch_interval: timedelta = timedelta(minutes=1)
    prometheus_url: str = ""
    use_k8s_metrics_api: bool = False
    skip_annotation: bool = False
    development: bool = False
    log_level: str = "info"
    pvc_mutating_webhook_enabled: bool = True


# Microseconds per unit.
_DURATION_UNITS = {
    "ns": Fraction(1, 1000),
    "us": Fraction(1),
    "µs": Fraction(1),
    "μs": Fraction(1),
    "ms": Fraction(1000),
    "s": Fraction(10**6),
    "m": Fraction(60 * 10**6),
    "h": Fraction(3600 * 10**6),
}
_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text):
    """Parse a duration such as ``"1m30s"`` or ``"500ms"`` into a timedelta."""
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f'time: invalid duration "{text}"')
    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        match = _DURATION_RE.match(rest, pos)
        if match is None:
            raise ValueError(f'time: invalid duration "{text}"')
        total += Fraction(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    micros = round(total)
    return timedelta(microseconds=-micros if negative else micros)


def _duration_arg(text: str) -> timedelta:
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _bool_arg(text: str) -> bool:
    if text in ("1", "t", "T", "TRUE", "true", "True"):
        return True
    if text in ("0", "f", "F", "FALSE", "false", "False"):
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {text!r}")


class _StringSlice(argparse.Action):
    """Collects comma separated values; repeated flags accumulate."""

    def __call__(self, parser, namespace, values, option_string=None):
        current = list(getattr(namespace, self.dest, None) or [])
        current.extend(part for part in values.split(",") if part)
        setattr(namespace, self.dest, current)


def _add_bool(parser: argparse.ArgumentParser, flag: str, default: bool, help_text: str) -> None:
    parser.add_argument(flag, type=_bool_arg, nargs="?", const=True, default=default, metavar="BOOL", help=help_text)


def build_parser():
    """Build the argument parser of the controller command."""
    parser = argparse.ArgumentParser(
        prog="pvc-autoresizer",
        description="pvc-autoresizer is an automatic volume resizer that edits PVCs if they have less than "
        "the specified amount of free filesystem capacity.",
    )
    parser.add_argument("--cert-dir", default="/certs", help="webhook certificate directory")
    parser.add_argument("--webhook-addr", default=":9443", help="Listen address for the webhook endpoint")
    parser.add_argument("--metrics-addr", default=":8080", help="The address the metric endpoint binds to.")
    parser.add_argument("--health-addr", default=":8081", help="The address of health/readiness probes.")
    parser.add_argument(
        "--namespaces",
        action=_StringSlice,
        default=None,
        help="Namespaces to resize PersistentVolumeClaims within. Empty for all namespaces.",
    )
    parser.add_argument(
        "--interval", type=_duration_arg, default=timedelta(minutes=1), help="Interval to monitor pvc capacity."
    )
    parser.add_argument("--prometheus-url", default="", help="Prometheus URL to query volume stats.")
    _add_bool(parser, "--use-k8s-metrics-api", False, "Use Kubernetes metrics API instead of Prometheus")
    _add_bool(parser, "--no-annotation-check", False, "Skip annotation check for StorageClass")
    _add_bool(parser, "--development", False, "Use development logger config")
    _add_bool(parser, "--pvc-mutating-webhook-enabled", True, "Enable the pvc mutating webhook endpoint")
    _add_bool(parser, "--zap-devel", False, "Development mode logging")
    parser.add_argument("--zap-log-level", choices=sorted(_LOG_LEVELS), default="info", help="Log level")
    return parser


def parse_config(argv=None):
    """Parse command line arguments into a Config."""
    args = build_parser().parse_args(argv)
    return Config(
        cert_dir=args.cert_dir,
        webhook_addr=args.webhook_addr,
        metrics_addr=args.metrics_addr,
        health_addr=args.health_addr,
        namespaces=list(args.namespaces or []),
        watch_interval=args.interval,
        prometheus_url=args.prometheus_url,
        use_k8s_metrics_api=args.use_k8s_metrics_api,
        skip_annotation=args.no_annotation_check,
        development=args.development or args.zap_devel,
        log_level=args.zap_log_level,
        pvc_mutating_webhook_enabled=args.pvc_mutating_webhook_enabled,
    )


def _split_host_port(address: str, what: str) -> tuple[str, int]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or address[end + 1 : end + 2] != ":":
            raise ConfigError(f"invalid {what} addr: address {address}: missing port in address")
        host, port_text = address[1:end], address[end + 2 :]
    else:
        host, sep, port_text = address.rpartition(":")
        if not sep:
            raise ConfigError(f"invalid {what} addr: address {address}: missing port in address")
        if ":" in host:
            raise ConfigError(f"invalid {what} addr: address {address}: too many colons in address")
    if port_text.isdigit():
        port = int(port_text)
        if port > 65535:
            raise ConfigError(f"invalid {what} port: {port_text}")
        return host, port
    try:
        return host, socket.getservbyname(port_text, "tcp")
    except OSError as exc:
        raise ConfigError(f"invalid {what} port: unknown port tcp/{port_text}") from exc


def _optional_bind(address: str, what: str) -> tuple[str, int] | None:
    if address in ("", "0"):
        return None
    return _split_host_port(address, what)


def _configure_logging(config: Config) -> None:
    if config.development:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s\t%(levelname)s\t%(name)s\t%(filename)s:%(lineno)d\t%(message)s",
            force=True,
        )
    else:
        logging.basicConfig(
            level=_LOG_LEVELS.get(config.log_level, logging.INFO),
            format="%(asctime)s\t%(levelname)s\t%(name)s\t%(message)s",
            force=True,
        )


class _NamespaceScopedClient:
    """Limits PVC listings of a client to a set of namespaces."""

    def __init__(self, client, namespaces):
        self._client = client
        self._namespaces = list(dict.fromkeys(namespaces))

    def __getattr__(self, name):
        return getattr(self._client, name)

    def list_pvcs(self, namespace=None, label_selector=None):
        if namespace:
            if namespace not in self._namespaces:
                return []
            return self._client.list_pvcs(namespace, label_selector)
        return [pvc for ns in self._namespaces for pvc in self._client.list_pvcs(ns, label_selector)]


def _http_server(bind: tuple[str, int], routes: dict) -> ThreadingHTTPServer:
    class _Handler(BaseHTTPRequestHandler):
        def do_GET(self):  # noqa: N802
            route = routes.get(self.path.split("?", 1)[0])
            if route is None:
                status, content_type, body = 404, "text/plain", "404 page not found\n"
            else:
                status, content_type, body = route()
            payload = body.encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format, *args):  # noqa: A002
            setup_log.debug(format, *args)

    return ThreadingHTTPServer(bind, _Handler)


def _metrics_page():
    return 200, "text/plain; version=0.0.4; charset=utf-8", REGISTRY.expose()


def _ok_page():
    return 200, "text/plain; charset=utf-8", "ok"


def _install_signal_handlers(stop: threading.Event) -> None:
    if threading.current_thread() is not threading.main_thread():
        return
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, lambda *_: stop.set())


def run(config):
    """Start the controller and block until a termination signal arrives."""
    _configure_logging(config)

    webhook_bind = None
    if config.pvc_mutating_webhook_enabled:
        webhook_bind = _split_host_port(config.webhook_addr, "webhook")
    if not config.use_k8s_metrics_api and not config.prometheus_url:
        raise ConfigError("enable use-k8s-metrics-api or provide prometheus-url")
    metrics_bind = _optional_bind(config.metrics_addr, "metrics")
    health_bind = _optional_bind(config.health_addr, "health")

    api = in_cluster_client()
    if config.use_k8s_metrics_api:
        metrics_client = KubeletMetricsClient(api)
    else:
        metrics_client = PrometheusClient(config.prometheus_url)

    client = _NamespaceScopedClient(api, config.namespaces) if config.namespaces else api
    resizer = PVCAutoresizer(metrics_client, client, config.watch_interval, config.skip_annotation)

    servers = []
    try:
        if metrics_bind is not None:
            servers.append(_http_server(metrics_bind, {"/metrics": _metrics_page}))
        if health_bind is not None:
            servers.append(_http_server(health_bind, {"/healthz": _ok_page, "/readyz": _ok_page}))
        if webhook_bind is not None:
            host, port = webhook_bind
            servers.append(create_webhook_server(PVCMutator(api), host, port, config.cert_dir))
        for server in servers:
            threading.Thread(target=server.serve_forever, daemon=True).start()

        stop = threading.Event()
        _install_signal_handlers(stop)
        setup_log.info("starting manager")
        resizer.run(stop)
    finally:
        for server in servers:
            server.shutdown()
            server.server_close()
    return 0


def main(argv=None):
    """Run the controller; return the process exit status."""
    config = parse_config(argv)
    try:
        return run(config)
    except (ConfigError, ApiError, MetricsSourceError, OSError, ValueError) as exc:
        setup_log.error("%s", exc)
        print(exc, file=sys.stdout)
        return 1