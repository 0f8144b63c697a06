import json
from urllib.parse import parse_qs, urlsplit

import pytest
import responses

from pvcautoresizer.kube import ApiError
from pvcautoresizer.metrics import METRICS_CLIENT_FAIL_TOTAL
from pvcautoresizer.sources import (
    KubeletMetricsClient,
    MetricsClient,
    MetricsSourceError,
    NamespacedName,
    PrometheusClient,
    VolumeStats,
    parse_text_metrics,
    pvc_usage_from_families,
)

PROM = "http://prometheus.example.com:9090"


@pytest.fixture
def mocked():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


def _vector(series):
    return {
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [
                {
                    "metric": {"namespace": ns, "persistentvolumeclaim": name},
                    "value": [1700000000.0, str(value)],
                }
                for ns, name, value in series
            ],
        },
    }


def _prom_callback(answers):
    def callback(request):
        query = parse_qs(urlsplit(request.url).query)["query"][0]
        return 200, {"Content-Type": "application/json"}, json.dumps(answers[query])

    return callback


def _kubelet_text(ns, name, available, capacity, inodes_free, inodes):
    lines = []
    for metric, value in (
        ("kubelet_volume_stats_available_bytes", available),
        ("kubelet_volume_stats_capacity_bytes", capacity),
        ("kubelet_volume_stats_inodes_free", inodes_free),
        ("kubelet_volume_stats_inodes", inodes),
    ):
        lines.append(f"# HELP {metric} help")
        lines.append(f"# TYPE {metric} gauge")
        lines.append(f'{metric}{{namespace="{ns}",persistentvolumeclaim="{name}"}} {value}')
    return "\n".join(lines) + "\n"


class _FakeApi:
    def __init__(self, node_texts, failing=()):
        self.node_texts = node_texts
        self.failing = set(failing)

    def list_nodes(self):
        return [{"metadata": {"name": name}} for name in self.node_texts]

    def node_metrics(self, node_name):
        if node_name in self.failing:
            raise ApiError("boom", 500)
        return self.node_texts[node_name]


def test_prometheus_not_found_fails_and_counts(mocked):
    mocked.add(responses.GET, f"{PROM}/api/v1/query", body="404 page not found", status=404)
    before = METRICS_CLIENT_FAIL_TOTAL.value()
    client = PrometheusClient(PROM)
    with pytest.raises(MetricsSourceError):
        client.get_metrics()
    assert METRICS_CLIENT_FAIL_TOTAL.value() > before


def test_prometheus_returns_only_complete_series(mocked):
    answers = {
        "kubelet_volume_stats_available_bytes": _vector([("default", "a", 5), ("default", "b", 7)]),
        "kubelet_volume_stats_capacity_bytes": _vector([("default", "a", 10), ("default", "b", 20)]),
        "kubelet_volume_stats_inodes_free": _vector([("default", "a", 90)]),
        "kubelet_volume_stats_inodes": _vector([("default", "a", 100), ("default", "b", 100)]),
    }
    mocked.add_callback(responses.GET, f"{PROM}/api/v1/query", callback=_prom_callback(answers))
    result = PrometheusClient(PROM).get_metrics()
    assert result == {NamespacedName("default", "a"): VolumeStats(5, 10, 90, 100)}


def test_prometheus_truncates_float_values(mocked):
    answers = {
        name: _vector([("ns", "p", value)])
        for name, value in (
            ("kubelet_volume_stats_available_bytes", "5.9"),
            ("kubelet_volume_stats_capacity_bytes", "10"),
            ("kubelet_volume_stats_inodes_free", "1e3"),
            ("kubelet_volume_stats_inodes", "2000"),
        )
    }
    mocked.add_callback(responses.GET, f"{PROM}/api/v1/query", callback=_prom_callback(answers))
    result = PrometheusClient(PROM).get_metrics()
    assert result[NamespacedName("ns", "p")] == VolumeStats(5, 10, 1000, 2000)


def test_prometheus_non_vector_result_is_an_error_without_counting(mocked):
    mocked.add(
        responses.GET,
        f"{PROM}/api/v1/query",
        json={"status": "success", "data": {"resultType": "scalar", "result": [0, "1"]}},
    )
    before = METRICS_CLIENT_FAIL_TOTAL.value()
    with pytest.raises(MetricsSourceError, match="unknown response type: scalar"):
        PrometheusClient(PROM).get_metrics()
    assert METRICS_CLIENT_FAIL_TOTAL.value() == before


def test_prometheus_error_status_reports_message(mocked):
    mocked.add(
        responses.GET,
        f"{PROM}/api/v1/query",
        json={"status": "error", "errorType": "bad_data", "error": "parse error"},
        status=400,
    )
    with pytest.raises(MetricsSourceError, match="parse error"):
        PrometheusClient(PROM).get_metrics()


def test_parse_text_metrics_reads_labels_and_types():
    text = (
        "# HELP kubelet_volume_stats_inodes inodes\n"
        "# TYPE kubelet_volume_stats_inodes gauge\n"
        'kubelet_volume_stats_inodes{namespace="ns",persistentvolumeclaim="a\\"b"} 42 1700000000\n'
        "other_metric 3.5\n"
    )
    families = parse_text_metrics(text)
    family = families["kubelet_volume_stats_inodes"]
    assert family.type == "gauge"
    assert family.samples == [({"namespace": "ns", "persistentvolumeclaim": 'a"b'}, 42.0)]
    assert families["other_metric"].type == "untyped"
    assert families["other_metric"].samples == [({}, 3.5)]


@pytest.mark.parametrize("text", ['m{a="x" 1\n', "m\n", "m one\n", "1bad 2\n"])
def test_parse_text_metrics_rejects_malformed_lines(text):
    with pytest.raises(MetricsSourceError):
        parse_text_metrics(text)


def test_pvc_usage_from_families_combines_series():
    families = parse_text_metrics(_kubelet_text("ns", "data", 100, 200, 30, 40))
    assert pvc_usage_from_families(families) == {NamespacedName("ns", "data"): VolumeStats(100, 200, 30, 40)}


def test_pvc_usage_ignores_series_without_available_bytes():
    text = (
        "# TYPE kubelet_volume_stats_capacity_bytes gauge\n"
        'kubelet_volume_stats_capacity_bytes{namespace="ns",persistentvolumeclaim="x"} 10\n'
    )
    assert pvc_usage_from_families(parse_text_metrics(text)) == {}


def test_kubelet_client_merges_nodes():
    api = _FakeApi(
        {
            "n1": _kubelet_text("ns", "a", 1, 2, 3, 4),
            "n2": _kubelet_text("ns", "b", 5, 6, 7, 8),
        }
    )
    result = KubeletMetricsClient(api, max_workers=2).get_metrics()
    assert result == {
        NamespacedName("ns", "a"): VolumeStats(1, 2, 3, 4),
        NamespacedName("ns", "b"): VolumeStats(5, 6, 7, 8),
    }


def test_kubelet_client_node_failure_raises_and_counts():
    api = _FakeApi({"n1": _kubelet_text("ns", "a", 1, 2, 3, 4), "n2": ""}, failing={"n2"})
    before = METRICS_CLIENT_FAIL_TOTAL.value()
    with pytest.raises(MetricsSourceError, match="failed to get stats from kubelet on node n2"):
        KubeletMetricsClient(api).get_metrics()
    assert METRICS_CLIENT_FAIL_TOTAL.value() == before + 1


def test_kubelet_client_bad_body_reports_read_failure():
    api = _FakeApi({"n1": "garbage line here\n"})
    with pytest.raises(MetricsSourceError, match="failed to read response body from kubelet on node n1"):
        KubeletMetricsClient(api).get_metrics()


def test_namespaced_name_str_and_abstract_client():
    assert str(NamespacedName("default", "pvc")) == "default/pvc"
    with pytest.raises(TypeError):
        MetricsClient()