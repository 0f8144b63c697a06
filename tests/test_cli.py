from datetime import timedelta

import pytest

from pvcautoresizer.cli import Config, ConfigError, build_parser, main, parse_config, parse_duration, run


def test_parse_duration_compound():
    assert parse_duration("1h30m") == timedelta(hours=1, minutes=30)


def test_parse_duration_fractional_and_millis():
    assert parse_duration("1.5s") == timedelta(milliseconds=1500)
    assert parse_duration("300ms") == timedelta(milliseconds=300)


def test_parse_duration_equivalent_forms():
    assert parse_duration("90s") == parse_duration("1m30s")
    assert parse_duration("-1m") == -parse_duration("1m")
    assert parse_duration("0") == timedelta(0)


@pytest.mark.parametrize("text", ["", "5", "1x", "-", "m", "1m30"])
def test_parse_duration_rejects_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_defaults():
    config = parse_config([])
    assert config == Config()
    assert config.cert_dir == "/certs"
    assert config.webhook_addr == ":9443"
    assert config.metrics_addr == ":8080"
    assert config.health_addr == ":8081"
    assert config.watch_interval == timedelta(minutes=1)
    assert config.namespaces == []
    assert config.pvc_mutating_webhook_enabled is True


def test_namespaces_accumulate():
    config = parse_config(["--namespaces", "a,b", "--namespaces", "c"])
    assert config.namespaces == ["a", "b", "c"]


def test_boolean_flags():
    config = parse_config(
        ["--pvc-mutating-webhook-enabled=false", "--use-k8s-metrics-api", "--no-annotation-check", "--zap-devel"]
    )
    assert config.pvc_mutating_webhook_enabled is False
    assert config.use_k8s_metrics_api is True
    assert config.skip_annotation is True
    assert config.development is True


def test_interval_and_url():
    config = parse_config(["--interval", "30s", "--prometheus-url", "http://localhost:9090"])
    assert config.watch_interval == parse_duration("30s")
    assert config.prometheus_url == "http://localhost:9090"


def test_invalid_interval_is_usage_error():
    with pytest.raises(SystemExit) as info:
        build_parser().parse_args(["--interval", "bogus"])
    assert info.value.code == 2


def test_run_requires_metrics_source():
    with pytest.raises(ConfigError, match="enable use-k8s-metrics-api or provide prometheus-url"):
        run(Config())


def test_run_rejects_webhook_addr_without_port():
    with pytest.raises(ConfigError, match="invalid webhook addr"):
        run(Config(webhook_addr="localhost", prometheus_url="http://localhost:9090"))


def test_run_rejects_unknown_webhook_port():
    with pytest.raises(ConfigError, match="invalid webhook port"):
        run(Config(webhook_addr="localhost:no-such-service-name", prometheus_url="http://localhost:9090"))


def test_main_reports_error_and_returns_one(capsys):
    assert main(["--webhook-addr", "nope", "--prometheus-url", "http://localhost:9090"]) == 1
    assert "invalid webhook addr" in capsys.readouterr().out