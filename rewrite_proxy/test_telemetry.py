from fastapi import FastAPI
from prometheus_client import REGISTRY

from rewrite_proxy import telemetry


def _sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def test_record_reload_success_updates_gauges(make_rule):
    before = _sample("rewrite_proxy_rule_reloads_total", {"result": "success"})

    telemetry.record_reload_success(
        [make_rule(name="a"), make_rule(name="b", enabled=False)]
    )

    assert _sample("rewrite_proxy_rules_total") == 2
    assert _sample("rewrite_proxy_rules_enabled") == 1
    assert (
        _sample("rewrite_proxy_rule_reloads_total", {"result": "success"})
        == before + 1
    )


def test_record_reload_failure(make_rule):
    telemetry.record_rules([make_rule()])
    before = _sample("rewrite_proxy_rule_reloads_total", {"result": "failure"})

    telemetry.record_reload_failure(ValueError("bad rules"))

    assert (
        _sample("rewrite_proxy_rule_reloads_total", {"result": "failure"})
        == before + 1
    )
    assert _sample("rewrite_proxy_rules_total") == 1


def test_metrics_endpoint_path_is_configurable():
    app = FastAPI()

    telemetry.instrument_metrics(app, endpoint="/_proxy/metrics")

    paths = [route.path for route in app.routes]
    assert "/_proxy/metrics" in paths
    assert "/metrics" not in paths
