import pytest

from entitlement_engine.core.metrics import MetricsRegistry, normalize_path


def test_counter_and_gauge_export():
    registry = MetricsRegistry()
    checks = registry.counter("checks_total", "Checks", ["feature"])
    last_run = registry.gauge("last_run")

    checks.inc(labels={"feature": "exportacion"})
    checks.inc(labels={"feature": "exportacion"}, amount=2)
    last_run.set(1700000000)

    text = registry.export_prometheus()
    assert "# HELP checks_total Checks" in text
    assert 'checks_total{feature="exportacion"} 3.0' in text
    assert "# TYPE last_run gauge" in text
    assert "last_run 1700000000.0" in text


def test_counter_rejects_negative_amount():
    counter = MetricsRegistry().counter("c_total")
    with pytest.raises(ValueError):
        counter.inc(amount=-1)


def test_histogram_buckets_are_cumulative():
    registry = MetricsRegistry()
    latency = registry.histogram("gateway_seconds", label_names=["operation"], buckets=(0.1, 1.0))

    for value in (0.05, 0.5, 3.0):
        latency.observe(value, labels={"operation": "get_outcome"})

    text = registry.export_prometheus()
    assert 'gateway_seconds_bucket{operation="get_outcome",le="0.1"} 1' in text
    assert 'gateway_seconds_bucket{operation="get_outcome",le="1.0"} 2' in text
    assert 'gateway_seconds_bucket{operation="get_outcome",le="+Inf"} 3' in text
    assert 'gateway_seconds_count{operation="get_outcome"} 3' in text
    assert latency.count(labels={"operation": "get_outcome"}) == 3


def test_registry_returns_existing_metric_and_rejects_kind_change():
    registry = MetricsRegistry()
    first = registry.counter("runs_total")
    assert registry.counter("runs_total") is first
    with pytest.raises(ValueError):
        registry.gauge("runs_total")


def test_reset_clears_values():
    registry = MetricsRegistry()
    counter = registry.counter("runs_total")
    counter.inc()
    registry.reset()
    assert counter.value() == 0.0


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/api/billing/subscriptions/42/reinstate", "/api/billing/subscriptions/:id/reinstate"),
        ("/api/entitlements/exportacion", "/api/entitlements/exportacion"),
        ("/api/billing/charges/cs_test_a1b2", "/api/billing/charges/:id"),
        ("/", "/"),
    ],
)
def test_normalize_path(path, expected):
    assert normalize_path(path) == expected
