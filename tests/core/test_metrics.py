"""Tests for the sync metrics instruments."""

from __future__ import annotations

from typing import Any

import pytest
from opentelemetry import metrics
from opentelemetry.metrics import _internal as _metrics_internal
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.util._once import Once

from cardsync.core.metrics import SyncMetrics, init_metrics

pytestmark = pytest.mark.unit


def _reset_metrics_global_state() -> None:
    """Allow ``set_meter_provider`` to be called again in this process."""
    _metrics_internal._METER_PROVIDER_SET_ONCE = Once()
    _metrics_internal._METER_PROVIDER = None


@pytest.fixture
def reader():
    _reset_metrics_global_state()
    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    metrics.set_meter_provider(provider)
    yield reader
    provider.shutdown()
    _reset_metrics_global_state()


def _collect(reader: InMemoryMetricReader) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for rm in reader.get_metrics_data().resource_metrics:
        for sm in rm.scope_metrics:
            for metric in sm.metrics:
                result[metric.name] = metric.data.data_points
    return result


def test_init_metrics_without_endpoint(monkeypatch):
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    assert init_metrics("cardsync") is not None


def test_record_actions_skips_zero_counts(reader):
    SyncMetrics().record_actions({"created": 2, "updated": 0, "errors": 1})

    points = _collect(reader)["cardsync.sync.actions_total"]
    by_action = {point.attributes["action"]: point.value for point in points}
    assert by_action == {"created": 2, "errors": 1}


def test_record_run_duration(reader):
    SyncMetrics().record_run_duration(125, ok=False)

    points = list(_collect(reader)["cardsync.sync.run_duration_ms"])
    assert dict(points[0].attributes) == {"ok": "false"}
    assert points[0].sum == 125
