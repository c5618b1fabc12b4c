"""OpenTelemetry metrics instruments for calendar sync runs.

Instruments
-----------
  cardsync.sync.actions_total     Counter  (label: action)
      Per-record sync outcomes: created, updated, unchanged, relinked,
      recreated, deleted, deduplicated, error.

  cardsync.sync.run_duration_ms   Histogram (label: ok)
      End-to-end duration of one reconciliation run.

Call ``init_metrics(service_name)`` once on startup. When
OTEL_EXPORTER_OTLP_ENDPOINT is not set the global no-op MeterProvider is used
and every recording is silent.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "cardsync"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics, exporting over OTLP gRPC when configured."""
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


def _sync_actions_total() -> metrics.Counter:
    """Counter: per-record sync outcomes (label: action)."""
    return get_meter().create_counter(
        name="cardsync.sync.actions_total",
        description="Total per-record calendar sync outcomes",
        unit="records",
    )


def _sync_run_duration_ms() -> metrics.Histogram:
    """Histogram: reconciliation run duration in milliseconds."""
    return get_meter().create_histogram(
        name="cardsync.sync.run_duration_ms",
        description="End-to-end calendar sync run duration in milliseconds",
        unit="ms",
    )


class SyncMetrics:
    """Lazily-created sync instruments.

    Safe to construct before ``init_metrics``; recordings are no-ops until a
    real provider is installed.
    """

    def __init__(self) -> None:
        self._actions_total: metrics.Counter | None = None
        self._run_duration_ms: metrics.Histogram | None = None

    def record_actions(self, counts: dict[str, int]) -> None:
        if self._actions_total is None:
            self._actions_total = _sync_actions_total()
        for action, amount in counts.items():
            if amount > 0:
                self._actions_total.add(amount, {"action": action})

    def record_run_duration(self, duration_ms: float, *, ok: bool) -> None:
        if self._run_duration_ms is None:
            self._run_duration_ms = _sync_run_duration_ms()
        self._run_duration_ms.record(duration_ms, {"ok": str(ok).lower()})
