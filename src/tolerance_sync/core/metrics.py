"""OpenTelemetry metrics instruments for the sync engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during daemon startup.  When
OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global no-op MeterProvider is used
and all recordings are silent no-ops.

Instruments
-----------
  tolerance.sync.remote_writes_total       Counter  (label: outcome=ok|failed)
  tolerance.sync.rollbacks_total           Counter
  tolerance.sync.snapshots_applied_total   Counter  (label: resource)
  tolerance.sync.malformed_records_total   Counter  (label: resource)
  tolerance.timers.started_total           Counter
  tolerance.timers.notifications_scheduled_total  Counter

All instruments carry a ``service`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "tolerance_sync"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the sync daemon.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
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
    """Return a Meter from the current global provider."""
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Convenience wrapper around the sync engine counters.

    Instruments are created on first use, so it is safe to construct this
    object before ``init_metrics`` is called.
    """

    def __init__(self, service: str = "tolerance-sync") -> None:
        self._attrs = {"service": service}
        self._counters: dict[str, metrics.Counter] = {}

    def _counter(self, name: str, description: str, unit: str) -> metrics.Counter:
        counter = self._counters.get(name)
        if counter is None:
            counter = get_meter().create_counter(name=name, description=description, unit=unit)
            self._counters[name] = counter
        return counter

    def remote_write(self, *, ok: bool) -> None:
        self._counter(
            "tolerance.sync.remote_writes_total",
            "Remote write attempts by final outcome",
            "writes",
        ).add(1, {**self._attrs, "outcome": "ok" if ok else "failed"})

    def rollback(self) -> None:
        self._counter(
            "tolerance.sync.rollbacks_total",
            "Optimistic mutations reverted after a failed remote write",
            "mutations",
        ).add(1, self._attrs)

    def snapshot_applied(self, resource: str) -> None:
        self._counter(
            "tolerance.sync.snapshots_applied_total",
            "Remote listener snapshots merged into the entity store",
            "snapshots",
        ).add(1, {**self._attrs, "resource": resource})

    def malformed_records(self, resource: str, count: int) -> None:
        if count <= 0:
            return
        self._counter(
            "tolerance.sync.malformed_records_total",
            "Remote records skipped because they failed validation",
            "records",
        ).add(count, {**self._attrs, "resource": resource})

    def timer_started(self) -> None:
        self._counter(
            "tolerance.timers.started_total",
            "Treatment timers started",
            "timers",
        ).add(1, self._attrs)

    def notifications_scheduled(self, count: int) -> None:
        if count <= 0:
            return
        self._counter(
            "tolerance.timers.notifications_scheduled_total",
            "Timer notifications handed to the notification port",
            "notifications",
        ).add(count, self._attrs)
