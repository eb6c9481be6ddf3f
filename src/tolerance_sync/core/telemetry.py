"""OpenTelemetry tracing for the sync engine.

Spans are opened around listener attachment (``sync.attach``), optimistic
writes (``sync.write``) and timer sweeps (``timers.tick``).  Without
``OTEL_EXPORTER_OTLP_ENDPOINT`` the global no-op provider stays installed and
those spans cost nothing.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "tolerance_sync"
ROOM_ATTRIBUTE = "tolerance.room_id"

_provider: TracerProvider | None = None


def _exporting_provider(service_name: str, endpoint: str) -> TracerProvider:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    return provider


def init_telemetry(service_name: str) -> trace.Tracer:
    """Install an OTLP-exporting provider once per process, when configured.

    Later calls, and calls without an endpoint, leave the current global
    provider untouched.
    """
    global _provider

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
    elif _provider is None:
        _provider = _exporting_provider(service_name, endpoint)
        trace.set_tracer_provider(_provider)
        logger.info("Tracing %s to %s", service_name, endpoint)
    return get_tracer()


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(_TRACER_NAME)


def tag_room_span(span: trace.Span, room_id: str | None) -> None:
    if room_id:
        span.set_attribute(ROOM_ATTRIBUTE, room_id)
