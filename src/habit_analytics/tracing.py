"""OpenTelemetry tracing for the analysis pass and event delivery.

Spans are created through ``trace.get_tracer`` in each module; this module
only installs the provider and moves trace context in and out of events.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

import structlog
from opentelemetry import propagate, trace
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from .config import TracingSettings
from .types import TraceContextCarrier

logger = structlog.get_logger(__name__)

_provider: TracerProvider | None = None


def setup_tracing(settings: TracingSettings, version: str = "unknown") -> bool:
    """Install an OTLP-exporting tracer provider.

    Honors ``OTEL_TRACES_EXPORTER=none`` so tracing can be switched off
    without touching the service settings.

    Returns:
        True if tracing was configured, False otherwise.
    """
    global _provider

    if not settings.enabled:
        logger.info("tracing_disabled")
        return False

    exporter_name = os.getenv("OTEL_TRACES_EXPORTER", "otlp").lower()
    if exporter_name in {"none", ""}:
        logger.info("tracing_exporter_disabled")
        return False

    resource = Resource.create(
        {"service.name": settings.service_name, "service.version": version}
    )
    _provider = TracerProvider(resource=resource)
    _provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    trace.set_tracer_provider(_provider)
    logger.info(
        "tracing_configured",
        exporter=exporter_name,
        service_name=settings.service_name,
        version=version,
    )
    return True


def shutdown_tracing() -> None:
    """Flush pending spans. No-op if tracing was never configured."""
    global _provider

    if _provider is None:
        return
    _provider.shutdown()
    _provider = None
    logger.info("tracing_shutdown")


def inject_trace_context() -> TraceContextCarrier:
    """Capture the current trace context for an outbound event.

    Empty when no span is active.
    """
    carrier: TraceContextCarrier = {}
    propagate.inject(carrier)
    return carrier


def extract_trace_context(carrier: Mapping[str, str] | None) -> Context | None:
    """Rebuild the context an event was enqueued under."""
    if not carrier:
        return None
    return propagate.extract(carrier)
