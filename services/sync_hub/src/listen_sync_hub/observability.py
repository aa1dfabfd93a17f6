"""Observability setup for the relay hub (OTEL and Prometheus)."""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes"}


def _flag(name: str) -> bool:
    return os.environ.get(name, "false").lower() in _TRUTHY


def setup_observability(app: FastAPI, *, service_name: str) -> None:
    if _flag("ENABLE_OTEL"):
        try:
            _enable_tracing(app, service_name)
        except ImportError as exc:
            logger.warning("Tracing requested but OpenTelemetry is unavailable: %s", exc)
    if _flag("ENABLE_METRICS"):
        try:
            _enable_metrics(app)
        except ImportError as exc:
            logger.warning("Metrics requested but the Prometheus instrumentator is unavailable: %s", exc)


def _enable_tracing(app: FastAPI, service_name: str) -> None:
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT") or "http://localhost:4318"
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces")
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)


def _enable_metrics(app: FastAPI) -> None:
    from prometheus_fastapi_instrumentator import Instrumentator

    Instrumentator().instrument(app).expose(app)
