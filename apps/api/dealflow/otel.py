"""Tracing setup.

Spans are no-ops until ``configure_tracing`` (OTLP or console export) or
``attach_memory_exporter`` (tests) installs the SDK tracer provider.
"""

from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter


SERVICE_NAME = "dealflow-api"

_provider: TracerProvider | None = None
_exporters_installed = False


def _provider_for(service_name: str) -> TracerProvider:
    global _provider
    if _provider is None:
        _provider = TracerProvider(
            resource=Resource.create(
                {"service.name": service_name, "service.version": os.getenv("APP_VERSION", "0.1.0")}
            )
        )
        trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(service_name: str = SERVICE_NAME) -> TracerProvider:
    """Install exporters named by OTEL_EXPORTER_OTLP_ENDPOINT / OTEL_CONSOLE_EXPORTER, once."""
    global _exporters_installed
    provider = _provider_for(service_name)
    if _exporters_installed:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_installed = True
    return provider


def attach_memory_exporter(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def tag_correlation_id(span: Any, scope: dict[str, Any]) -> None:
    """FastAPI server request hook: copy the inbound correlation header onto the server span."""
    if span is None or not span.is_recording():
        return
    for key, value in scope.get("headers", []):
        if key == b"x-correlation-id":
            span.set_attribute("correlation_id", value.decode("latin-1"))
            return
