from __future__ import annotations

import os
import re
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from app.middleware.correlation_id import is_acceptable_correlation_id


_configured = False
_provider: TracerProvider | None = None


def _get_or_create_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": os.getenv("APP_VERSION", "0.1.0"),
        }
    )
    _provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    """Install the process tracer provider and its exporters once.

    OTLP export is enabled by ``OTEL_EXPORTER_OTLP_ENDPOINT``; console export
    by ``OTEL_CONSOLE_EXPORTER=true``.
    """
    global _configured

    if not enable:
        return None

    provider = _get_or_create_provider(service_name)
    if _configured:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider


def setup_inmemory_otel(service_name: str = "api") -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


CRM_PATH_PATTERN = re.compile(
    r"^/api/crm/(?P<resource>pipelines|deals)/(?P<entity_id>[0-9a-fA-F]{8}-[0-9a-fA-F-]{27})(?:/|$)"
)
CRM_SPAN_ATTRIBUTES = {"pipelines": "crm.pipeline_id", "deals": "crm.deal_id"}


def crm_span_attributes(path: str, headers: dict[bytes, bytes]) -> dict[str, str]:
    """Span attributes that tie a server span to the tenant and the CRM record it touches."""
    attributes: dict[str, str] = {}
    correlation_id = headers.get(b"x-correlation-id", b"").decode("utf-8", "replace")
    if is_acceptable_correlation_id(correlation_id):
        attributes["correlation_id"] = correlation_id
    company_id = headers.get(b"x-company-id", b"").decode("utf-8", "replace").strip()
    if company_id:
        attributes["company_id"] = company_id
    match = CRM_PATH_PATTERN.match(path)
    if match is not None:
        attributes[CRM_SPAN_ATTRIBUTES[match.group("resource")]] = match.group("entity_id").lower()
        if path.endswith("/stage"):
            attributes["crm.operation"] = "deal.change_stage"
    return attributes


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        for key, value in crm_span_attributes(scope.get("path", ""), headers).items():
            span.set_attribute(key, value)

    return server_request_hook
