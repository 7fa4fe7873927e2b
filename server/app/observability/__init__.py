"""Observability utilities for Forgebench.

Provides OpenTelemetry tracing and Prometheus metrics collection. Logging
setup lives in :mod:`server.app.observability.logging`.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Counter, Histogram, start_http_server

REQUEST_COUNT = Counter(
    "forgebench_requests_total", "Total HTTP requests", ["method", "endpoint", "status"]
)

REQUEST_DURATION = Histogram(
    "forgebench_request_duration_seconds", "Request duration in seconds", ["method", "endpoint"]
)

CHAT_TURNS = Counter(
    "forgebench_chat_turns_total",
    "Chat turns by outcome",
    ["outcome"],  # completed, cached, failed
)

CACHE_HITS = Counter("forgebench_cache_hits_total", "Chat turns served from the response cache")

FALLBACKS = Counter(
    "forgebench_fallbacks_total", "Chat turns served by a non-primary route", ["provider"]
)

TOKENS_USED = Counter(
    "forgebench_tokens_total", "Tokens consumed", ["provider", "kind"]  # kind: prompt, completion
)

LLM_CALL_DURATION = Histogram(
    "forgebench_llm_call_duration_seconds", "LLM streaming duration per turn", ["provider", "model"]
)


def setup_tracing(
    service_name: str = "forgebench",
    endpoint: str | None = None,
    app: Any | None = None,
    enabled: bool = True,
) -> None:
    """Initialize OpenTelemetry tracing.

    Args:
        service_name: Name of the service for trace identification
        endpoint: OTLP/HTTP endpoint URL (e.g., "http://localhost:4318")
        app: FastAPI application instance to instrument
        enabled: Whether to enable tracing
    """
    logger = structlog.get_logger(__name__)

    if not enabled:
        logger.debug("OpenTelemetry tracing disabled by settings")
        return

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))

    if endpoint:
        if not endpoint.endswith("/v1/traces"):
            endpoint = f"{endpoint.rstrip('/')}/v1/traces"
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)

    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)

    logger.info("Tracing configured", service_name=service_name, endpoint=endpoint)


def setup_metrics(port: int = 9090, enabled: bool = True) -> None:
    """Start Prometheus metrics server.

    Args:
        port: Port to expose metrics on
        enabled: Whether to enable metrics server
    """
    logger = structlog.get_logger(__name__)

    if not enabled:
        logger.debug("Prometheus metrics disabled by settings")
        return

    start_http_server(port)
    logger.info("Metrics server started", port=port)


@contextmanager
def span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[trace.Span]:
    """Context manager for creating a trace span.

    Args:
        name: Span name
        attributes: Span attributes

    Example:
        with span("chat.turn", {"user_id": user_id}):
            ...
    """
    tracer = trace.get_tracer("forgebench")
    with tracer.start_as_current_span(name) as span_obj:
        for key, value in (attributes or {}).items():
            if value is not None:
                span_obj.set_attribute(key, value)
        yield span_obj
