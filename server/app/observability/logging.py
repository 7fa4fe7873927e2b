"""Structured logging setup with OpenTelemetry correlation."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import trace

if TYPE_CHECKING:
    from server.app.settings import Settings


def _add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add OpenTelemetry trace context to log entries.

    Injects trace_id and span_id into every log message so logs can be
    joined with traces.
    """
    span_context = trace.get_current_span().get_span_context()

    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")

    return event_dict


def setup_logging(settings: Settings) -> None:
    """Configure structlog with OpenTelemetry correlation and proper formatting.

    Must be called BEFORE setup_tracing() so that early log messages are captured.

    In production (debug=false) logs are JSON with trace context. In debug
    mode they are rendered for the console with colors.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_trace_context,
        structlog.processors.dict_tracebacks,
    ]
    renderer: Any = (
        structlog.dev.ConsoleRenderer(colors=True)
        if settings.debug
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Standard library logging (uvicorn, httpx, etc.) goes to the same stream
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.get_logger(__name__).info(
        "Logging configured",
        log_level=settings.log_level,
        debug_mode=settings.debug,
    )
