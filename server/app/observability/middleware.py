"""FastAPI middleware for request correlation."""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

import structlog
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from server.app.observability import REQUEST_COUNT, REQUEST_DURATION

if TYPE_CHECKING:
    from fastapi import Request
    from starlette.middleware.base import RequestResponseEndpoint
    from starlette.responses import Response

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Binds a request ID to the logging context and records request metrics.

    The ID is taken from the incoming X-Request-ID header when present and
    echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Process HTTP request with correlation context."""
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        current_span = trace.get_current_span()
        current_span.set_attribute("http.request.id", request_id)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            current_span.record_exception(e)
            current_span.set_status(trace.Status(trace.StatusCode.ERROR, description=str(e)))
            logger.error(
                "HTTP request failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
            )
            raise
        finally:
            structlog.contextvars.clear_contextvars()

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        REQUEST_COUNT.labels(
            method=request.method, endpoint=endpoint, status=str(response.status_code)
        ).inc()
        REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(
            time.perf_counter() - start
        )

        current_span.set_attribute("http.response.status_code", response.status_code)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
