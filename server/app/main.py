"""FastAPI application for the Forgebench routing and metering API."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from server.app.api.models import ErrorResponse, HealthResponse
from server.app.api.routes import chat, models, preferences, usage
from server.app.container import AppServices
from server.app.exceptions import ErrorCode, ForgeError
from server.app.observability import setup_metrics, setup_tracing
from server.app.observability.logging import setup_logging
from server.app.observability.middleware import ObservabilityMiddleware
from server.app.settings import Settings, get_settings
from server.app.storage import create_metering_store

logger = structlog.get_logger(__name__)

VERSION = "0.1.0"

HTTP_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.INSUFFICIENT_BALANCE: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.NO_MODELS_AVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.LENGTH_LIMIT: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.PROVIDER_STREAM_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.PROVIDER_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Builds the metering store and services unless they were injected before
    startup (tests do this).
    """
    settings: Settings = app.state.settings
    owns_store = getattr(app.state, "services", None) is None

    logger.info("Starting Forgebench server", version=VERSION)

    setup_tracing(endpoint=settings.otel_endpoint, app=app, enabled=settings.otel_endpoint is not None)
    setup_metrics(port=settings.metrics_port, enabled=settings.metrics_enabled)

    if owns_store:
        store = create_metering_store(settings)
        await store.initialize()
        app.state.services = AppServices.build(settings, store)

    logger.info(
        "Forgebench server started",
        host=settings.host,
        port=settings.port,
        backend=settings.persistence_backend,
        providers=sorted(app.state.services.registry.list_available_providers()),
    )

    yield

    logger.info("Shutting down Forgebench server")
    if owns_store:
        await app.state.services.store.close()
    logger.info("Forgebench server stopped")


async def forge_error_handler(request: Request, exc: ForgeError) -> JSONResponse:
    """Map domain errors to JSON error responses."""
    status_code = HTTP_STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error("Request failed", path=request.url.path, code=exc.code.value, error=exc.message)

    headers = {"WWW-Authenticate": "Bearer"} if exc.code == ErrorCode.UNAUTHENTICATED else None
    body = ErrorResponse(error=exc.message, code=exc.code.value, details=exc.details)
    return JSONResponse(body.model_dump(), status_code=status_code, headers=headers)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[AppServices] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Application settings; the global instance when omitted.
        services: Prebuilt services. When given, the lifespan does not
            create or close a store.
    """
    settings = settings or (services.settings if services else get_settings())

    app = FastAPI(
        title="Forgebench",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if services is not None:
        app.state.services = services

    app.add_middleware(ObservabilityMiddleware)
    app.add_exception_handler(ForgeError, forge_error_handler)

    app.include_router(chat.router, prefix="/api")
    app.include_router(models.router, prefix="/api")
    app.include_router(preferences.router, prefix="/api")
    app.include_router(usage.router, prefix="/api")

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> JSONResponse:
        """Health check with provider and circuit breaker status."""
        current: AppServices = request.app.state.services
        breakers = current.chain.breaker_states()
        providers = sorted(current.registry.list_available_providers())

        degraded = not providers or any(b["state"] == "OPEN" for b in breakers)
        body = HealthResponse(
            status="degraded" if degraded else "healthy",
            version=VERSION,
            providers=providers,
            circuit_breakers=breakers,
        )
        return JSONResponse(
            body.model_dump(),
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE if degraded else status.HTTP_200_OK,
        )

    return app


def main():
    """Entry point for running the server."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
