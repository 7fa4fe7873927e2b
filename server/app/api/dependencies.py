"""FastAPI dependencies resolving the application services."""

from __future__ import annotations

from fastapi import Request

from server.app.container import AppServices
from server.app.llm.orchestrator import StreamingOrchestrator
from server.app.settings import Settings
from server.app.storage.backend import MeteringStore


def get_services(request: Request) -> AppServices:
    """Services built during application startup."""
    return request.app.state.services


def get_app_settings(request: Request) -> Settings:
    return get_services(request).settings


def get_store(request: Request) -> MeteringStore:
    return get_services(request).store


def get_orchestrator(request: Request) -> StreamingOrchestrator:
    return get_services(request).orchestrator
