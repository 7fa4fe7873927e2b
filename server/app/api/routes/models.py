"""Model catalog API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from server.app.api.auth import get_current_user_id
from server.app.api.dependencies import get_services
from server.app.api.models import ModelInfo, ModelList
from server.app.container import AppServices

router = APIRouter(prefix="/models", tags=["models"])


@router.get("", response_model=ModelList)
async def list_models(
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> ModelList:
    """List the models a chat turn can currently run on.

    Only active models of active providers with a configured credential are
    returned, ordered by provider priority.
    """
    models: list[ModelInfo] = []
    for provider in await services.store.list_providers(active_only=True):
        if not services.registry.is_available(provider.name):
            continue
        for model in await services.store.list_models(provider_id=provider.id, active_only=True):
            models.append(ModelInfo.from_core(model, provider))
    return ModelList(models=models)
