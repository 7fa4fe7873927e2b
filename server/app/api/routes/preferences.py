"""User AI preference routes."""

from __future__ import annotations

from dataclasses import replace

import structlog
from fastapi import APIRouter, Depends

from server.app.api.auth import get_current_user_id
from server.app.api.dependencies import get_store
from server.app.api.models import PreferencesResponse, PreferencesUpdate
from server.app.exceptions import ValidationError
from server.app.llm.providers import parse_provider
from server.app.models import UserAIPreferences, utcnow
from server.app.storage.backend import MeteringStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/preferences", tags=["preferences"])


@router.get("", response_model=PreferencesResponse)
async def get_preferences(
    user_id: str = Depends(get_current_user_id),
    store: MeteringStore = Depends(get_store),
) -> PreferencesResponse:
    """Get the caller's preferences (defaults if never saved)."""
    preferences = await store.get_user_preferences(user_id)
    return PreferencesResponse.from_core(preferences or UserAIPreferences(user_id=user_id))


@router.put("", response_model=PreferencesResponse)
async def update_preferences(
    update: PreferencesUpdate,
    user_id: str = Depends(get_current_user_id),
    store: MeteringStore = Depends(get_store),
) -> PreferencesResponse:
    """Update the caller's preferences.

    A pinned model must exist in the catalog.
    """
    changes = update.model_dump(exclude_unset=True)

    if changes.get("preferred_provider") is not None:
        provider = parse_provider(changes["preferred_provider"])
        if provider is None:
            raise ValidationError("preferred_provider", "Unknown provider")
        changes["preferred_provider"] = provider.value

    if changes.get("preferred_model_id"):
        if await store.get_model(changes["preferred_model_id"]) is None:
            raise ValidationError("preferred_model_id", "Unknown model")

    current = await store.get_user_preferences(user_id) or UserAIPreferences(user_id=user_id)
    updated = replace(current, **changes, updated_at=utcnow())
    saved = await store.upsert_user_preferences(updated)

    logger.info("Preferences updated", user_id=user_id, fields=sorted(changes))
    return PreferencesResponse.from_core(saved)
