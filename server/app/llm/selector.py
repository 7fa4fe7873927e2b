"""Model selection for chat turns.

Picks the catalog model a turn should run on, honouring a user's pinned
model when auto-selection is off and otherwise ranking the active catalog.
"""

from __future__ import annotations

from typing import Optional

import structlog

from server.app.models import Model, Provider, TaskType, UserAIPreferences
from server.app.storage.backend import CatalogStore, PreferenceStore

logger = structlog.get_logger(__name__)


class ModelSelector:
    """Chooses the best model for a (task type, user) pair.

    Ranking order: provider priority (highest first), then task affinity
    (highest first), then cost multiplier (lowest first).

    Lookup failures never reach the caller. A failed preference read falls
    back to ranking, a failed affinity read ranks with zero affinity, and a
    failed catalog read yields no model.
    """

    def __init__(self, catalog: CatalogStore, preferences: PreferenceStore) -> None:
        self._catalog = catalog
        self._preferences = preferences

    async def select_best_model(
        self,
        task_type: TaskType | str,
        user_id: str,
        preferences: Optional[UserAIPreferences] = None,
    ) -> Optional[Model]:
        """Select a model for a chat turn.

        Args:
            task_type: Intent of the turn.
            user_id: Requesting user.
            preferences: Preferences already loaded for this turn. Read from
                the store when omitted.

        Returns:
            The chosen catalog model, or None if nothing qualifies.
        """
        task = task_type.value if isinstance(task_type, TaskType) else str(task_type)

        if preferences is None:
            preferences = await self._load_preferences(user_id)

        if (
            preferences is not None
            and not preferences.enable_auto_selection
            and preferences.preferred_model_id
        ):
            pinned = await self._resolve_pinned(preferences.preferred_model_id)
            if pinned is not None:
                logger.debug("Using pinned model", user_id=user_id, model_id=pinned.id)
                return pinned
            logger.warning(
                "Pinned model unavailable, ranking catalog",
                user_id=user_id,
                model_id=preferences.preferred_model_id,
            )

        return await self._rank(task, user_id)

    async def _load_preferences(self, user_id: str) -> Optional[UserAIPreferences]:
        try:
            return await self._preferences.get_user_preferences(user_id)
        except Exception as e:
            logger.warning("Preference lookup failed", user_id=user_id, error=str(e))
            return None

    async def _resolve_pinned(self, model_id: str) -> Optional[Model]:
        try:
            model = await self._catalog.get_model(model_id)
            if model is None or not model.is_active:
                return None
            provider = await self._catalog.get_provider(model.provider_id)
        except Exception as e:
            logger.warning("Pinned model lookup failed", model_id=model_id, error=str(e))
            return None
        if provider is None or not provider.is_active:
            return None
        return model

    async def _rank(self, task_type: str, user_id: str) -> Optional[Model]:
        try:
            providers = {p.id: p for p in await self._catalog.list_providers(active_only=True)}
            models = [
                m
                for m in await self._catalog.list_models(active_only=True)
                if m.provider_id in providers
            ]
        except Exception as e:
            logger.warning("Catalog lookup failed", error=str(e))
            return None

        if not models:
            logger.info("No active models in catalog", task_type=task_type)
            return None

        try:
            affinity = await self._catalog.task_affinity(task_type, user_id)
        except Exception as e:
            logger.warning("Task affinity lookup failed", task_type=task_type, error=str(e))
            affinity = {}

        def rank_key(model: Model) -> tuple[int, float, float]:
            provider: Provider = providers[model.provider_id]
            return (-provider.priority, -affinity.get(model.id, 0.0), model.cost_multiplier)

        best = min(models, key=rank_key)
        logger.debug(
            "Model selected",
            task_type=task_type,
            model_id=best.id,
            provider=providers[best.provider_id].name,
            candidates=len(models),
        )
        return best
