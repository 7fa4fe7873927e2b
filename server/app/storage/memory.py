"""Memory storage backend implementation.

In-memory implementation of the MeteringStore protocol for testing
and development purposes. Data is not persisted across restarts.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Optional

import structlog

from server.app.models import (
    Model,
    Provider,
    ResponseCacheEntry,
    UsageLogEntry,
    UserAIPreferences,
)

logger = structlog.get_logger(__name__)


class MemoryMeteringStore:
    """In-memory metering store.

    Stores all data in memory. Suitable for testing and development.
    Data is lost when the process exits.
    """

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}
        self._models: dict[str, Model] = {}
        self._affinity: dict[tuple[str, str], float] = {}
        self._preferences: dict[str, UserAIPreferences] = {}
        self._cache: dict[str, ResponseCacheEntry] = {}
        self._usage: list[UsageLogEntry] = []
        self._balances: dict[str, int] = {}

    async def initialize(self) -> None:
        """Initialize the backend (no-op for memory)."""
        logger.info("Memory metering store initialized")

    async def close(self) -> None:
        """Drop all data."""
        self._providers.clear()
        self._models.clear()
        self._affinity.clear()
        self._preferences.clear()
        self._cache.clear()
        self._usage.clear()
        self._balances.clear()
        logger.debug("Memory metering store closed")

    # Catalog operations
    async def get_provider(self, provider_id: str) -> Optional[Provider]:
        """Get a provider by catalog ID."""
        return self._providers.get(provider_id)

    async def list_providers(self, active_only: bool = True) -> list[Provider]:
        """List providers ordered by priority (highest first)."""
        providers = [p for p in self._providers.values() if p.is_active or not active_only]
        return sorted(providers, key=lambda p: p.priority, reverse=True)

    async def get_model(self, model_id: str) -> Optional[Model]:
        """Get a model by catalog ID."""
        return self._models.get(model_id)

    async def list_models(
        self,
        provider_id: Optional[str] = None,
        active_only: bool = True,
    ) -> list[Model]:
        """List models, optionally restricted to one provider."""
        return [
            m
            for m in self._models.values()
            if (m.is_active or not active_only)
            and (provider_id is None or m.provider_id == provider_id)
        ]

    async def find_model(self, provider_name: str, vendor_model_id: str) -> Optional[Model]:
        """Find the catalog model for a provider tag and vendor model identifier."""
        for model in self._models.values():
            provider = self._providers.get(model.provider_id)
            if (
                provider is not None
                and provider.is_active
                and provider.name == provider_name
                and model.model_id == vendor_model_id
            ):
                return model
        return None

    async def task_affinity(self, task_type: str, user_id: Optional[str]) -> dict[str, float]:
        """Score models by explicit affinity, else by capability tags."""
        scores: dict[str, float] = {}
        for model in self._models.values():
            explicit = self._affinity.get((task_type, model.id))
            if explicit is not None:
                scores[model.id] = explicit
            elif task_type in model.capabilities:
                scores[model.id] = 1.0
        return scores

    async def set_task_affinity(self, task_type: str, model_id: str, score: float) -> None:
        """Pin an explicit affinity score for a (task type, model) pair."""
        self._affinity[(task_type, model_id)] = score

    async def upsert_provider(self, provider: Provider) -> None:
        """Create or replace a provider."""
        self._providers[provider.id] = provider

    async def upsert_model(self, model: Model) -> None:
        """Create or replace a model."""
        self._models[model.id] = model

    # Preference operations
    async def get_user_preferences(self, user_id: str) -> Optional[UserAIPreferences]:
        """Get a user's preferences."""
        prefs = self._preferences.get(user_id)
        return replace(prefs) if prefs else None

    async def upsert_user_preferences(self, preferences: UserAIPreferences) -> UserAIPreferences:
        """Create or replace a user's preferences."""
        self._preferences[preferences.user_id] = replace(preferences)
        return preferences

    # Cache operations
    async def fetch_cached_response(
        self, prompt_hash: str, now: datetime
    ) -> Optional[ResponseCacheEntry]:
        """Return the unexpired entry and bump its hit statistics."""
        entry = self._cache.get(prompt_hash)
        if entry is None or entry.is_expired(now):
            return None
        entry.hit_count += 1
        entry.last_used_at = now
        return replace(entry)

    async def save_cached_response(self, entry: ResponseCacheEntry) -> None:
        """Create or replace the entry for entry.prompt_hash."""
        self._cache[entry.prompt_hash] = replace(entry)

    # Usage operations
    async def append_usage(self, entry: UsageLogEntry) -> None:
        """Append a usage record."""
        self._usage.append(entry)

    async def list_usage(
        self, user_id: str, since: Optional[datetime] = None
    ) -> list[UsageLogEntry]:
        """List a user's usage records, oldest first."""
        return [
            e
            for e in self._usage
            if e.user_id == user_id and (since is None or e.created_at >= since)
        ]

    # Balance operations
    async def get_token_balance(self, user_id: str) -> Optional[int]:
        """Get a user's balance."""
        return self._balances.get(user_id)

    async def set_token_balance(self, user_id: str, balance: int) -> None:
        """Set a user's balance."""
        self._balances[user_id] = balance

    async def consume_tokens(
        self,
        user_id: str,
        tokens: int,
        model_used: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> int:
        """Deduct balance units and return the new balance."""
        balance = max(0, self._balances.get(user_id, 0) - tokens)
        self._balances[user_id] = balance
        logger.debug(
            "Tokens consumed (memory)",
            user_id=user_id,
            tokens=tokens,
            model_used=model_used,
            balance=balance,
        )
        return balance
