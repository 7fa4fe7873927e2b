"""MeteringStore protocol definition.

Defines the persistence interface the routing and metering layer relies on.
Catalog (providers, models) and user preferences are owned by the backend;
the core only reads them per request. Cache entries and usage records are
created by the core and persisted here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from server.app.models import (
    Model,
    Provider,
    ResponseCacheEntry,
    UsageLogEntry,
    UserAIPreferences,
)


@runtime_checkable
class CatalogStore(Protocol):
    """Protocol for provider/model catalog reads and seeding."""

    async def get_provider(self, provider_id: str) -> Optional[Provider]:
        """Get a provider by catalog ID."""
        ...

    async def list_providers(self, active_only: bool = True) -> list[Provider]:
        """List providers ordered by priority (highest first)."""
        ...

    async def get_model(self, model_id: str) -> Optional[Model]:
        """Get a model by catalog ID."""
        ...

    async def list_models(
        self,
        provider_id: Optional[str] = None,
        active_only: bool = True,
    ) -> list[Model]:
        """List models, optionally restricted to one provider."""
        ...

    async def find_model(self, provider_name: str, vendor_model_id: str) -> Optional[Model]:
        """Find the catalog model for a provider tag and vendor model identifier.

        Only models of active providers are returned.
        """
        ...

    async def task_affinity(self, task_type: str, user_id: Optional[str]) -> dict[str, float]:
        """Score models for a task type.

        Args:
            task_type: Task type value (e.g. 'debugging').
            user_id: Requesting user, for backends that personalize ranking.

        Returns:
            Mapping of catalog model ID to affinity score (higher is better).
            Models not present score zero.
        """
        ...

    async def set_task_affinity(self, task_type: str, model_id: str, score: float) -> None:
        """Pin an explicit affinity score for a (task type, model) pair."""
        ...

    async def upsert_provider(self, provider: Provider) -> None:
        """Create or replace a provider."""
        ...

    async def upsert_model(self, model: Model) -> None:
        """Create or replace a model."""
        ...


@runtime_checkable
class PreferenceStore(Protocol):
    """Protocol for per-user AI preferences."""

    async def get_user_preferences(self, user_id: str) -> Optional[UserAIPreferences]:
        """Get a user's preferences, or None if they never saved any."""
        ...

    async def upsert_user_preferences(self, preferences: UserAIPreferences) -> UserAIPreferences:
        """Create or replace a user's preferences."""
        ...


@runtime_checkable
class CacheStore(Protocol):
    """Protocol for response cache persistence."""

    async def fetch_cached_response(
        self, prompt_hash: str, now: datetime
    ) -> Optional[ResponseCacheEntry]:
        """Return the unexpired entry for a digest and bump its hit statistics.

        The lookup and the hit_count/last_used_at update form one atomic
        operation.
        """
        ...

    async def save_cached_response(self, entry: ResponseCacheEntry) -> None:
        """Create or replace the entry for entry.prompt_hash."""
        ...


@runtime_checkable
class UsageStore(Protocol):
    """Protocol for the append-only usage ledger."""

    async def append_usage(self, entry: UsageLogEntry) -> None:
        """Append a usage record."""
        ...

    async def list_usage(
        self, user_id: str, since: Optional[datetime] = None
    ) -> list[UsageLogEntry]:
        """List a user's usage records, oldest first."""
        ...


@runtime_checkable
class BalanceStore(Protocol):
    """Protocol for prepaid token balances."""

    async def get_token_balance(self, user_id: str) -> Optional[int]:
        """Get a user's balance, or None if the user has no profile."""
        ...

    async def set_token_balance(self, user_id: str, balance: int) -> None:
        """Set a user's balance."""
        ...

    async def consume_tokens(
        self,
        user_id: str,
        tokens: int,
        model_used: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> int:
        """Deduct balance units and return the new balance (never below zero)."""
        ...


@runtime_checkable
class MeteringStore(CatalogStore, PreferenceStore, CacheStore, UsageStore, BalanceStore, Protocol):
    """Unified storage backend protocol.

    Combines all storage capabilities into a single interface that
    backend implementations must provide.
    """

    async def initialize(self) -> None:
        """Initialize the storage backend (create tables, etc.)."""
        ...

    async def close(self) -> None:
        """Close all connections and cleanup resources."""
        ...
