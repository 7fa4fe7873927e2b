"""Pydantic models for REST API.

API request/response models using Pydantic.
These wrap the core domain records from server.app.models.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from server.app.llm.usage_ledger import UsageSummary
from server.app.models import ChatMessage, Model, Provider, TaskType, UserAIPreferences

# ============================================================================
# Chat Models
# ============================================================================


class ChatMessageIn(BaseModel):
    """One conversation turn."""

    role: Literal["user", "assistant"] = Field(..., description="Author of the message")
    content: str = Field(..., description="Message text")

    def to_core(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)


class ChatRequest(BaseModel):
    """Request to run one chat turn.

    The full conversation history is sent on every turn; the last message is
    normally the user's new message.
    """

    messages: list[ChatMessageIn] = Field(..., min_length=1)
    task_type: TaskType = Field(TaskType.CHAT, description="Intent used to bias model selection")
    enable_cache: bool = Field(True, description="Allow serving this turn from the response cache")


# ============================================================================
# Catalog Models
# ============================================================================


class ModelInfo(BaseModel):
    """A selectable model."""

    id: str = Field(..., description="Catalog model ID")
    provider: str = Field(..., description="Provider tag")
    model_id: str = Field(..., description="Vendor model identifier")
    display_name: str
    description: str = ""
    max_tokens: int
    context_window: int = 0
    capabilities: list[str] = Field(default_factory=list)
    cost_multiplier: float = 1.0

    @classmethod
    def from_core(cls, model: Model, provider: Provider) -> ModelInfo:
        """Create from core catalog records."""
        return cls(
            id=model.id,
            provider=provider.name,
            model_id=model.model_id,
            display_name=model.display_name,
            description=model.description,
            max_tokens=model.max_tokens,
            context_window=model.context_window,
            capabilities=list(model.capabilities),
            cost_multiplier=model.cost_multiplier,
        )


class ModelList(BaseModel):
    """List of models response."""

    models: list[ModelInfo] = Field(default_factory=list)


# ============================================================================
# Preference Models
# ============================================================================


class PreferencesResponse(BaseModel):
    """A user's AI preferences."""

    preferred_provider: str
    preferred_model_id: Optional[str] = None
    enable_auto_selection: bool
    enable_cache: bool
    max_cost_per_request: float
    updated_at: datetime

    @classmethod
    def from_core(cls, preferences: UserAIPreferences) -> PreferencesResponse:
        return cls(
            preferred_provider=preferences.preferred_provider,
            preferred_model_id=preferences.preferred_model_id,
            enable_auto_selection=preferences.enable_auto_selection,
            enable_cache=preferences.enable_cache,
            max_cost_per_request=preferences.max_cost_per_request,
            updated_at=preferences.updated_at,
        )


class PreferencesUpdate(BaseModel):
    """Partial update of a user's AI preferences.

    Omitted fields keep their current value. ``preferred_model_id: null``
    clears the pinned model; the other fields cannot be set to null.
    """

    preferred_provider: Optional[str] = Field(None, max_length=50)
    preferred_model_id: Optional[str] = None
    enable_auto_selection: Optional[bool] = None
    enable_cache: Optional[bool] = None
    max_cost_per_request: Optional[float] = Field(None, ge=0)

    @field_validator(
        "preferred_provider", "enable_auto_selection", "enable_cache", "max_cost_per_request"
    )
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        """Explicit nulls are only accepted for preferred_model_id."""
        if v is None:
            raise ValueError("Field cannot be null")
        return v


# ============================================================================
# Usage Models
# ============================================================================


class UsageSummaryResponse(BaseModel):
    """Aggregated usage for the caller."""

    total_prompt_tokens: int
    total_completion_tokens: int
    total_tokens: int
    total_cost: float
    request_count: int
    cache_hits: int
    fallbacks: int
    failures: int
    mean_latency_ms: float
    first_request: Optional[datetime] = None
    last_request: Optional[datetime] = None
    token_balance: Optional[int] = None

    @classmethod
    def from_core(
        cls, summary: UsageSummary, token_balance: Optional[int] = None
    ) -> UsageSummaryResponse:
        return cls(
            total_prompt_tokens=summary.total_prompt_tokens,
            total_completion_tokens=summary.total_completion_tokens,
            total_tokens=summary.total_tokens,
            total_cost=round(summary.total_cost, 6),
            request_count=summary.request_count,
            cache_hits=summary.cache_hits,
            fallbacks=summary.fallbacks,
            failures=summary.failures,
            mean_latency_ms=round(summary.mean_latency_ms, 1),
            first_request=summary.first_request,
            last_request=summary.last_request,
            token_balance=token_balance,
        )


# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Error response."""

    error: str = Field(..., description="Error message")
    code: str = Field(..., description="Error code")
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "degraded"]
    version: str
    providers: list[str] = Field(default_factory=list)
    circuit_breakers: list[dict[str, Any]] = Field(default_factory=list)
