"""Shared models for Forgebench.

Core domain records used across the routing and metering layer.
These are separate from API models to avoid circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal, Optional


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


class TaskType(str, Enum):
    """Intent of a chat turn, used to bias model selection."""

    CODE_GENERATION = "code_generation"
    DEBUGGING = "debugging"
    ANALYSIS = "analysis"
    CHAT = "chat"
    REFACTORING = "refactoring"
    DOCUMENTATION = "documentation"
    TESTING = "testing"


@dataclass(frozen=True)
class ChatMessage:
    """One conversation turn as sent by the client."""

    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class Provider:
    """An AI vendor integration as administered in the catalog."""

    id: str
    name: str  # provider tag, e.g. "anthropic"
    display_name: str
    is_active: bool = True
    api_key_required: bool = True
    cost_per_1k_input_tokens: float = 0.0
    cost_per_1k_output_tokens: float = 0.0
    priority: int = 0  # Higher = preferred
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Model:
    """A specific invokable model belonging to exactly one provider."""

    id: str
    provider_id: str
    model_id: str  # vendor identifier, e.g. "gpt-4-turbo"
    display_name: str
    description: str = ""
    is_active: bool = True
    max_tokens: int = 4096
    context_window: int = 0
    capabilities: tuple[str, ...] = ()
    cost_multiplier: float = 1.0


@dataclass
class UserAIPreferences:
    """Per-user routing preferences.

    A user without a stored record gets auto-selection and caching enabled.
    """

    user_id: str
    preferred_provider: str = "anthropic"
    preferred_model_id: Optional[str] = None
    enable_auto_selection: bool = True
    enable_cache: bool = True
    max_cost_per_request: float = 1.0
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ResponseCacheEntry:
    """A previously generated response keyed by the prompt digest."""

    prompt_hash: str
    prompt: str
    response: str
    model_id: str
    tokens_used: int
    expires_at: datetime
    hit_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        """Whether the entry can no longer be served."""
        return now >= self.expires_at


@dataclass(frozen=True)
class UsageLogEntry:
    """Immutable record of one completed (or failed) chat turn."""

    user_id: str
    model_id: Optional[str]
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    latency_ms: int = 0
    was_cached: bool = False
    fallback_used: bool = False
    task_type: str = TaskType.CHAT.value
    success: bool = True
    error_message: str = ""
    created_at: datetime = field(default_factory=utcnow)

    @property
    def total_tokens(self) -> int:
        """Prompt plus completion tokens."""
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage and API responses."""
        return {
            "user_id": self.user_id,
            "model_id": self.model_id,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cost": self.cost,
            "latency_ms": self.latency_ms,
            "was_cached": self.was_cached,
            "fallback_used": self.fallback_used,
            "task_type": self.task_type,
            "success": self.success,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
        }
