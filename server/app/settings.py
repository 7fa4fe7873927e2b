"""Application settings."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FALLBACK_ROUTES: list[dict[str, str]] = [
    {"provider": "anthropic", "model": "claude-3-5-sonnet-20240620"},
    {"provider": "openai", "model": "gpt-4-turbo"},
    {"provider": "google", "model": "gemini-1.5-pro"},
]

DEFAULT_ROUTE: dict[str, str] = {"provider": "anthropic", "model": "claude-3-5-sonnet-20240620"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server settings
    host: str = Field(default="127.0.0.1", alias="FORGEBENCH_HOST")
    port: int = Field(default=8000, alias="FORGEBENCH_PORT")
    log_level: str = Field(default="info", alias="FORGEBENCH_LOG_LEVEL")
    debug: bool = Field(default=False, alias="FORGEBENCH_DEBUG")

    # Auth - tokens are issued by the external auth backend and signed with this secret
    jwt_secret: SecretStr = Field(
        default=SecretStr("forgebench-dev-secret-change-me"),
        alias="FORGEBENCH_JWT_SECRET",
    )
    jwt_algorithm: str = Field(default="HS256", alias="FORGEBENCH_JWT_ALGORITHM")

    # Provider credentials - use SecretStr to prevent accidental logging
    anthropic_api_key: Optional[SecretStr] = Field(default=None, alias="ANTHROPIC_API_KEY")
    openai_api_key: Optional[SecretStr] = Field(default=None, alias="OPENAI_API_KEY")
    openai_api_base: Optional[str] = Field(default=None, alias="OPENAI_API_BASE")
    google_api_key: Optional[SecretStr] = Field(default=None, alias="GOOGLE_API_KEY")
    mistral_api_key: Optional[SecretStr] = Field(default=None, alias="MISTRAL_API_KEY")
    mistral_api_base: str = Field(
        default="https://api.mistral.ai/v1", alias="FORGEBENCH_MISTRAL_API_BASE"
    )

    # Generation limits
    max_tokens_cap: int = Field(default=8192, alias="FORGEBENCH_MAX_TOKENS")
    max_response_segments: int = Field(default=2, alias="FORGEBENCH_MAX_RESPONSE_SEGMENTS")
    first_token_timeout_seconds: float = Field(
        default=30.0, alias="FORGEBENCH_FIRST_TOKEN_TIMEOUT_SECONDS"
    )
    system_prompt: Optional[str] = Field(default=None, alias="FORGEBENCH_SYSTEM_PROMPT")

    # Routing
    fallback_routes: list[dict[str, str]] = Field(
        default_factory=lambda: [dict(r) for r in DEFAULT_FALLBACK_ROUTES],
        alias="FORGEBENCH_FALLBACK_ROUTES",
    )
    default_route: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_ROUTE),
        alias="FORGEBENCH_DEFAULT_ROUTE",
    )
    provider_failure_threshold: int = Field(
        default=3, alias="FORGEBENCH_PROVIDER_FAILURE_THRESHOLD"
    )
    provider_cooldown_seconds: float = Field(
        default=60.0, alias="FORGEBENCH_PROVIDER_COOLDOWN_SECONDS"
    )

    # Response cache
    cache_enabled: bool = Field(default=True, alias="FORGEBENCH_CACHE_ENABLED")
    cache_ttl_hours: float = Field(default=24.0, alias="FORGEBENCH_CACHE_TTL_HOURS")

    # Billing
    min_token_balance: int = Field(default=10, alias="FORGEBENCH_MIN_TOKEN_BALANCE")

    # Persistence settings
    persistence_backend: Literal["sqlite", "memory"] = Field(
        default="sqlite",
        alias="FORGEBENCH_PERSISTENCE_BACKEND",
    )
    persistence_uri: str = Field(
        default=".forgebench/metering.db",
        alias="FORGEBENCH_PERSISTENCE_URI",
    )

    # Observability settings
    otel_endpoint: Optional[str] = Field(default=None, alias="FORGEBENCH_OTEL_ENDPOINT")
    metrics_enabled: bool = Field(default=False, alias="FORGEBENCH_METRICS_ENABLED")
    metrics_port: int = Field(default=9090, alias="FORGEBENCH_METRICS_PORT")

    @field_validator("port", "metrics_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port number is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {v}")
        return v

    @field_validator("max_tokens_cap", "max_response_segments")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Generation limits must allow at least one token / one segment."""
        if v < 1:
            raise ValueError(f"Value must be at least 1, got {v}")
        return v

    @field_validator("first_token_timeout_seconds", "cache_ttl_hours")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError(f"Duration must be positive, got {v}")
        return v

    @field_validator("min_token_balance")
    @classmethod
    def validate_min_balance(cls, v: int) -> int:
        """Validate min_token_balance is not negative."""
        if v < 0:
            raise ValueError(f"min_token_balance must not be negative, got {v}")
        return v

    @field_validator("fallback_routes")
    @classmethod
    def validate_fallback_routes(cls, v: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Each fallback route needs a provider and a model."""
        for route in v:
            if not route.get("provider") or not route.get("model"):
                raise ValueError(f"Fallback route needs 'provider' and 'model': {route}")
        return v

    @field_validator("default_route")
    @classmethod
    def validate_default_route(cls, v: dict[str, Any]) -> dict[str, Any]:
        """The last-resort route needs a provider and a model."""
        if not v.get("provider") or not v.get("model"):
            raise ValueError(f"Default route needs 'provider' and 'model': {v}")
        return v


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
