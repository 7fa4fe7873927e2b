"""Shared test fixtures and configuration."""

from __future__ import annotations

from typing import Any, AsyncIterator, Optional

import pytest
import pytest_asyncio
from pydantic_settings import SettingsConfigDict

from server.app.api.auth import create_access_token
from server.app.llm.mock import ScriptedChatModel
from server.app.llm.providers import (
    DEFAULT_PROVIDER_SPECS,
    ProviderName,
    ProviderRegistry,
    ProviderSpec,
)
from server.app.models import Model, Provider
from server.app.settings import Settings
from server.app.storage.memory import MemoryMeteringStore

# ============================================================================
# PYTEST CONFIG & MARKERS
# ============================================================================


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test (fast, no I/O)")


# ============================================================================
# SETTINGS
# ============================================================================


class TestSettings(Settings):
    """Test settings that don't load from env file."""

    __test__ = False

    model_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,  # Allow population by field name, not just alias
    )


def make_settings(**overrides: Any) -> TestSettings:
    """Build test settings with anthropic and openai configured and a memory store."""
    values: dict[str, Any] = {
        "persistence_backend": "memory",
        "anthropic_api_key": "sk-ant-test",
        "openai_api_key": "sk-openai-test",
        "google_api_key": None,
        "mistral_api_key": None,
        "jwt_secret": "test-secret",
        "max_response_segments": 3,
        "first_token_timeout_seconds": 1.0,
        "system_prompt": None,
        "cache_enabled": True,
        "min_token_balance": 10,
        "otel_endpoint": None,
        "metrics_enabled": False,
    }
    values.update(overrides)
    return TestSettings(**values)


@pytest.fixture
def settings() -> TestSettings:
    """Settings with anthropic and openai configured."""
    return make_settings()


# ============================================================================
# CATALOG & STORE
# ============================================================================

ANTHROPIC = Provider(
    id="prov-anthropic",
    name="anthropic",
    display_name="Anthropic",
    cost_per_1k_input_tokens=0.003,
    cost_per_1k_output_tokens=0.015,
    priority=10,
)
OPENAI = Provider(
    id="prov-openai",
    name="openai",
    display_name="OpenAI",
    cost_per_1k_input_tokens=0.01,
    cost_per_1k_output_tokens=0.03,
    priority=5,
)
GOOGLE = Provider(
    id="prov-google",
    name="google",
    display_name="Google",
    cost_per_1k_input_tokens=0.0035,
    cost_per_1k_output_tokens=0.0105,
    priority=1,
)

CLAUDE = Model(
    id="model-claude",
    provider_id="prov-anthropic",
    model_id="claude-3-5-sonnet-20240620",
    display_name="Claude 3.5 Sonnet",
    max_tokens=8192,
    capabilities=("code_generation", "debugging"),
)
GPT4 = Model(
    id="model-gpt4",
    provider_id="prov-openai",
    model_id="gpt-4-turbo",
    display_name="GPT-4 Turbo",
    max_tokens=4096,
    capabilities=("analysis",),
    cost_multiplier=1.5,
)
GEMINI = Model(
    id="model-gemini",
    provider_id="prov-google",
    model_id="gemini-1.5-pro",
    display_name="Gemini 1.5 Pro",
    max_tokens=8192,
)


async def seed_store(store: Any, balance: Optional[int] = 1000) -> None:
    """Load the standard three-provider catalog and fund user-1."""
    for provider in (ANTHROPIC, OPENAI, GOOGLE):
        await store.upsert_provider(provider)
    for model in (CLAUDE, GPT4, GEMINI):
        await store.upsert_model(model)
    if balance is not None:
        await store.set_token_balance("user-1", balance)


@pytest_asyncio.fixture
async def store() -> AsyncIterator[MemoryMeteringStore]:
    """Memory store with the standard catalog and a funded test user."""
    metering_store = MemoryMeteringStore()
    await metering_store.initialize()
    await seed_store(metering_store)
    yield metering_store
    await metering_store.close()


# ============================================================================
# SCRIPTED PROVIDERS
# ============================================================================


def scripted_registry(
    settings: Settings, models: dict[str, ScriptedChatModel]
) -> ProviderRegistry:
    """Registry whose providers stream from the given scripted models.

    Availability still follows the credentials in settings.
    """
    specs: dict[ProviderName, ProviderSpec] = {}
    for name, default in DEFAULT_PROVIDER_SPECS.items():
        model = models.get(name.value) or ScriptedChatModel()
        specs[name] = ProviderSpec(
            credential_setting=default.credential_setting,
            factory=lambda model_id, api_key, settings, model=model: model,
            output_limit=default.output_limit,
        )
    return ProviderRegistry(settings, specs=specs)


@pytest.fixture
def scripted_models() -> dict[str, ScriptedChatModel]:
    """One scripted model per provider with distinguishable responses."""
    return {
        "anthropic": ScriptedChatModel(response="Hello from Claude."),
        "openai": ScriptedChatModel(response="Hello from GPT."),
        "google": ScriptedChatModel(response="Hello from Gemini."),
        "mistral": ScriptedChatModel(response="Hello from Mistral."),
    }


def auth_headers(settings: Settings, user_id: str = "user-1") -> dict[str, str]:
    """Authorization header carrying a token for user_id."""
    return {"Authorization": f"Bearer {create_access_token(user_id, settings)}"}


async def collect(stream: AsyncIterator[Any]) -> list[Any]:
    """Drain an async iterator into a list."""
    return [item async for item in stream]
