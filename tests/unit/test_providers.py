"""Unit tests for the provider registry."""

from __future__ import annotations

import pytest
from langchain_core.messages import HumanMessage

from server.app.llm.mock import ScriptedChatModel
from server.app.llm.providers import (
    DEFAULT_PROVIDER_SPECS,
    ProviderName,
    ProviderRegistry,
    ProviderSpec,
    create_openai_model,
    parse_provider,
)
from tests.conftest import make_settings, scripted_registry


class TestParseProvider:
    def test_known_names(self):
        assert parse_provider("anthropic") == ProviderName.ANTHROPIC
        assert parse_provider(" Google ") == ProviderName.GOOGLE
        assert parse_provider(ProviderName.MISTRAL) == ProviderName.MISTRAL

    def test_unknown_names(self):
        assert parse_provider("cohere") is None
        assert parse_provider("") is None
        assert parse_provider(None) is None


class TestProviderRegistry:
    """Availability and handle resolution."""

    def test_availability_follows_credentials(self, settings):
        registry = ProviderRegistry(settings)

        assert registry.list_available_providers() == {"anthropic", "openai"}
        assert registry.is_available("anthropic")
        assert not registry.is_available("google")
        assert not registry.is_available("cohere")

    def test_empty_credential_is_unavailable(self):
        registry = ProviderRegistry(make_settings(openai_api_key=""))

        assert registry.list_available_providers() == {"anthropic"}

    def test_unconfigured_provider_returns_none(self, settings):
        registry = scripted_registry(settings, {})

        assert registry.get_model("google", "gemini-1.5-pro") is None
        assert registry.get_model("cohere", "command-r") is None

    def test_handles_are_built_once(self, settings):
        """The factory runs once per (provider, model) pair."""
        built: list[str] = []

        def factory(model_id, api_key, settings):
            built.append(model_id)
            return ScriptedChatModel()

        registry = ProviderRegistry(
            settings, specs={ProviderName.OPENAI: ProviderSpec("openai_api_key", factory)}
        )

        first = registry.get_model("openai", "gpt-4-turbo")
        again = registry.get_model(ProviderName.OPENAI, "gpt-4-turbo")
        other = registry.get_model("openai", "gpt-4o")

        assert first is again
        assert other is not first
        assert built == ["gpt-4-turbo", "gpt-4o"]

    def test_factory_receives_credential(self, settings):
        seen: list[str] = []

        def factory(model_id, api_key, settings):
            seen.append(api_key)
            return ScriptedChatModel()

        registry = ProviderRegistry(
            settings, specs={ProviderName.ANTHROPIC: ProviderSpec("anthropic_api_key", factory)}
        )
        registry.get_model("anthropic", "claude-3-5-sonnet-20240620")

        assert seen == ["sk-ant-test"]

    def test_openai_factory_builds_chat_model(self, settings):
        client = create_openai_model("gpt-4-turbo", "sk-openai-test", settings)

        assert client.model_name == "gpt-4-turbo"


class TestModelHandle:
    """Streaming through a resolved handle."""

    @pytest.mark.asyncio
    async def test_stream_passes_output_ceiling(self, settings):
        model = ScriptedChatModel(response="one two three")
        handle = scripted_registry(settings, {"anthropic": model}).get_model(
            "anthropic", "claude-3-5-sonnet-20240620"
        )

        chunks = [c async for c in handle.stream([HumanMessage(content="hi")], max_tokens=2)]

        assert "".join(str(c.content) for c in chunks) == "one two "
        assert model.max_tokens_seen == [2]

    def test_google_uses_generation_config(self):
        limit = DEFAULT_PROVIDER_SPECS[ProviderName.GOOGLE].output_limit(512)
        assert limit == {"generation_config": {"max_output_tokens": 512}}

    def test_default_output_limit(self):
        limit = DEFAULT_PROVIDER_SPECS[ProviderName.OPENAI].output_limit(512)
        assert limit == {"max_tokens": 512}
