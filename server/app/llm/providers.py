"""Provider registry for LLM vendor handles.

Maps the closed set of known provider tags to their credential settings and
LangChain chat model constructors. A provider is available only when its
credential was configured at process start; handles are built lazily on
first use and shared across chat turns.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

import structlog

if TYPE_CHECKING:
    from langchain_core.language_models import BaseChatModel
    from langchain_core.messages import BaseMessage, BaseMessageChunk

    from server.app.settings import Settings

logger = structlog.get_logger(__name__)


class ProviderName(str, Enum):
    """Known AI vendor integrations."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    MISTRAL = "mistral"


def parse_provider(name: str | ProviderName | None) -> Optional[ProviderName]:
    """Resolve a provider tag, rejecting unknown names.

    Args:
        name: Provider tag as stored in the catalog or configuration.

    Returns:
        The ProviderName, or None if the tag is not a known provider.
    """
    if isinstance(name, ProviderName):
        return name
    try:
        return ProviderName((name or "").strip().lower())
    except ValueError:
        logger.warning("Unknown provider", provider=name)
        return None


# Signature: (model_id, api_key, settings) -> chat model
HandleFactory = Callable[[str, str, "Settings"], "BaseChatModel"]


def _max_tokens_kwargs(max_tokens: int) -> dict[str, Any]:
    return {"max_tokens": max_tokens}


def _max_output_tokens_kwargs(max_tokens: int) -> dict[str, Any]:
    return {"generation_config": {"max_output_tokens": max_tokens}}


@dataclass(frozen=True)
class ProviderSpec:
    """How to build and invoke handles for one provider."""

    credential_setting: str  # Settings attribute holding the SecretStr credential
    factory: HandleFactory
    output_limit: Callable[[int], dict[str, Any]] = _max_tokens_kwargs


@dataclass(frozen=True)
class ModelHandle:
    """An invokable model bound to one provider."""

    provider: ProviderName
    model_id: str
    client: Any  # LangChain chat model
    output_limit: Callable[[int], dict[str, Any]] = _max_tokens_kwargs

    def stream(
        self, messages: Sequence[BaseMessage], max_tokens: int
    ) -> AsyncIterator[BaseMessageChunk]:
        """Stream a completion capped at max_tokens output tokens."""
        return self.client.astream(list(messages), **self.output_limit(max_tokens))


# ============================================================================
# Built-in Provider Factories
# ============================================================================


def create_anthropic_model(model_id: str, api_key: str, settings: Settings) -> BaseChatModel:
    """Factory for Anthropic models."""
    from langchain_anthropic import ChatAnthropic

    return ChatAnthropic(model=model_id, api_key=api_key)


def create_openai_model(model_id: str, api_key: str, settings: Settings) -> BaseChatModel:
    """Factory for OpenAI models."""
    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=model_id,
        api_key=api_key,
        base_url=settings.openai_api_base,
        stream_usage=True,
    )


def create_google_model(model_id: str, api_key: str, settings: Settings) -> BaseChatModel:
    """Factory for Google Gemini models."""
    from langchain_google_genai import ChatGoogleGenerativeAI

    return ChatGoogleGenerativeAI(model=model_id, google_api_key=api_key)


def create_mistral_model(model_id: str, api_key: str, settings: Settings) -> BaseChatModel:
    """Factory for Mistral models via the OpenAI-compatible endpoint."""
    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=model_id,
        api_key=api_key,
        base_url=settings.mistral_api_base,
        stream_usage=True,
    )


DEFAULT_PROVIDER_SPECS: Mapping[ProviderName, ProviderSpec] = {
    ProviderName.ANTHROPIC: ProviderSpec("anthropic_api_key", create_anthropic_model),
    ProviderName.OPENAI: ProviderSpec("openai_api_key", create_openai_model),
    ProviderName.GOOGLE: ProviderSpec(
        "google_api_key", create_google_model, output_limit=_max_output_tokens_kwargs
    ),
    ProviderName.MISTRAL: ProviderSpec("mistral_api_key", create_mistral_model),
}


class ProviderRegistry:
    """Holds the configured vendor integrations for the process.

    Constructed once at startup and passed to the orchestrator. Credentials
    are read from settings at construction; a provider without one is simply
    unavailable.

    Example:
        registry = ProviderRegistry(settings)
        handle = registry.get_model("openai", "gpt-4-turbo")
        if handle is None:
            ...  # provider unknown or not configured
    """

    def __init__(
        self,
        settings: Settings,
        specs: Mapping[ProviderName, ProviderSpec] | None = None,
    ) -> None:
        self._settings = settings
        self._specs = dict(specs or DEFAULT_PROVIDER_SPECS)
        self._credentials: dict[ProviderName, str] = {}
        self._handles: dict[tuple[ProviderName, str], ModelHandle] = {}

        for provider, spec in self._specs.items():
            secret = getattr(settings, spec.credential_setting, None)
            value = secret.get_secret_value() if secret is not None else ""
            if value:
                self._credentials[provider] = value

        logger.info(
            "Provider registry initialized",
            available=sorted(p.value for p in self._credentials),
        )

    def is_available(self, provider: str | ProviderName) -> bool:
        """Whether a provider is known and has a configured credential."""
        name = parse_provider(provider)
        return name is not None and name in self._credentials

    def list_available_providers(self) -> set[str]:
        """Names of all providers with a configured credential."""
        return {p.value for p in self._credentials}

    def get_model(self, provider: str | ProviderName, model_id: str) -> Optional[ModelHandle]:
        """Resolve a (provider, model) pair to an invokable handle.

        Args:
            provider: Provider tag.
            model_id: Vendor model identifier.

        Returns:
            ModelHandle, or None if the provider is unknown or not configured.
        """
        name = parse_provider(provider)
        if name is None or name not in self._credentials:
            return None

        key = (name, model_id)
        handle = self._handles.get(key)
        if handle is None:
            spec = self._specs[name]
            handle = ModelHandle(
                provider=name,
                model_id=model_id,
                client=spec.factory(model_id, self._credentials[name], self._settings),
                output_limit=spec.output_limit,
            )
            handle = self._handles.setdefault(key, handle)
            logger.debug("Model handle created", provider=name.value, model=model_id)
        return handle
