"""Model routing, streaming and metering."""

from server.app.llm.cache import CacheHit, ResponseCache, hash_prompt
from server.app.llm.fallback import FallbackCandidate, ProviderFallbackChain, ProviderRoute
from server.app.llm.orchestrator import (
    ChatTurnRequest,
    DoneEvent,
    StreamEvent,
    StreamingOrchestrator,
    TokenEvent,
    UsageEvent,
)
from server.app.llm.pricing import CostCalculator, RateCard
from server.app.llm.providers import ModelHandle, ProviderName, ProviderRegistry, parse_provider
from server.app.llm.selector import ModelSelector
from server.app.llm.usage_ledger import UsageLedger, UsageSummary

__all__ = [
    # Providers
    "ModelHandle",
    "ProviderName",
    "ProviderRegistry",
    "parse_provider",
    # Selection and fallback
    "ModelSelector",
    "FallbackCandidate",
    "ProviderFallbackChain",
    "ProviderRoute",
    # Cache
    "CacheHit",
    "ResponseCache",
    "hash_prompt",
    # Metering
    "CostCalculator",
    "RateCard",
    "UsageLedger",
    "UsageSummary",
    # Streaming
    "ChatTurnRequest",
    "DoneEvent",
    "StreamEvent",
    "StreamingOrchestrator",
    "TokenEvent",
    "UsageEvent",
]
