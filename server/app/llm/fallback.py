"""Provider fallback chain for chat turns.

Builds the ordered list of (provider, model) routes a turn may run on and
hands out the ones that can be attempted right now. Each provider has its
own circuit breaker that opens after repeated failures.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import structlog

from server.app.llm.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from server.app.llm.providers import ModelHandle, ProviderRegistry, parse_provider

if TYPE_CHECKING:
    from server.app.settings import Settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProviderRoute:
    """A (provider, vendor model) pair a turn can be sent to."""

    provider: str  # provider tag, e.g. "openai"
    model: str  # vendor model ID, e.g. "gpt-4-turbo"

    @classmethod
    def from_mapping(cls, data: Mapping[str, str]) -> ProviderRoute:
        return cls(provider=data["provider"].strip().lower(), model=data["model"])

    def __str__(self) -> str:
        return f"{self.provider}/{self.model}"


@dataclass(frozen=True)
class FallbackCandidate:
    """A route that can be attempted, with its resolved handle."""

    route: ProviderRoute
    handle: ModelHandle
    fallback_used: bool  # True unless this is the primary route


class ProviderFallbackChain:
    """Orders routes and filters out the ones that cannot be attempted.

    The route order for a turn is the primary route, then the configured
    fallback routes, then the last-resort default route, with duplicates
    removed. A route is skipped when its provider is unknown, has no
    credential, or has an open circuit breaker.

    Example:
        chain = ProviderFallbackChain.from_settings(registry, settings)
        async for candidate in chain.candidates(ProviderRoute("openai", "gpt-4-turbo")):
            ...  # try candidate.handle; on failure record it and continue
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        fallback_routes: Sequence[ProviderRoute] = (),
        default_route: Optional[ProviderRoute] = None,
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
    ) -> None:
        self._registry = registry
        self._fallback_routes = list(fallback_routes)
        self._default_route = default_route
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, registry: ProviderRegistry, settings: Settings) -> ProviderFallbackChain:
        """Create a fallback chain from application settings."""
        return cls(
            registry,
            fallback_routes=[ProviderRoute.from_mapping(r) for r in settings.fallback_routes],
            default_route=ProviderRoute.from_mapping(settings.default_route),
            failure_threshold=settings.provider_failure_threshold,
            cooldown_seconds=settings.provider_cooldown_seconds,
        )

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def breaker(self, provider: str) -> CircuitBreaker:
        """Get (or create) the circuit breaker for a provider."""
        breaker = self._breakers.get(provider)
        if breaker is None:
            breaker = CircuitBreaker(
                CircuitBreakerConfig(
                    name=f"llm_provider_{provider}",
                    failure_threshold=self._failure_threshold,
                    cooldown_seconds=self._cooldown_seconds,
                )
            )
            self._breakers[provider] = breaker
        return breaker

    def routes_for(self, primary: Optional[ProviderRoute]) -> list[ProviderRoute]:
        """Ordered, de-duplicated routes for a turn."""
        ordered = [primary] if primary is not None else []
        ordered.extend(self._fallback_routes)
        if self._default_route is not None:
            ordered.append(self._default_route)

        routes: list[ProviderRoute] = []
        for route in ordered:
            if route not in routes:
                routes.append(route)
        return routes

    async def candidates(
        self, primary: Optional[ProviderRoute]
    ) -> AsyncIterator[FallbackCandidate]:
        """Yield the attemptable routes for a turn, in order.

        Args:
            primary: Route of the selected model, or None if nothing was
                selected (every yielded candidate then counts as a fallback).
        """
        for route in self.routes_for(primary):
            if parse_provider(route.provider) is None:
                continue

            try:
                handle = self._registry.get_model(route.provider, route.model)
            except Exception as e:
                logger.warning("Model handle creation failed", route=str(route), error=str(e))
                await self.record_failure(route, str(e))
                continue
            if handle is None:
                logger.debug("Provider not configured, skipping", route=str(route))
                continue

            if not await self.breaker(route.provider).allow_request():
                logger.warning("Provider circuit breaker open, skipping", route=str(route))
                continue

            yield FallbackCandidate(
                route=route,
                handle=handle,
                fallback_used=route != primary,
            )

    def breaker_states(self) -> list[dict[str, object]]:
        """Snapshot of every provider breaker created so far."""
        return [breaker.to_dict() for breaker in self._breakers.values()]

    async def record_success(self, route: ProviderRoute) -> None:
        await self.breaker(route.provider).record_success()

    async def record_failure(self, route: ProviderRoute, error: str) -> None:
        await self.breaker(route.provider).record_failure(error)
