"""Streaming orchestrator for chat turns.

Drives one chat turn end to end: balance gate, response cache, model
selection, provider fallback, streaming with transparent continuation past
the output ceiling, and the single usage/cache/debit write at the end.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Optional

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from server.app.billing import BillingService
from server.app.exceptions import (
    MaxSegmentsExceededError,
    NoProviderAvailableError,
    ProviderStreamError,
    ProviderTimeoutError,
    ValidationError,
)
from server.app.llm.cache import ResponseCache
from server.app.llm.fallback import FallbackCandidate, ProviderFallbackChain, ProviderRoute
from server.app.llm.pricing import CostCalculator
from server.app.llm.prompts import CONTINUE_PROMPT, get_system_prompt
from server.app.llm.providers import ProviderRegistry
from server.app.llm.selector import ModelSelector
from server.app.llm.tokens import (
    TokenUsage,
    estimate_messages_tokens,
    estimate_tokens,
    is_truncated,
    usage_from_chunk,
)
from server.app.llm.usage_ledger import UsageLedger
from server.app.models import ChatMessage, Model, TaskType, UserAIPreferences
from server.app.observability import (
    CACHE_HITS,
    CHAT_TURNS,
    FALLBACKS,
    LLM_CALL_DURATION,
    TOKENS_USED,
    span,
)
from server.app.settings import Settings
from server.app.storage.backend import MeteringStore

logger = structlog.get_logger(__name__)


@dataclass
class ChatTurnRequest:
    """One chat turn as submitted by a user."""

    user_id: str
    messages: Sequence[ChatMessage]
    task_type: TaskType = TaskType.CHAT
    enable_cache: bool = True


@dataclass
class TokenEvent:
    """A piece of response text."""

    content: str


@dataclass
class UsageEvent:
    """Token usage and cost of the finished turn."""

    prompt_tokens: int
    completion_tokens: int
    cost: float = 0.0
    model_id: Optional[str] = None
    provider: Optional[str] = None
    was_cached: bool = False
    fallback_used: bool = False
    segments: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class DoneEvent:
    """Stream completion signal."""

    pass


# Union type for all events
StreamEvent = TokenEvent | UsageEvent | DoneEvent


class _RouteUnavailable(Exception):
    """A route failed before producing its first token."""


@dataclass
class _TurnState:
    """Progress of the route currently serving a turn."""

    route: Optional[ProviderRoute] = None
    model: Optional[Model] = None
    fallback_used: bool = False
    started: bool = False  # first token delivered to the caller
    segments: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    text_parts: list[str] = field(default_factory=list)

    @property
    def model_ref(self) -> Optional[str]:
        """Catalog model ID when known, else the vendor model ID."""
        if self.model is not None:
            return self.model.id
        return self.route.model if self.route else None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


class StreamingOrchestrator:
    """Runs chat turns against the routed provider.

    Every turn that passes the balance gate writes exactly one usage ledger
    entry: on a cache hit, on completion, or on a fatal failure. A turn that
    is cancelled by its consumer writes nothing.

    Example:
        orchestrator = StreamingOrchestrator(store, registry, settings, billing=billing)
        async for event in orchestrator.stream_turn(request):
            if isinstance(event, TokenEvent):
                ...
    """

    def __init__(
        self,
        store: MeteringStore,
        registry: ProviderRegistry,
        settings: Settings,
        *,
        chain: Optional[ProviderFallbackChain] = None,
        billing: Optional[BillingService] = None,
        selector: Optional[ModelSelector] = None,
        cache: Optional[ResponseCache] = None,
        calculator: Optional[CostCalculator] = None,
        ledger: Optional[UsageLedger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._settings = settings
        self._chain = chain or ProviderFallbackChain.from_settings(registry, settings)
        self._billing = billing
        self._selector = selector or ModelSelector(store, store)
        self._cache = cache or ResponseCache(store, default_ttl_hours=settings.cache_ttl_hours)
        self._calculator = calculator or CostCalculator(store)
        self._ledger = ledger or UsageLedger(store)
        self._clock = clock

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    async def stream_turn(self, request: ChatTurnRequest) -> AsyncIterator[StreamEvent]:
        """Stream one chat turn.

        Args:
            request: The turn to run.

        Yields:
            TokenEvents as text arrives, then one UsageEvent and a DoneEvent.

        Raises:
            ValidationError: The request has no messages.
            InsufficientBalanceError: The user's balance is below the minimum.
            NoProviderAvailableError: No route could serve the turn.
            MaxSegmentsExceededError: The response needed too many segments.
            ProviderStreamError: The provider failed after streaming started.
        """
        if not request.messages:
            raise ValidationError("messages", "At least one message is required")

        start = self._clock()
        user_id = request.user_id

        if self._billing is not None:
            await self._billing.ensure_balance(user_id)

        preferences = await self._load_preferences(user_id)
        last = request.messages[-1]
        use_cache = (
            self._settings.cache_enabled
            and preferences.enable_cache
            and request.enable_cache
            and last.role == "user"
        )

        state = _TurnState()
        try:
            if use_cache:
                hit = await self._cache.get(last.content)
                if hit is not None:
                    yield TokenEvent(content=hit.response)
                    await self._ledger.log_usage(
                        user_id=user_id,
                        model_id=hit.model_id,
                        latency_ms=self._elapsed_ms(start),
                        was_cached=True,
                        task_type=request.task_type,
                    )
                    CACHE_HITS.inc()
                    CHAT_TURNS.labels(outcome="cached").inc()
                    logger.info("Chat turn served from cache", user_id=user_id, model_id=hit.model_id)
                    yield UsageEvent(
                        prompt_tokens=0,
                        completion_tokens=0,
                        model_id=hit.model_id,
                        was_cached=True,
                    )
                    yield DoneEvent()
                    return

            with span("chat.select_model", {"user_id": user_id, "task_type": request.task_type.value}):
                selected = await self._selector.select_best_model(
                    request.task_type, user_id, preferences
                )
                primary = await self._primary_route(selected)

            conversation = self._build_conversation(request.messages)
            attempted: list[str] = []

            async with aclosing(self._chain.candidates(primary)) as candidates:
                async for candidate in candidates:
                    attempted.append(str(candidate.route))
                    state = _TurnState(
                        route=candidate.route,
                        model=selected if candidate.route == primary else None,
                        fallback_used=candidate.fallback_used,
                    )
                    if state.model is None:
                        state.model = await self._find_model(candidate.route)

                    route_start = self._clock()
                    try:
                        async with aclosing(
                            self._stream_segments(candidate, conversation, state)
                        ) as tokens:
                            async for text in tokens:
                                yield TokenEvent(content=text)
                    except _RouteUnavailable as e:
                        await self._chain.record_failure(candidate.route, str(e))
                        logger.warning(
                            "Provider failed before first token, trying next",
                            route=str(candidate.route),
                            error=str(e),
                        )
                        continue

                    await self._chain.record_success(candidate.route)
                    LLM_CALL_DURATION.labels(
                        provider=candidate.route.provider, model=candidate.route.model
                    ).observe(self._clock() - route_start)
                    break
                else:
                    state = _TurnState()
                    raise NoProviderAvailableError(attempted)

            usage_event = await self._finish(request, state, use_cache, start)
            yield usage_event
            yield DoneEvent()

        except Exception as e:
            await self._ledger.log_usage(
                user_id=user_id,
                model_id=state.model_ref,
                prompt_tokens=state.usage.prompt_tokens,
                completion_tokens=state.usage.completion_tokens,
                latency_ms=self._elapsed_ms(start),
                fallback_used=state.fallback_used,
                task_type=request.task_type,
                success=False,
                error_message=str(e),
            )
            CHAT_TURNS.labels(outcome="failed").inc()
            logger.error(
                "Chat turn failed",
                user_id=user_id,
                route=str(state.route) if state.route else None,
                error=str(e),
            )
            raise

    async def _stream_segments(
        self,
        candidate: FallbackCandidate,
        conversation: Sequence[BaseMessage],
        state: _TurnState,
    ) -> AsyncIterator[str]:
        """Stream a route's response, continuing across truncated segments."""
        route = candidate.route
        max_tokens = self._output_ceiling(state.model)
        max_segments = self._settings.max_response_segments
        timeout = self._settings.first_token_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        messages = list(conversation)

        while True:
            state.segments += 1
            segment_parts: list[str] = []
            segment_usage = TokenUsage()
            truncated = False

            try:
                stream = candidate.handle.stream(messages, max_tokens)
            except Exception as e:
                if not state.started:
                    raise _RouteUnavailable(str(e)) from e
                raise ProviderStreamError(route.provider, route.model, str(e)) from e

            async with aclosing(stream):
                iterator = stream.__aiter__()
                while True:
                    try:
                        if state.started:
                            chunk = await iterator.__anext__()
                        else:
                            chunk = await asyncio.wait_for(
                                iterator.__anext__(), timeout=max(0.0, deadline - loop.time())
                            )
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError as e:
                        raise _RouteUnavailable(
                            str(ProviderTimeoutError(route.provider, route.model, timeout))
                        ) from e
                    except Exception as e:
                        if not state.started:
                            raise _RouteUnavailable(str(e)) from e
                        raise ProviderStreamError(route.provider, route.model, str(e)) from e

                    text = _chunk_text(chunk)
                    if text:
                        state.started = True
                        segment_parts.append(text)
                        state.text_parts.append(text)
                        yield text

                    reported = usage_from_chunk(chunk)
                    if reported is not None:
                        segment_usage.add(reported)
                    if is_truncated(chunk):
                        truncated = True

            segment_text = "".join(segment_parts)
            if segment_usage.total_tokens == 0:
                segment_usage = TokenUsage(
                    prompt_tokens=estimate_messages_tokens(messages),
                    completion_tokens=estimate_tokens(segment_text),
                )
            state.usage.add(segment_usage)

            if not truncated:
                return

            if state.segments >= max_segments:
                logger.warning(
                    "Maximum response segments reached",
                    route=str(route),
                    segments=state.segments,
                )
                raise MaxSegmentsExceededError(max_segments)

            logger.debug("Output ceiling reached, continuing", route=str(route), segment=state.segments)
            messages = [*messages, AIMessage(content=segment_text), HumanMessage(content=CONTINUE_PROMPT)]

    async def _finish(
        self,
        request: ChatTurnRequest,
        state: _TurnState,
        use_cache: bool,
        start: float,
    ) -> UsageEvent:
        """Write the ledger entry, cache entry and debit for a completed turn."""
        usage = state.usage
        route = state.route
        cost = 0.0
        if state.model is not None:
            cost = await self._calculator.calculate_cost(
                state.model.id,
                usage.prompt_tokens,
                usage.completion_tokens,
                provider_id=state.model.provider_id,
            )

        await self._ledger.log_usage(
            user_id=request.user_id,
            model_id=state.model_ref,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            cost=cost,
            latency_ms=self._elapsed_ms(start),
            fallback_used=state.fallback_used,
            task_type=request.task_type,
        )

        if use_cache and state.model_ref:
            await self._cache.put(
                request.messages[-1].content,
                state.text,
                state.model_ref,
                usage.total_tokens,
                ttl_hours=self._settings.cache_ttl_hours,
            )

        if self._billing is not None and route is not None:
            await self._billing.debit(
                request.user_id, route.model, usage.prompt_tokens, usage.completion_tokens
            )

        CHAT_TURNS.labels(outcome="completed").inc()
        if route is not None:
            TOKENS_USED.labels(provider=route.provider, kind="prompt").inc(usage.prompt_tokens)
            TOKENS_USED.labels(provider=route.provider, kind="completion").inc(
                usage.completion_tokens
            )
            if state.fallback_used:
                FALLBACKS.labels(provider=route.provider).inc()

        logger.info(
            "Chat turn completed",
            user_id=request.user_id,
            route=str(route),
            segments=state.segments,
            total_tokens=usage.total_tokens,
            cost=f"${cost:.6f}",
            fallback_used=state.fallback_used,
        )
        return UsageEvent(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            cost=cost,
            model_id=state.model_ref,
            provider=route.provider if route else None,
            fallback_used=state.fallback_used,
            segments=state.segments,
        )

    async def _load_preferences(self, user_id: str) -> UserAIPreferences:
        try:
            preferences = await self._store.get_user_preferences(user_id)
        except Exception as e:
            logger.warning("Preference lookup failed, using defaults", user_id=user_id, error=str(e))
            preferences = None
        return preferences or UserAIPreferences(user_id=user_id)

    async def _primary_route(self, model: Optional[Model]) -> Optional[ProviderRoute]:
        if model is None:
            return None
        try:
            provider = await self._store.get_provider(model.provider_id)
        except Exception as e:
            logger.warning("Provider lookup failed", provider_id=model.provider_id, error=str(e))
            return None
        if provider is None:
            return None
        return ProviderRoute(provider=provider.name, model=model.model_id)

    async def _find_model(self, route: ProviderRoute) -> Optional[Model]:
        try:
            return await self._store.find_model(route.provider, route.model)
        except Exception as e:
            logger.warning("Catalog lookup failed for route", route=str(route), error=str(e))
            return None

    def _output_ceiling(self, model: Optional[Model]) -> int:
        cap = self._settings.max_tokens_cap
        return min(model.max_tokens, cap) if model is not None else cap

    def _build_conversation(self, messages: Sequence[ChatMessage]) -> list[BaseMessage]:
        conversation: list[BaseMessage] = [
            SystemMessage(content=get_system_prompt(self._settings.system_prompt))
        ]
        for message in messages:
            if message.role == "assistant":
                conversation.append(AIMessage(content=message.content))
            else:
                conversation.append(HumanMessage(content=message.content))
        return conversation

    def _elapsed_ms(self, start: float) -> int:
        return int((self._clock() - start) * 1000)


def _chunk_text(chunk: object) -> str:
    """Text carried by a stream chunk (string or content-block list)."""
    content = getattr(chunk, "content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in content
            if isinstance(part, (dict, str))
        )
    return ""
