"""Unit tests for the streaming orchestrator."""

from __future__ import annotations

from typing import Any, AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessageChunk

from server.app.billing import BillingService
from server.app.exceptions import (
    InsufficientBalanceError,
    MaxSegmentsExceededError,
    NoProviderAvailableError,
    ProviderStreamError,
    ValidationError,
)
from server.app.llm.circuit_breaker import CircuitState
from server.app.llm.mock import ScriptedChatModel
from server.app.llm.orchestrator import (
    ChatTurnRequest,
    DoneEvent,
    StreamingOrchestrator,
    TokenEvent,
    UsageEvent,
)
from server.app.models import ChatMessage, TaskType, UserAIPreferences
from server.app.storage.memory import MemoryMeteringStore
from tests.conftest import collect, make_settings, scripted_registry, seed_store

TEN_WORDS = "alpha beta gamma delta epsilon zeta eta theta iota kappa"


def build(settings, store, models, **kwargs) -> StreamingOrchestrator:
    """Orchestrator wired to scripted providers and a billing gate."""
    registry = scripted_registry(settings, models)
    return StreamingOrchestrator(
        store,
        registry,
        settings,
        billing=BillingService(store, min_balance=settings.min_token_balance),
        **kwargs,
    )


def turn(content: str = "Write a haiku", **kwargs) -> ChatTurnRequest:
    return ChatTurnRequest(
        user_id="user-1", messages=[ChatMessage(role="user", content=content)], **kwargs
    )


def text_of(events: list[Any]) -> str:
    return "".join(e.content for e in events if isinstance(e, TokenEvent))


def usage_of(events: list[Any]) -> UsageEvent:
    return next(e for e in events if isinstance(e, UsageEvent))


class MidStreamFailure(ScriptedChatModel):
    """Streams one chunk, then fails."""

    async def astream(self, input, config=None, **kwargs) -> AsyncIterator[AIMessageChunk]:
        self.calls += 1
        yield AIMessageChunk(content="partial ")
        raise RuntimeError("connection reset")


class ContinuationRefused(ScriptedChatModel):
    """Streams the first segment, then refuses to open a continuation."""

    def astream(self, input, config=None, **kwargs) -> AsyncIterator[AIMessageChunk]:
        if self.calls:
            raise RuntimeError("session expired")
        return super().astream(input, config, **kwargs)


class FailingWritesStore(MemoryMeteringStore):
    """Memory store whose ledger and cache writes fail."""

    async def append_usage(self, entry) -> None:
        raise RuntimeError("disk full")

    async def save_cached_response(self, entry) -> None:
        raise RuntimeError("disk full")


class TestPrimaryRoute:
    """Turns served by the selected model."""

    @pytest.mark.asyncio
    async def test_streams_tokens_then_usage_then_done(self, settings, store, scripted_models):
        """A turn yields text, one usage event and a final done event."""
        orchestrator = build(settings, store, scripted_models)

        events = await collect(orchestrator.stream_turn(turn()))

        assert text_of(events) == "Hello from Claude."
        assert isinstance(events[-1], DoneEvent)
        assert isinstance(events[-2], UsageEvent)
        assert sum(isinstance(e, UsageEvent) for e in events) == 1

        usage = usage_of(events)
        assert usage.model_id == "model-claude"
        assert usage.provider == "anthropic"
        assert usage.fallback_used is False
        assert usage.was_cached is False
        assert usage.segments == 1
        assert usage.completion_tokens == 3
        assert usage.prompt_tokens > 0

    @pytest.mark.asyncio
    async def test_writes_exactly_one_ledger_entry(self, settings, store, scripted_models):
        """A completed turn logs one successful usage entry with its cost."""
        orchestrator = build(settings, store, scripted_models)

        events = await collect(orchestrator.stream_turn(turn(task_type=TaskType.DEBUGGING)))

        entries = await store.list_usage("user-1")
        assert len(entries) == 1
        entry = entries[0]
        usage = usage_of(events)
        assert entry.success is True
        assert entry.model_id == "model-claude"
        assert entry.task_type == "debugging"
        assert entry.prompt_tokens == usage.prompt_tokens
        assert entry.completion_tokens == usage.completion_tokens
        assert entry.cost == pytest.approx(
            (usage.prompt_tokens * 0.003 + usage.completion_tokens * 0.015) / 1000
        )
        assert entry.cost == pytest.approx(usage.cost)

    @pytest.mark.asyncio
    async def test_debits_balance_after_completion(self, settings, store, scripted_models):
        """Consumed tokens are charged in balance units, rounded up."""
        orchestrator = build(settings, store, scripted_models)

        await collect(orchestrator.stream_turn(turn()))

        assert await store.get_token_balance("user-1") == 999

    @pytest.mark.asyncio
    async def test_pinned_model_is_used(self, settings, store, scripted_models):
        """A user with auto-selection off gets their pinned model."""
        await store.upsert_user_preferences(
            UserAIPreferences(
                user_id="user-1", enable_auto_selection=False, preferred_model_id="model-gpt4"
            )
        )
        orchestrator = build(settings, store, scripted_models)

        events = await collect(orchestrator.stream_turn(turn()))

        assert text_of(events) == "Hello from GPT."
        usage = usage_of(events)
        assert usage.model_id == "model-gpt4"
        assert usage.fallback_used is False
        assert scripted_models["anthropic"].calls == 0

    @pytest.mark.asyncio
    async def test_estimates_usage_when_provider_reports_none(self, settings, store):
        """Token counts fall back to a character estimate."""
        models = {"anthropic": ScriptedChatModel(response="x" * 40, report_usage=False)}
        orchestrator = build(settings, store, models)

        usage = usage_of(await collect(orchestrator.stream_turn(turn())))

        assert usage.completion_tokens == 10
        assert usage.prompt_tokens > 0

    @pytest.mark.asyncio
    async def test_conversation_history_is_sent(self, settings, store, scripted_models):
        """Prior assistant turns do not break a new turn."""
        orchestrator = build(settings, store, scripted_models)
        request = ChatTurnRequest(
            user_id="user-1",
            messages=[
                ChatMessage(role="user", content="Hi"),
                ChatMessage(role="assistant", content="Hello! How can I help?"),
                ChatMessage(role="user", content="Explain closures"),
            ],
        )

        events = await collect(orchestrator.stream_turn(request))

        assert text_of(events) == "Hello from Claude."

    @pytest.mark.asyncio
    async def test_empty_messages_rejected(self, settings, store, scripted_models):
        """A turn without messages is a validation error and logs nothing."""
        orchestrator = build(settings, store, scripted_models)

        with pytest.raises(ValidationError):
            await collect(orchestrator.stream_turn(ChatTurnRequest(user_id="user-1", messages=[])))

        assert await store.list_usage("user-1") == []


class TestBalanceGate:
    """Balance checks before any provider work."""

    @pytest.mark.asyncio
    async def test_low_balance_never_reaches_selection(self, settings, store, scripted_models):
        """A user below the minimum is rejected before model selection."""
        await store.set_token_balance("user-1", 5)
        selector = MagicMock()
        selector.select_best_model = AsyncMock()
        orchestrator = build(settings, store, scripted_models, selector=selector)

        with pytest.raises(InsufficientBalanceError):
            await collect(orchestrator.stream_turn(turn()))

        selector.select_best_model.assert_not_awaited()
        assert scripted_models["anthropic"].calls == 0
        assert await store.list_usage("user-1") == []

    @pytest.mark.asyncio
    async def test_user_without_profile_rejected(self, settings, store, scripted_models):
        """A user with no balance record cannot chat."""
        orchestrator = build(settings, store, scripted_models)
        request = ChatTurnRequest(
            user_id="stranger", messages=[ChatMessage(role="user", content="hi")]
        )

        with pytest.raises(InsufficientBalanceError):
            await collect(orchestrator.stream_turn(request))


class TestResponseCache:
    """Turns served from the prompt cache."""

    @pytest.mark.asyncio
    async def test_identical_prompt_served_from_cache(self, settings, store, scripted_models):
        """The second identical prompt replays the stored response."""
        orchestrator = build(settings, store, scripted_models)
        await collect(orchestrator.stream_turn(turn("What is a monad?")))

        events = await collect(orchestrator.stream_turn(turn("What is a monad?")))

        assert [type(e) for e in events] == [TokenEvent, UsageEvent, DoneEvent]
        assert events[0].content == "Hello from Claude."
        usage = events[1]
        assert usage.was_cached is True
        assert usage.model_id == "model-claude"
        assert usage.total_tokens == 0
        assert scripted_models["anthropic"].calls == 1

        entries = await store.list_usage("user-1")
        assert [e.was_cached for e in entries] == [False, True]
        assert entries[1].cost == 0.0
        assert entries[1].total_tokens == 0

    @pytest.mark.asyncio
    async def test_cache_hit_does_not_debit(self, settings, store, scripted_models):
        """Replayed responses are free."""
        orchestrator = build(settings, store, scripted_models)
        await collect(orchestrator.stream_turn(turn("same")))
        balance = await store.get_token_balance("user-1")

        await collect(orchestrator.stream_turn(turn("same")))

        assert await store.get_token_balance("user-1") == balance

    @pytest.mark.asyncio
    async def test_prompt_comparison_is_exact(self, settings, store, scripted_models):
        """A prompt differing only in whitespace misses the cache."""
        orchestrator = build(settings, store, scripted_models)
        await collect(orchestrator.stream_turn(turn("hello")))

        await collect(orchestrator.stream_turn(turn("hello ")))

        assert scripted_models["anthropic"].calls == 2

    @pytest.mark.asyncio
    async def test_request_can_opt_out(self, settings, store, scripted_models):
        """enable_cache=False on the request bypasses lookup and write."""
        orchestrator = build(settings, store, scripted_models)
        await collect(orchestrator.stream_turn(turn("q", enable_cache=False)))
        await collect(orchestrator.stream_turn(turn("q", enable_cache=False)))

        assert scripted_models["anthropic"].calls == 2

    @pytest.mark.asyncio
    async def test_user_preference_disables_cache(self, settings, store, scripted_models):
        """Users who turned caching off always get a fresh response."""
        await store.upsert_user_preferences(UserAIPreferences(user_id="user-1", enable_cache=False))
        orchestrator = build(settings, store, scripted_models)
        await collect(orchestrator.stream_turn(turn("q")))
        await collect(orchestrator.stream_turn(turn("q")))

        assert scripted_models["anthropic"].calls == 2

    @pytest.mark.asyncio
    async def test_setting_disables_cache(self, store, scripted_models):
        """The global cache switch wins over request and preference."""
        settings = make_settings(cache_enabled=False)
        orchestrator = build(settings, store, scripted_models)
        await collect(orchestrator.stream_turn(turn("q")))
        await collect(orchestrator.stream_turn(turn("q")))

        assert scripted_models["anthropic"].calls == 2


class TestContinuation:
    """Responses longer than the output ceiling."""

    @pytest.mark.asyncio
    async def test_spliced_across_three_segments(self, store):
        """A response of 2.5x the ceiling arrives whole over three segments."""
        settings = make_settings(max_tokens_cap=4, max_response_segments=3)
        model = ScriptedChatModel(response=TEN_WORDS)
        orchestrator = build(settings, store, {"anthropic": model})

        events = await collect(orchestrator.stream_turn(turn()))

        assert text_of(events) == TEN_WORDS
        assert model.calls == 3
        assert model.max_tokens_seen == [4, 4, 4]
        usage = usage_of(events)
        assert usage.segments == 3
        assert usage.completion_tokens == 10

        entries = await store.list_usage("user-1")
        assert len(entries) == 1
        assert entries[0].completion_tokens == 10

    @pytest.mark.asyncio
    async def test_ceiling_is_model_limit_when_lower(self, store):
        """The model's own max_tokens caps output below the global cap."""
        settings = make_settings(max_tokens_cap=100_000)
        model = ScriptedChatModel(response="short answer")
        orchestrator = build(settings, store, {"anthropic": model})

        await collect(orchestrator.stream_turn(turn()))

        assert model.max_tokens_seen == [8192]

    @pytest.mark.asyncio
    async def test_segment_bound_raises_without_extra_calls(self, store):
        """Hitting the segment bound fails the turn after exactly that many calls."""
        settings = make_settings(max_tokens_cap=4, max_response_segments=2)
        claude = ScriptedChatModel(response=TEN_WORDS)
        gpt = ScriptedChatModel(response="unused")
        orchestrator = build(settings, store, {"anthropic": claude, "openai": gpt})

        events: list[Any] = []
        with pytest.raises(MaxSegmentsExceededError):
            async for event in orchestrator.stream_turn(turn()):
                events.append(event)

        assert claude.calls == 2
        assert gpt.calls == 0
        assert text_of(events) == "alpha beta gamma delta epsilon zeta eta theta "
        assert not any(isinstance(e, UsageEvent) for e in events)

        entries = await store.list_usage("user-1")
        assert len(entries) == 1
        assert entries[0].success is False
        assert entries[0].model_id == "model-claude"
        assert "Maximum segments" in entries[0].error_message
        assert await store.get_token_balance("user-1") == 1000

    @pytest.mark.asyncio
    async def test_continuation_that_cannot_start_is_fatal(self, store):
        """A route that refuses a continuation is not swapped for another."""
        settings = make_settings(max_tokens_cap=4, max_response_segments=3)
        claude = ContinuationRefused(response=TEN_WORDS)
        gpt = ScriptedChatModel(response="unused")
        orchestrator = build(settings, store, {"anthropic": claude, "openai": gpt})

        events: list[Any] = []
        with pytest.raises(ProviderStreamError):
            async for event in orchestrator.stream_turn(turn()):
                events.append(event)

        assert text_of(events) == "alpha beta gamma delta "
        assert gpt.calls == 0
        entries = await store.list_usage("user-1")
        assert len(entries) == 1
        assert entries[0].success is False
        assert entries[0].model_id == "model-claude"


class TestFallback:
    """Failover to the next route."""

    @pytest.mark.asyncio
    async def test_failure_before_first_token_falls_back(self, settings, store, scripted_models):
        """A primary that fails up front is replaced by the next route."""
        scripted_models["anthropic"] = ScriptedChatModel(fail_with="overloaded")
        orchestrator = build(settings, store, scripted_models)

        events = await collect(orchestrator.stream_turn(turn()))

        assert text_of(events) == "Hello from GPT."
        usage = usage_of(events)
        assert usage.fallback_used is True
        assert usage.provider == "openai"
        assert usage.model_id == "model-gpt4"

        entries = await store.list_usage("user-1")
        assert len(entries) == 1
        assert entries[0].fallback_used is True
        assert entries[0].success is True
        assert entries[0].model_id == "model-gpt4"

    @pytest.mark.asyncio
    async def test_first_token_timeout_falls_back(self, store, scripted_models):
        """A primary that stays silent past the timeout is abandoned."""
        settings = make_settings(first_token_timeout_seconds=0.05)
        scripted_models["anthropic"] = ScriptedChatModel(response="late", first_token_delay=1.0)
        orchestrator = build(settings, store, scripted_models)

        events = await collect(orchestrator.stream_turn(turn()))

        assert text_of(events) == "Hello from GPT."
        assert usage_of(events).fallback_used is True
        breaker = orchestrator._chain.breaker("anthropic")
        assert breaker.to_dict()["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_open_breaker_skips_provider(self, store, scripted_models):
        """Once a provider's breaker opens it is not called again."""
        settings = make_settings(provider_failure_threshold=1)
        scripted_models["anthropic"] = ScriptedChatModel(fail_with="down")
        orchestrator = build(settings, store, scripted_models)

        await collect(orchestrator.stream_turn(turn("one")))
        await collect(orchestrator.stream_turn(turn("two")))

        assert scripted_models["anthropic"].calls == 1
        assert scripted_models["openai"].calls == 2
        assert orchestrator._chain.breaker("anthropic").state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_failure_after_first_token_is_fatal(self, settings, store, scripted_models):
        """A provider that dies mid-stream is not replaced."""
        scripted_models["anthropic"] = MidStreamFailure()
        orchestrator = build(settings, store, scripted_models)

        events: list[Any] = []
        with pytest.raises(ProviderStreamError):
            async for event in orchestrator.stream_turn(turn()):
                events.append(event)

        assert text_of(events) == "partial "
        assert scripted_models["openai"].calls == 0
        entries = await store.list_usage("user-1")
        assert len(entries) == 1
        assert entries[0].success is False

    @pytest.mark.asyncio
    async def test_empty_catalog_uses_fallback_routes(self, settings, scripted_models):
        """With nothing selectable, the configured routes still serve the turn."""
        empty = MemoryMeteringStore()
        await empty.set_token_balance("user-1", 100)
        orchestrator = build(settings, empty, scripted_models)

        events = await collect(orchestrator.stream_turn(turn()))

        assert text_of(events) == "Hello from Claude."
        usage = usage_of(events)
        assert usage.fallback_used is True
        assert usage.cost == 0.0
        assert usage.model_id == "claude-3-5-sonnet-20240620"

    @pytest.mark.asyncio
    async def test_no_provider_available(self, store, scripted_models):
        """With no configured provider the turn fails and logs once."""
        settings = make_settings(anthropic_api_key=None, openai_api_key=None)
        orchestrator = build(settings, store, scripted_models)

        with pytest.raises(NoProviderAvailableError):
            await collect(orchestrator.stream_turn(turn()))

        entries = await store.list_usage("user-1")
        assert len(entries) == 1
        assert entries[0].success is False
        assert entries[0].model_id is None
        assert await store.get_token_balance("user-1") == 1000


class TestTelemetryWriteFailures:
    """Ledger and cache write failures never reach the caller."""

    @pytest.mark.asyncio
    async def test_turn_completes_when_writes_fail(self, settings, scripted_models):
        failing = FailingWritesStore()
        await seed_store(failing)
        orchestrator = build(settings, failing, scripted_models)

        events = await collect(orchestrator.stream_turn(turn()))

        assert text_of(events) == "Hello from Claude."
        assert isinstance(events[-2], UsageEvent)
        assert isinstance(events[-1], DoneEvent)
        assert usage_of(events).model_id == "model-claude"
        assert await failing.list_usage("user-1") == []
        assert await failing.get_token_balance("user-1") == 999

    @pytest.mark.asyncio
    async def test_failed_cache_write_means_next_turn_misses(self, settings, scripted_models):
        failing = FailingWritesStore()
        await seed_store(failing)
        orchestrator = build(settings, failing, scripted_models)

        await collect(orchestrator.stream_turn(turn()))
        events = await collect(orchestrator.stream_turn(turn()))

        assert usage_of(events).was_cached is False
        assert scripted_models["anthropic"].calls == 2


class TestCancellation:
    """Consumer-initiated cancellation."""

    @pytest.mark.asyncio
    async def test_closing_stream_writes_nothing(self, settings, store):
        """A turn abandoned mid-stream logs no usage and debits nothing."""
        model = ScriptedChatModel(response=TEN_WORDS)
        orchestrator = build(settings, store, {"anthropic": model})

        stream = orchestrator.stream_turn(turn())
        first = await stream.__anext__()
        await stream.aclose()

        assert isinstance(first, TokenEvent)
        assert await store.list_usage("user-1") == []
        assert await store.get_token_balance("user-1") == 1000
