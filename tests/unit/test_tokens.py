"""Unit tests for token accounting helpers and the scripted chat model."""

from __future__ import annotations

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage

from server.app.llm.mock import ScriptedChatModel
from server.app.llm.prompts import CONTINUE_PROMPT
from server.app.llm.tokens import (
    TokenUsage,
    estimate_messages_tokens,
    estimate_tokens,
    is_truncated,
    usage_from_chunk,
)


class TestEstimation:
    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abc") == 1
        assert estimate_tokens("a" * 40) == 10

    def test_estimate_messages_tokens(self):
        messages = [
            SystemMessage(content="a" * 8),
            HumanMessage(content=[{"type": "text", "text": "b" * 12}, {"type": "image_url"}]),
        ]
        assert estimate_messages_tokens(messages) == 5

    def test_token_usage_add(self):
        usage = TokenUsage(prompt_tokens=10, completion_tokens=5)
        usage.add(TokenUsage(prompt_tokens=3, completion_tokens=2))
        assert usage.total_tokens == 20


class TestChunkInspection:
    def test_usage_from_chunk(self):
        chunk = AIMessageChunk(
            content="",
            usage_metadata={"input_tokens": 12, "output_tokens": 7, "total_tokens": 19},
        )
        assert usage_from_chunk(chunk) == TokenUsage(prompt_tokens=12, completion_tokens=7)

    def test_usage_missing(self):
        assert usage_from_chunk(AIMessageChunk(content="hi")) is None

    @pytest.mark.parametrize(
        "metadata,expected",
        [
            ({"finish_reason": "length"}, True),
            ({"finish_reason": "MAX_TOKENS"}, True),
            ({"stop_reason": "max_tokens"}, True),
            ({"finish_reason": "stop"}, False),
            ({"stop_reason": "end_turn"}, False),
            ({}, False),
        ],
    )
    def test_is_truncated(self, metadata, expected):
        chunk = AIMessageChunk(content="", response_metadata=metadata)
        assert is_truncated(chunk) is expected


class TestScriptedChatModel:
    """The scripted model used to drive streaming tests."""

    @pytest.mark.asyncio
    async def test_streams_whole_response(self):
        model = ScriptedChatModel(response="one two three")

        chunks = [c async for c in model.astream([HumanMessage(content="hi")])]

        assert "".join(str(c.content) for c in chunks) == "one two three"
        assert chunks[-1].response_metadata["finish_reason"] == "stop"
        assert chunks[-1].usage_metadata["output_tokens"] == 3

    @pytest.mark.asyncio
    async def test_truncates_at_limit(self):
        model = ScriptedChatModel(response="one two three")

        chunks = [c async for c in model.astream([HumanMessage(content="hi")], max_tokens=2)]

        assert "".join(str(c.content) for c in chunks) == "one two "
        assert is_truncated(chunks[-1])

    @pytest.mark.asyncio
    async def test_resumes_after_continue_prompt(self):
        model = ScriptedChatModel(response="one two three")
        messages = [
            HumanMessage(content="hi"),
            AIMessage(content="one two "),
            HumanMessage(content=CONTINUE_PROMPT),
        ]

        chunks = [c async for c in model.astream(messages, max_tokens=2)]

        assert "".join(str(c.content) for c in chunks) == "three"
        assert not is_truncated(chunks[-1])

    @pytest.mark.asyncio
    async def test_earlier_turns_do_not_count_as_delivered(self):
        model = ScriptedChatModel(response="fresh answer")
        messages = [
            HumanMessage(content="first"),
            AIMessage(content="old answer"),
            HumanMessage(content="second"),
        ]

        chunks = [c async for c in model.astream(messages)]

        assert "".join(str(c.content) for c in chunks) == "fresh answer"

    @pytest.mark.asyncio
    async def test_fail_with(self):
        model = ScriptedChatModel(fail_with="overloaded")

        with pytest.raises(RuntimeError, match="overloaded"):
            async for _ in model.astream([HumanMessage(content="hi")]):
                pass
        assert model.calls == 1
