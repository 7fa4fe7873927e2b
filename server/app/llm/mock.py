"""Scripted chat model for testing."""

from __future__ import annotations

import asyncio
import re
from typing import Any, AsyncIterator, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage, HumanMessage
from pydantic import Field

from server.app.llm.prompts import CONTINUE_PROMPT
from server.app.llm.tokens import estimate_messages_tokens

_WORD = re.compile(r"\s*\S+\s*")


class ScriptedChatModel(BaseChatModel):
    """Chat model that streams a fixed response, one word per chunk.

    Each call emits at most ``max_tokens`` words (one word counts as one
    token) and reports ``finish_reason="length"`` when the response was cut
    off. Assistant turns that follow the last real user message are treated
    as already delivered, so a continuation call resumes exactly where the
    previous segment stopped.

    Example:
        model = ScriptedChatModel(response="one two three four five")
        chunks = [c async for c in model.astream(messages, max_tokens=2)]
        # "one two " with finish_reason "length"
    """

    response: str = "I understand. Let me help you with that."
    fail_with: Optional[str] = None  # raise before the first chunk
    first_token_delay: float = 0.0
    report_usage: bool = True
    calls: int = 0
    max_tokens_seen: list[int] = Field(default_factory=list)

    @property
    def _llm_type(self) -> str:
        return "scripted"

    def _generate(self, *args: Any, **kwargs: Any) -> Any:
        raise NotImplementedError("Use astream instead")

    async def astream(
        self,
        input: list[BaseMessage] | str,
        config: Any | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[AIMessageChunk]:
        """Stream the next segment of the scripted response."""
        self.calls += 1
        messages = input if isinstance(input, list) else [HumanMessage(content=input)]
        limit = _output_limit(kwargs)
        if limit is not None:
            self.max_tokens_seen.append(limit)

        if self.first_token_delay:
            await asyncio.sleep(self.first_token_delay)
        if self.fail_with:
            raise RuntimeError(self.fail_with)

        delivered = _delivered_text(messages)
        remaining = (
            self.response[len(delivered):] if self.response.startswith(delivered) else self.response
        )
        words = _WORD.findall(remaining)
        emitted = words if limit is None else words[:limit]
        truncated = len(emitted) < len(words)

        for word in emitted:
            yield AIMessageChunk(content=word)

        final: dict[str, Any] = {
            "content": "",
            "response_metadata": {"finish_reason": "length" if truncated else "stop"},
        }
        if self.report_usage:
            prompt_tokens = estimate_messages_tokens(messages)
            final["usage_metadata"] = {
                "input_tokens": prompt_tokens,
                "output_tokens": len(emitted),
                "total_tokens": prompt_tokens + len(emitted),
            }
        yield AIMessageChunk(**final)


def _output_limit(kwargs: dict[str, Any]) -> Optional[int]:
    if kwargs.get("max_tokens") is not None:
        return int(kwargs["max_tokens"])
    generation_config = kwargs.get("generation_config") or {}
    if generation_config.get("max_output_tokens") is not None:
        return int(generation_config["max_output_tokens"])
    return None


def _delivered_text(messages: list[BaseMessage]) -> str:
    """Assistant text already produced since the last real user message."""
    delivered: list[str] = []
    for message in reversed(messages):
        if isinstance(message, HumanMessage):
            if message.content == CONTINUE_PROMPT:
                continue
            break
        if isinstance(message, AIMessage):
            delivered.append(str(message.content))
    return "".join(reversed(delivered))
