"""Token accounting helpers.

Providers normally report usage on the final stream chunk. When they do not,
counts are estimated from character length.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

# Approximate chars-per-token ratio for estimation
# GPT-family: ~4 chars/token, Claude: ~3.5 chars/token
DEFAULT_CHARS_PER_TOKEN = 4

# Finish reasons meaning "stopped on the output ceiling", across vendors
TRUNCATION_FINISH_REASONS = frozenset({"length", "max_tokens", "MAX_TOKENS"})


@dataclass
class TokenUsage:
    """Prompt/completion token counts for one or more segments."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, other: TokenUsage) -> None:
        """Accumulate another segment's usage."""
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens


def estimate_tokens(text: str, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Estimate token count from text.

    Args:
        text: Text to estimate tokens for.
        chars_per_token: Characters per token ratio.

    Returns:
        Estimated count, at least 1 for non-empty text.
    """
    if not text:
        return 0
    return max(1, int(len(text) / chars_per_token))


def estimate_messages_tokens(messages: Sequence[Any]) -> int:
    """Estimate total tokens for a sequence of LangChain messages."""
    total = 0
    for message in messages:
        content = message.content
        if isinstance(content, str):
            total += estimate_tokens(content)
        elif isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text":
                    total += estimate_tokens(part.get("text", ""))
    return total


def usage_from_chunk(chunk: Any) -> TokenUsage | None:
    """Extract reported usage from a stream chunk, if any."""
    usage = getattr(chunk, "usage_metadata", None)
    if not usage:
        return None
    return TokenUsage(
        prompt_tokens=int(usage.get("input_tokens", 0) or 0),
        completion_tokens=int(usage.get("output_tokens", 0) or 0),
    )


def is_truncated(chunk: Any) -> bool:
    """Whether a stream chunk reports that output hit the token ceiling."""
    metadata = getattr(chunk, "response_metadata", None) or {}
    finish_reason = metadata.get("finish_reason")
    if finish_reason is not None and str(finish_reason) in TRUNCATION_FINISH_REASONS:
        return True
    return metadata.get("stop_reason") == "max_tokens"
