"""Fixed prompts used by the streaming orchestrator."""

from __future__ import annotations

DEFAULT_SYSTEM_PROMPT = """You are an expert software engineer working alongside the user.

Write complete, working code. When you produce files or commands, keep them
self-contained and ready to run. Prefer clear explanations over long ones."""

CONTINUE_PROMPT = (
    "Continue your prior response. IMPORTANT: Immediately begin from where you left off "
    "without any interruptions. Do not repeat any content, including artifact and action tags."
)


def get_system_prompt(override: str | None = None) -> str:
    """Return the configured system prompt, or the built-in default."""
    return override or DEFAULT_SYSTEM_PROMPT
