"""Append-only usage ledger.

Every chat turn that got past the billing gate records exactly one entry,
whether it was served from cache, streamed by a provider, or failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

import structlog

from server.app.models import TaskType, UsageLogEntry
from server.app.storage.backend import UsageStore

logger = structlog.get_logger(__name__)


@dataclass
class UsageSummary:
    """Aggregated usage for a user."""

    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_cost: float = 0.0
    request_count: int = 0
    cache_hits: int = 0
    fallbacks: int = 0
    failures: int = 0
    mean_latency_ms: float = 0.0
    first_request: Optional[datetime] = None
    last_request: Optional[datetime] = None

    @property
    def total_tokens(self) -> int:
        """Prompt plus completion tokens."""
        return self.total_prompt_tokens + self.total_completion_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_prompt_tokens": self.total_prompt_tokens,
            "total_completion_tokens": self.total_completion_tokens,
            "total_tokens": self.total_tokens,
            "total_cost": round(self.total_cost, 6),
            "request_count": self.request_count,
            "cache_hits": self.cache_hits,
            "fallbacks": self.fallbacks,
            "failures": self.failures,
            "mean_latency_ms": round(self.mean_latency_ms, 1),
            "first_request": self.first_request.isoformat() if self.first_request else None,
            "last_request": self.last_request.isoformat() if self.last_request else None,
        }


class UsageLedger:
    """Records and summarizes per-turn usage.

    Example:
        ledger = UsageLedger(store)
        await ledger.log_usage(
            user_id="user-1",
            model_id="model-sonnet",
            prompt_tokens=1000,
            completion_tokens=500,
            cost=0.0105,
            latency_ms=2300,
        )
        summary = await ledger.get_user_summary("user-1")
        print(f"Cost: ${summary.total_cost:.4f}")
    """

    def __init__(self, store: UsageStore) -> None:
        self._store = store

    async def log_usage(
        self,
        user_id: str,
        model_id: Optional[str],
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        cost: float = 0.0,
        latency_ms: int = 0,
        was_cached: bool = False,
        fallback_used: bool = False,
        task_type: TaskType | str = TaskType.CHAT,
        success: bool = True,
        error_message: str = "",
    ) -> bool:
        """Append a usage record.

        Args:
            user_id: User the turn belongs to.
            model_id: Catalog (or vendor) model that served the turn, if any.
            prompt_tokens: Input tokens summed over all segments.
            completion_tokens: Output tokens summed over all segments.
            cost: Cost in USD.
            latency_ms: Wall-clock duration of the turn.
            was_cached: Whether the response came from the cache.
            fallback_used: Whether a non-primary route served the turn.
            task_type: Intent of the turn.
            success: Whether the turn completed.
            error_message: Failure description for unsuccessful turns.

        Returns:
            True if the entry was stored. Storage failures are logged.
        """
        entry = UsageLogEntry(
            user_id=user_id,
            model_id=model_id,
            prompt_tokens=max(0, prompt_tokens),
            completion_tokens=max(0, completion_tokens),
            cost=cost,
            latency_ms=latency_ms,
            was_cached=was_cached,
            fallback_used=fallback_used,
            task_type=task_type.value if isinstance(task_type, TaskType) else task_type,
            success=success,
            error_message=error_message,
        )
        try:
            await self._store.append_usage(entry)
        except Exception as e:
            logger.warning("Usage log write failed", user_id=user_id, error=str(e))
            return False

        logger.debug(
            "Recorded usage",
            user_id=user_id,
            model_id=model_id,
            total_tokens=entry.total_tokens,
            cost=f"${cost:.6f}",
            was_cached=was_cached,
            success=success,
        )
        return True

    async def get_user_entries(
        self, user_id: str, since: Optional[datetime] = None
    ) -> Sequence[UsageLogEntry]:
        """All usage records for a user, oldest first."""
        return await self._store.list_usage(user_id, since)

    async def get_user_summary(
        self, user_id: str, since: Optional[datetime] = None
    ) -> UsageSummary:
        """Aggregated usage for a user.

        Args:
            user_id: User to summarize.
            since: Only count records created at or after this time.

        Returns:
            UsageSummary with totals.
        """
        return self._aggregate(await self.get_user_entries(user_id, since))

    def _aggregate(self, entries: Sequence[UsageLogEntry]) -> UsageSummary:
        if not entries:
            return UsageSummary()

        summary = UsageSummary(
            request_count=len(entries),
            first_request=entries[0].created_at,
            last_request=entries[-1].created_at,
        )
        total_latency = 0
        for entry in entries:
            summary.total_prompt_tokens += entry.prompt_tokens
            summary.total_completion_tokens += entry.completion_tokens
            summary.total_cost += entry.cost
            summary.cache_hits += int(entry.was_cached)
            summary.fallbacks += int(entry.fallback_used)
            summary.failures += int(not entry.success)
            total_latency += entry.latency_ms
        summary.mean_latency_ms = total_latency / len(entries)
        return summary
