"""Response cache keyed by exact prompt digest.

Identical prompts (byte for byte) reuse a previously generated answer until
the entry expires. No normalisation is applied to the prompt.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from server.app.models import ResponseCacheEntry, utcnow
from server.app.storage.backend import CacheStore

logger = structlog.get_logger(__name__)

DEFAULT_TTL_HOURS = 24.0


def hash_prompt(prompt: str) -> str:
    """SHA-256 hex digest of the UTF-8 prompt bytes."""
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheHit:
    """A cached response ready to replay."""

    response: str
    model_id: str
    tokens_used: int
    hit_count: int


class ResponseCache:
    """Prompt-hash response cache backed by a CacheStore.

    Store failures degrade: a failed lookup is a miss and a failed write
    returns False. Both are logged.
    """

    def __init__(
        self,
        store: CacheStore,
        clock: Callable[[], datetime] = utcnow,
        default_ttl_hours: float = DEFAULT_TTL_HOURS,
    ) -> None:
        self._store = store
        self._clock = clock
        self._default_ttl_hours = default_ttl_hours

    async def get(self, prompt: str) -> Optional[CacheHit]:
        """Look up an unexpired response for a prompt."""
        prompt_hash = hash_prompt(prompt)
        try:
            entry = await self._store.fetch_cached_response(prompt_hash, self._clock())
        except Exception as e:
            logger.warning("Cache lookup failed", prompt_hash=prompt_hash, error=str(e))
            return None

        if entry is None:
            return None

        logger.debug("Cache hit", prompt_hash=prompt_hash, hit_count=entry.hit_count)
        return CacheHit(
            response=entry.response,
            model_id=entry.model_id,
            tokens_used=entry.tokens_used,
            hit_count=entry.hit_count,
        )

    async def put(
        self,
        prompt: str,
        response: str,
        model_id: str,
        tokens_used: int,
        ttl_hours: Optional[float] = None,
    ) -> bool:
        """Store a response for a prompt, replacing any previous entry.

        Returns:
            True if the entry was written.
        """
        now = self._clock()
        ttl = self._default_ttl_hours if ttl_hours is None else ttl_hours
        entry = ResponseCacheEntry(
            prompt_hash=hash_prompt(prompt),
            prompt=prompt,
            response=response,
            model_id=model_id,
            tokens_used=tokens_used,
            expires_at=now + timedelta(hours=ttl),
            created_at=now,
            last_used_at=now,
        )
        try:
            await self._store.save_cached_response(entry)
        except Exception as e:
            logger.warning("Cache write failed", prompt_hash=entry.prompt_hash, error=str(e))
            return False
        return True
