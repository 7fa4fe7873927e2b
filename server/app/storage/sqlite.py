"""SQLite storage backend implementation.

Implements the MeteringStore protocol using SQLite as the database engine.
Holds the provider/model catalog, user preferences, the response cache,
the usage ledger and token balances.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import structlog

from server.app.models import (
    Model,
    Provider,
    ResponseCacheEntry,
    UsageLogEntry,
    UserAIPreferences,
    utcnow,
)

logger = structlog.get_logger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS ai_providers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        display_name TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        api_key_required INTEGER NOT NULL DEFAULT 1,
        cost_per_1k_input_tokens REAL NOT NULL DEFAULT 0,
        cost_per_1k_output_tokens REAL NOT NULL DEFAULT 0,
        priority INTEGER NOT NULL DEFAULT 0,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_models (
        id TEXT PRIMARY KEY,
        provider_id TEXT NOT NULL REFERENCES ai_providers(id),
        model_id TEXT NOT NULL,
        display_name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        is_active INTEGER NOT NULL DEFAULT 1,
        max_tokens INTEGER NOT NULL DEFAULT 4096,
        context_window INTEGER NOT NULL DEFAULT 0,
        capabilities TEXT NOT NULL DEFAULT '[]',
        cost_multiplier REAL NOT NULL DEFAULT 1.0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS model_task_affinity (
        task_type TEXT NOT NULL,
        model_id TEXT NOT NULL,
        score REAL NOT NULL,
        PRIMARY KEY (task_type, model_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_ai_preferences (
        user_id TEXT PRIMARY KEY,
        preferred_provider TEXT NOT NULL,
        preferred_model_id TEXT,
        enable_auto_selection INTEGER NOT NULL DEFAULT 1,
        enable_cache INTEGER NOT NULL DEFAULT 1,
        max_cost_per_request REAL NOT NULL DEFAULT 1.0,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_response_cache (
        prompt_hash TEXT PRIMARY KEY,
        prompt TEXT NOT NULL,
        response TEXT NOT NULL,
        model_id TEXT NOT NULL,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        hit_count INTEGER NOT NULL DEFAULT 0,
        expires_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        last_used_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_usage_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        model_id TEXT,
        prompt_tokens INTEGER NOT NULL,
        completion_tokens INTEGER NOT NULL,
        total_tokens INTEGER NOT NULL,
        cost REAL NOT NULL,
        latency_ms INTEGER NOT NULL,
        was_cached INTEGER NOT NULL,
        fallback_used INTEGER NOT NULL,
        task_type TEXT NOT NULL,
        success INTEGER NOT NULL,
        error_message TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_usage_user
    ON ai_usage_logs(user_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS user_token_balances (
        user_id TEXT PRIMARY KEY,
        token_balance INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        tokens INTEGER NOT NULL,
        model_used TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL,
        completion_tokens INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
]


def _ts(value: datetime) -> str:
    """Normalize a timestamp to a sortable UTC ISO string."""
    return value.astimezone(UTC).isoformat()


class SqliteMeteringStore:
    """SQLite-based metering store.

    Every operation opens its own connection, so concurrent chat turns
    never share a cursor. Cache writes are upserts and ledger writes are
    appends, which keeps concurrent writers independent.
    """

    def __init__(self, connection_string: str = ".forgebench/metering.db"):
        """Initialize SQLite metering store.

        Args:
            connection_string: Path to the SQLite database file.
        """
        self.connection_string = connection_string
        self.db_path = Path(connection_string).expanduser().resolve()

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.debug("SqliteMeteringStore initialized", db_path=str(self.db_path))

    async def initialize(self) -> None:
        """Initialize the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()

        logger.info("SQLite metering store initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        """Close all connections (connections are per-operation)."""
        logger.debug("SQLite metering store closed")

    # Catalog operations
    async def get_provider(self, provider_id: str) -> Optional[Provider]:
        """Get a provider by catalog ID."""
        row = await self._fetchone("SELECT * FROM ai_providers WHERE id = ?", (provider_id,))
        return self._row_to_provider(row) if row else None

    async def list_providers(self, active_only: bool = True) -> list[Provider]:
        """List providers ordered by priority (highest first)."""
        query = "SELECT * FROM ai_providers"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY priority DESC"
        return [self._row_to_provider(row) for row in await self._fetchall(query, ())]

    async def get_model(self, model_id: str) -> Optional[Model]:
        """Get a model by catalog ID."""
        row = await self._fetchone("SELECT * FROM ai_models WHERE id = ?", (model_id,))
        return self._row_to_model(row) if row else None

    async def list_models(
        self,
        provider_id: Optional[str] = None,
        active_only: bool = True,
    ) -> list[Model]:
        """List models, optionally restricted to one provider."""
        conditions = []
        params: list[Any] = []
        if active_only:
            conditions.append("is_active = 1")
        if provider_id is not None:
            conditions.append("provider_id = ?")
            params.append(provider_id)

        query = "SELECT * FROM ai_models"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        return [self._row_to_model(row) for row in await self._fetchall(query, tuple(params))]

    async def find_model(self, provider_name: str, vendor_model_id: str) -> Optional[Model]:
        """Find the catalog model for a provider tag and vendor model identifier."""
        row = await self._fetchone(
            """
            SELECT m.* FROM ai_models m
            JOIN ai_providers p ON p.id = m.provider_id
            WHERE p.name = ? AND m.model_id = ? AND p.is_active = 1
            LIMIT 1
            """,
            (provider_name, vendor_model_id),
        )
        return self._row_to_model(row) if row else None

    async def task_affinity(self, task_type: str, user_id: Optional[str]) -> dict[str, float]:
        """Score models by explicit affinity, else by capability tags."""
        scores: dict[str, float] = {}
        for model in await self.list_models(active_only=False):
            if task_type in model.capabilities:
                scores[model.id] = 1.0

        rows = await self._fetchall(
            "SELECT model_id, score FROM model_task_affinity WHERE task_type = ?",
            (task_type,),
        )
        for row in rows:
            scores[row["model_id"]] = row["score"]
        return scores

    async def set_task_affinity(self, task_type: str, model_id: str, score: float) -> None:
        """Pin an explicit affinity score for a (task type, model) pair."""
        await self._execute(
            """
            INSERT INTO model_task_affinity (task_type, model_id, score) VALUES (?, ?, ?)
            ON CONFLICT(task_type, model_id) DO UPDATE SET score = excluded.score
            """,
            (task_type, model_id, score),
        )

    async def upsert_provider(self, provider: Provider) -> None:
        """Create or replace a provider."""
        await self._execute(
            """
            INSERT OR REPLACE INTO ai_providers (
                id, name, display_name, is_active, api_key_required,
                cost_per_1k_input_tokens, cost_per_1k_output_tokens, priority, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                provider.id,
                provider.name,
                provider.display_name,
                int(provider.is_active),
                int(provider.api_key_required),
                provider.cost_per_1k_input_tokens,
                provider.cost_per_1k_output_tokens,
                provider.priority,
                json.dumps(provider.metadata),
            ),
        )

    async def upsert_model(self, model: Model) -> None:
        """Create or replace a model."""
        await self._execute(
            """
            INSERT OR REPLACE INTO ai_models (
                id, provider_id, model_id, display_name, description, is_active,
                max_tokens, context_window, capabilities, cost_multiplier
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                model.id,
                model.provider_id,
                model.model_id,
                model.display_name,
                model.description,
                int(model.is_active),
                model.max_tokens,
                model.context_window,
                json.dumps(list(model.capabilities)),
                model.cost_multiplier,
            ),
        )

    # Preference operations
    async def get_user_preferences(self, user_id: str) -> Optional[UserAIPreferences]:
        """Get a user's preferences."""
        row = await self._fetchone(
            "SELECT * FROM user_ai_preferences WHERE user_id = ?", (user_id,)
        )
        if not row:
            return None
        return UserAIPreferences(
            user_id=row["user_id"],
            preferred_provider=row["preferred_provider"],
            preferred_model_id=row["preferred_model_id"],
            enable_auto_selection=bool(row["enable_auto_selection"]),
            enable_cache=bool(row["enable_cache"]),
            max_cost_per_request=row["max_cost_per_request"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def upsert_user_preferences(self, preferences: UserAIPreferences) -> UserAIPreferences:
        """Create or replace a user's preferences."""
        preferences.updated_at = utcnow()
        await self._execute(
            """
            INSERT OR REPLACE INTO user_ai_preferences (
                user_id, preferred_provider, preferred_model_id, enable_auto_selection,
                enable_cache, max_cost_per_request, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                preferences.user_id,
                preferences.preferred_provider,
                preferences.preferred_model_id,
                int(preferences.enable_auto_selection),
                int(preferences.enable_cache),
                preferences.max_cost_per_request,
                _ts(preferences.updated_at),
            ),
        )
        return preferences

    # Cache operations
    async def fetch_cached_response(
        self, prompt_hash: str, now: datetime
    ) -> Optional[ResponseCacheEntry]:
        """Return the unexpired entry and bump its hit statistics in one transaction."""
        now_ts = _ts(now)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                """
                UPDATE ai_response_cache
                SET hit_count = hit_count + 1, last_used_at = ?
                WHERE prompt_hash = ? AND expires_at > ?
                """,
                (now_ts, prompt_hash, now_ts),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                return None
            async with db.execute(
                "SELECT * FROM ai_response_cache WHERE prompt_hash = ?", (prompt_hash,)
            ) as select:
                row = await select.fetchone()
            await db.commit()

        return ResponseCacheEntry(
            prompt_hash=row["prompt_hash"],
            prompt=row["prompt"],
            response=row["response"],
            model_id=row["model_id"],
            tokens_used=row["tokens_used"],
            hit_count=row["hit_count"],
            expires_at=datetime.fromisoformat(row["expires_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            last_used_at=datetime.fromisoformat(row["last_used_at"]),
        )

    async def save_cached_response(self, entry: ResponseCacheEntry) -> None:
        """Create or replace the entry for entry.prompt_hash."""
        await self._execute(
            """
            INSERT INTO ai_response_cache (
                prompt_hash, prompt, response, model_id, tokens_used,
                hit_count, expires_at, created_at, last_used_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(prompt_hash) DO UPDATE SET
                response = excluded.response,
                model_id = excluded.model_id,
                tokens_used = excluded.tokens_used,
                expires_at = excluded.expires_at,
                last_used_at = excluded.last_used_at
            """,
            (
                entry.prompt_hash,
                entry.prompt,
                entry.response,
                entry.model_id,
                entry.tokens_used,
                entry.hit_count,
                _ts(entry.expires_at),
                _ts(entry.created_at),
                _ts(entry.last_used_at),
            ),
        )

    # Usage operations
    async def append_usage(self, entry: UsageLogEntry) -> None:
        """Append a usage record."""
        await self._execute(
            """
            INSERT INTO ai_usage_logs (
                user_id, model_id, prompt_tokens, completion_tokens, total_tokens,
                cost, latency_ms, was_cached, fallback_used, task_type, success,
                error_message, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.user_id,
                entry.model_id,
                entry.prompt_tokens,
                entry.completion_tokens,
                entry.total_tokens,
                entry.cost,
                entry.latency_ms,
                int(entry.was_cached),
                int(entry.fallback_used),
                entry.task_type,
                int(entry.success),
                entry.error_message,
                _ts(entry.created_at),
            ),
        )

    async def list_usage(
        self, user_id: str, since: Optional[datetime] = None
    ) -> list[UsageLogEntry]:
        """List a user's usage records, oldest first."""
        query = "SELECT * FROM ai_usage_logs WHERE user_id = ?"
        params: list[Any] = [user_id]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(_ts(since))
        query += " ORDER BY id ASC"

        return [
            UsageLogEntry(
                user_id=row["user_id"],
                model_id=row["model_id"],
                prompt_tokens=row["prompt_tokens"],
                completion_tokens=row["completion_tokens"],
                cost=row["cost"],
                latency_ms=row["latency_ms"],
                was_cached=bool(row["was_cached"]),
                fallback_used=bool(row["fallback_used"]),
                task_type=row["task_type"],
                success=bool(row["success"]),
                error_message=row["error_message"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in await self._fetchall(query, tuple(params))
        ]

    # Balance operations
    async def get_token_balance(self, user_id: str) -> Optional[int]:
        """Get a user's balance."""
        row = await self._fetchone(
            "SELECT token_balance FROM user_token_balances WHERE user_id = ?", (user_id,)
        )
        return row["token_balance"] if row else None

    async def set_token_balance(self, user_id: str, balance: int) -> None:
        """Set a user's balance."""
        await self._execute(
            """
            INSERT INTO user_token_balances (user_id, token_balance) VALUES (?, ?)
            ON CONFLICT(user_id) DO UPDATE SET token_balance = excluded.token_balance
            """,
            (user_id, balance),
        )

    async def consume_tokens(
        self,
        user_id: str,
        tokens: int,
        model_used: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> int:
        """Deduct balance units, record the transaction and return the new balance."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(
                """
                UPDATE user_token_balances
                SET token_balance = MAX(0, token_balance - ?)
                WHERE user_id = ?
                """,
                (tokens, user_id),
            )
            await db.execute(
                """
                INSERT INTO token_transactions (
                    user_id, tokens, model_used, prompt_tokens, completion_tokens, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, tokens, model_used, prompt_tokens, completion_tokens, _ts(utcnow())),
            )
            async with db.execute(
                "SELECT token_balance FROM user_token_balances WHERE user_id = ?", (user_id,)
            ) as cursor:
                row = await cursor.fetchone()
            await db.commit()

        return row["token_balance"] if row else 0

    # Helpers
    async def _execute(self, query: str, params: tuple[Any, ...]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(query, params)
            await db.commit()

    async def _fetchone(self, query: str, params: tuple[Any, ...]) -> Optional[aiosqlite.Row]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                return await cursor.fetchone()

    async def _fetchall(self, query: str, params: tuple[Any, ...]) -> list[aiosqlite.Row]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                return list(await cursor.fetchall())

    def _row_to_provider(self, row: aiosqlite.Row) -> Provider:
        return Provider(
            id=row["id"],
            name=row["name"],
            display_name=row["display_name"],
            is_active=bool(row["is_active"]),
            api_key_required=bool(row["api_key_required"]),
            cost_per_1k_input_tokens=row["cost_per_1k_input_tokens"],
            cost_per_1k_output_tokens=row["cost_per_1k_output_tokens"],
            priority=row["priority"],
            metadata=json.loads(row["metadata"] or "{}"),
        )

    def _row_to_model(self, row: aiosqlite.Row) -> Model:
        return Model(
            id=row["id"],
            provider_id=row["provider_id"],
            model_id=row["model_id"],
            display_name=row["display_name"],
            description=row["description"],
            is_active=bool(row["is_active"]),
            max_tokens=row["max_tokens"],
            context_window=row["context_window"],
            capabilities=tuple(json.loads(row["capabilities"] or "[]")),
            cost_multiplier=row["cost_multiplier"],
        )
