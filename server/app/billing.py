"""Prepaid token balance gate and debit."""

from __future__ import annotations

import math

import structlog

from server.app.exceptions import InsufficientBalanceError
from server.app.storage.backend import BalanceStore

logger = structlog.get_logger(__name__)

TOKENS_PER_BALANCE_UNIT = 1000


def balance_units(total_tokens: int) -> int:
    """Balance units charged for a number of consumed tokens (rounded up)."""
    return math.ceil(max(0, total_tokens) / TOKENS_PER_BALANCE_UNIT)


class BillingService:
    """Checks and debits per-user token balances.

    Example:
        billing = BillingService(store, min_balance=10)
        await billing.ensure_balance("user-1")  # raises InsufficientBalanceError
        await billing.debit("user-1", "gpt-4-turbo", 1200, 300)
    """

    def __init__(self, store: BalanceStore, min_balance: int = 10) -> None:
        self._store = store
        self.min_balance = min_balance

    async def ensure_balance(self, user_id: str) -> int:
        """Require at least min_balance units before a turn starts.

        Returns:
            The current balance.

        Raises:
            InsufficientBalanceError: No profile, or balance below the minimum.
        """
        balance = await self._store.get_token_balance(user_id)
        if balance is None or balance < self.min_balance:
            logger.info(
                "Insufficient token balance",
                user_id=user_id,
                balance=balance,
                minimum=self.min_balance,
            )
            raise InsufficientBalanceError(user_id, balance or 0, self.min_balance)
        return balance

    async def debit(
        self,
        user_id: str,
        model_used: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> bool:
        """Charge a completed turn against the user's balance.

        Returns:
            True if the debit was recorded. Failures are logged.
        """
        units = balance_units(prompt_tokens + completion_tokens)
        try:
            balance = await self._store.consume_tokens(
                user_id, units, model_used, prompt_tokens, completion_tokens
            )
        except Exception as e:
            logger.warning("Token debit failed", user_id=user_id, units=units, error=str(e))
            return False

        logger.debug("Token balance debited", user_id=user_id, units=units, balance=balance)
        return True
