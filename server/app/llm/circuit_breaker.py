"""Per-provider circuit breakers.

A provider that keeps failing before its first token is skipped for a
cooldown period so chat turns go straight to the next route instead of
waiting on a timeout every time.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = auto()  # Normal operation, requests allowed
    OPEN = auto()  # Failure threshold reached, requests blocked
    HALF_OPEN = auto()  # Cooldown elapsed, next call is a probe


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    name: str
    failure_threshold: int = 3  # Consecutive failures before opening
    cooldown_seconds: float = 60.0  # Time to wait before half-open


class CircuitBreaker:
    """Consecutive-failure circuit breaker for one provider.

    States:
    - CLOSED: Normal operation, all requests pass
    - OPEN: Failure threshold reached, requests blocked
    - HALF-OPEN: Cooldown elapsed, one probe decides the next state

    Example:
        breaker = CircuitBreaker(CircuitBreakerConfig(name="openai"))
        if await breaker.allow_request():
            try:
                ...
                await breaker.record_success()
            except ProviderStreamError as e:
                await breaker.record_failure(str(e))
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._lock = asyncio.Lock()
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        return self._state

    def is_open(self) -> bool:
        """Check if circuit breaker is open."""
        return self._state == CircuitState.OPEN

    async def allow_request(self) -> bool:
        """Whether a call may be attempted now.

        Moves an open circuit to half-open once the cooldown has elapsed.
        """
        async with self._lock:
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                if self._clock() - self._opened_at >= self.config.cooldown_seconds:
                    self._transition_to(CircuitState.HALF_OPEN)
            return self._state != CircuitState.OPEN

    async def record_success(self) -> None:
        """Record a successful call, closing a half-open circuit."""
        async with self._lock:
            self._consecutive_failures = 0
            if self._state != CircuitState.CLOSED:
                self._transition_to(CircuitState.CLOSED)

    async def record_failure(self, error: str) -> None:
        """Record a failed call.

        Args:
            error: Description of the error
        """
        async with self._lock:
            self._consecutive_failures += 1
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

            logger.warning(
                "Failure recorded on circuit breaker",
                name=self.config.name,
                error=error,
                consecutive_failures=self._consecutive_failures,
                state=self._state.name,
            )

    def reset(self) -> None:
        """Manually reset circuit to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._opened_at = self._clock() if new_state == CircuitState.OPEN else None
        if new_state == CircuitState.CLOSED:
            self._consecutive_failures = 0

        logger.info(
            "Circuit breaker state changed",
            name=self.config.name,
            old_state=old_state.name,
            new_state=new_state.name,
        )

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for health reporting."""
        return {
            "name": self.config.name,
            "state": self._state.name,
            "consecutive_failures": self._consecutive_failures,
        }
