"""Centralized error handling and custom exceptions for Forgebench."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standardized error codes for client communication."""

    # General errors
    INTERNAL_ERROR = "internal_error"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"

    # Request preconditions
    UNAUTHENTICATED = "unauthenticated"
    INSUFFICIENT_BALANCE = "insufficient_balance"

    # LLM errors
    NO_MODELS_AVAILABLE = "no_models_available"
    LENGTH_LIMIT = "length_limit"
    PROVIDER_STREAM_FAILED = "provider_stream_failed"
    PROVIDER_TIMEOUT = "provider_timeout"

    # Storage errors
    STORAGE_ERROR = "storage_error"


class ForgeError(Exception):
    """Base exception for all Forgebench errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class UnauthenticatedError(ForgeError):
    """No valid session accompanies the request."""

    def __init__(self, reason: str | None = None):
        super().__init__(
            message="Not authenticated. Please log in again.",
            code=ErrorCode.UNAUTHENTICATED,
            details={"reason": reason},
        )


class InsufficientBalanceError(ForgeError):
    """The user's prepaid token balance is below the minimum."""

    def __init__(self, user_id: str, balance: int, minimum: int):
        super().__init__(
            message="Insufficient token balance. Please purchase more tokens.",
            code=ErrorCode.INSUFFICIENT_BALANCE,
            details={"user_id": user_id, "balance": balance, "minimum": minimum},
        )


class LLMError(ForgeError):
    """Errors related to LLM operations."""

    pass


class NoProviderAvailableError(LLMError):
    """Primary, fallback and last-resort providers are all unavailable."""

    def __init__(self, attempted: list[str] | None = None):
        super().__init__(
            message="No models available",
            code=ErrorCode.NO_MODELS_AVAILABLE,
            details={"attempted": attempted or []},
        )


class MaxSegmentsExceededError(LLMError):
    """The continuation loop hit its segment bound."""

    def __init__(self, max_segments: int):
        super().__init__(
            message="Cannot continue message: Maximum segments reached",
            code=ErrorCode.LENGTH_LIMIT,
            details={"max_segments": max_segments},
        )


class ProviderStreamError(LLMError):
    """The chosen provider failed while streaming."""

    def __init__(self, provider: str, model: str, reason: str | None = None):
        super().__init__(
            message=f"Provider '{provider}' failed while streaming"
            + (f": {reason}" if reason else ""),
            code=ErrorCode.PROVIDER_STREAM_FAILED,
            details={"provider": provider, "model": model, "reason": reason},
        )


class ProviderTimeoutError(ProviderStreamError):
    """The provider produced no output within the first-token timeout."""

    def __init__(self, provider: str, model: str, timeout_seconds: float):
        super().__init__(provider, model, reason=f"no output within {timeout_seconds}s")
        self.code = ErrorCode.PROVIDER_TIMEOUT
        self.details["timeout_seconds"] = timeout_seconds


class StorageBackendError(ForgeError):
    """Error related to storage backend initialization."""

    def __init__(self, message: str, backend_type: str):
        super().__init__(
            message=message,
            code=ErrorCode.STORAGE_ERROR,
            details={"backend_type": backend_type},
        )


class ValidationError(ForgeError):
    """Input validation failed."""

    def __init__(self, field: str, message: str):
        super().__init__(
            message=f"Validation failed for '{field}': {message}",
            code=ErrorCode.VALIDATION_ERROR,
            details={"field": field, "error": message},
        )
