"""Unit tests for custom exceptions."""

from __future__ import annotations

from server.app.exceptions import (
    ErrorCode,
    ForgeError,
    InsufficientBalanceError,
    LLMError,
    MaxSegmentsExceededError,
    NoProviderAvailableError,
    ProviderStreamError,
    ProviderTimeoutError,
    StorageBackendError,
    UnauthenticatedError,
    ValidationError,
)


class TestForgeError:
    def test_defaults(self):
        error = ForgeError("boom")
        assert error.code == ErrorCode.INTERNAL_ERROR
        assert error.details == {}
        assert str(error) == "boom"

    def test_to_dict(self):
        error = ForgeError("boom", ErrorCode.NOT_FOUND, {"id": "x"})
        assert error.to_dict() == {
            "error": True,
            "code": ErrorCode.NOT_FOUND,
            "message": "boom",
            "details": {"id": "x"},
        }


class TestDomainErrors:
    """Codes and messages clients rely on."""

    def test_unauthenticated(self):
        error = UnauthenticatedError("expired")
        assert error.code == ErrorCode.UNAUTHENTICATED
        assert error.details == {"reason": "expired"}

    def test_insufficient_balance(self):
        error = InsufficientBalanceError("user-1", 3, 10)
        assert error.code == ErrorCode.INSUFFICIENT_BALANCE
        assert error.message == "Insufficient token balance. Please purchase more tokens."
        assert error.details == {"user_id": "user-1", "balance": 3, "minimum": 10}

    def test_no_provider_available(self):
        error = NoProviderAvailableError(["anthropic/claude"])
        assert isinstance(error, LLMError)
        assert error.message == "No models available"
        assert error.details["attempted"] == ["anthropic/claude"]

    def test_max_segments(self):
        error = MaxSegmentsExceededError(2)
        assert error.code == ErrorCode.LENGTH_LIMIT
        assert error.message == "Cannot continue message: Maximum segments reached"

    def test_provider_stream_error(self):
        error = ProviderStreamError("openai", "gpt-4-turbo", "connection reset")
        assert error.code == ErrorCode.PROVIDER_STREAM_FAILED
        assert error.message == "Provider 'openai' failed while streaming: connection reset"

    def test_provider_timeout_is_stream_error(self):
        error = ProviderTimeoutError("openai", "gpt-4-turbo", 30.0)
        assert isinstance(error, ProviderStreamError)
        assert error.code == ErrorCode.PROVIDER_TIMEOUT
        assert error.details["timeout_seconds"] == 30.0

    def test_validation_error(self):
        error = ValidationError("messages", "At least one message is required")
        assert error.code == ErrorCode.VALIDATION_ERROR
        assert error.details["field"] == "messages"

    def test_storage_backend_error(self):
        error = StorageBackendError("bad backend", backend_type="postgres")
        assert error.code == ErrorCode.STORAGE_ERROR
        assert error.details == {"backend_type": "postgres"}
