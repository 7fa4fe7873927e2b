"""Server-Sent Events (SSE) utilities.

Helpers for streaming chat turn events to the client.

Features:
- Sequential event IDs per stream
- Retry directive for client auto-reconnection
- Terminal error event for failures after the stream has started
- Upstream generator closed when the client disconnects
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import Request
from fastapi.responses import StreamingResponse

from server.app.exceptions import ErrorCode, ForgeError
from server.app.llm.orchestrator import DoneEvent, StreamEvent, TokenEvent, UsageEvent

logger = structlog.get_logger(__name__)


@dataclass
class SSEEvent:
    """Represents a single SSE event with all optional fields."""

    event_type: str
    data: dict[str, Any]
    event_id: str | None = None
    retry_ms: int | None = None

    def format(self) -> str:
        """Format as SSE event string."""
        lines = []
        if self.event_id:
            lines.append(f"id: {self.event_id}")
        if self.retry_ms:
            lines.append(f"retry: {self.retry_ms}")
        lines.append(f"event: {self.event_type}")
        lines.append(f"data: {json.dumps(self.data)}")
        return "\n".join(lines) + "\n\n"


class EventBuilder:
    """Builder for creating SSE events."""

    @staticmethod
    def token(content: str) -> dict:
        """Create a token event."""
        return {"event": "token", "data": {"content": content}}

    @staticmethod
    def usage(event: UsageEvent) -> dict:
        """Create a usage event."""
        return {
            "event": "usage",
            "data": {
                "prompt_tokens": event.prompt_tokens,
                "completion_tokens": event.completion_tokens,
                "total_tokens": event.total_tokens,
                "cost": event.cost,
                "model_id": event.model_id,
                "provider": event.provider,
                "was_cached": event.was_cached,
                "fallback_used": event.fallback_used,
                "segments": event.segments,
            },
        }

    @staticmethod
    def done() -> dict:
        """Create a done event."""
        return {"event": "done", "data": {}}

    @staticmethod
    def error(message: str, code: str | None = None) -> dict:
        """Create an error event."""
        data = {"message": message}
        if code:
            data["code"] = code
        return {"event": "error", "data": data}

    @classmethod
    def from_stream_event(cls, event: StreamEvent) -> dict:
        """Convert an orchestrator event to an SSE event dictionary."""
        if isinstance(event, TokenEvent):
            return cls.token(event.content)
        if isinstance(event, UsageEvent):
            return cls.usage(event)
        if isinstance(event, DoneEvent):
            return cls.done()
        raise TypeError(f"Unknown stream event: {type(event).__name__}")


class SSEStream:
    """Streams orchestrator events as SSE.

    A failure raised by the turn after the stream started is delivered as a
    terminal ``error`` event. When the client disconnects the turn's
    generator is closed, which cancels the provider call.
    """

    def __init__(self, retry_ms: int = 3000) -> None:
        self.retry_ms = retry_ms
        self._counter = 0

    def _next_event_id(self) -> str:
        self._counter += 1
        return str(self._counter)

    def format_event(self, event: dict) -> str:
        """Format an event dictionary with the next event ID."""
        retry_ms = self.retry_ms if self._counter == 0 else None
        return SSEEvent(
            event_type=event["event"],
            data=event["data"],
            event_id=self._next_event_id(),
            retry_ms=retry_ms,
        ).format()

    async def event_generator(
        self,
        first: StreamEvent | None,
        events: AsyncGenerator[StreamEvent, None],
        request: Request,
    ) -> AsyncIterator[str]:
        """Yield formatted SSE strings for a turn.

        Args:
            first: Event already pulled from the turn before the response
                was committed, or None if the turn produced nothing.
            events: The remaining turn events.
            request: Request used for disconnect detection.
        """
        async with aclosing(events):
            try:
                if first is not None:
                    yield self.format_event(EventBuilder.from_stream_event(first))
                async for event in events:
                    if await request.is_disconnected():
                        logger.info("Client disconnected, cancelling turn")
                        break
                    yield self.format_event(EventBuilder.from_stream_event(event))
            except ForgeError as e:
                yield self.format_event(EventBuilder.error(e.message, code=e.code.value))
            except Exception as e:
                logger.error("Chat stream failed", error=str(e))
                yield self.format_event(
                    EventBuilder.error(str(e), code=ErrorCode.INTERNAL_ERROR.value)
                )

    def create_response(
        self,
        first: StreamEvent | None,
        events: AsyncGenerator[StreamEvent, None],
        request: Request,
    ) -> StreamingResponse:
        """Create a StreamingResponse for SSE.

        Returns:
            FastAPI StreamingResponse configured for SSE
        """
        return StreamingResponse(
            self.event_generator(first, events, request),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable Nginx buffering
            },
        )
