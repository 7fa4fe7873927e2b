"""Chat API routes.

REST endpoint for running a chat turn and receiving an SSE stream.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status

from server.app.api.auth import get_current_user_id
from server.app.api.dependencies import get_orchestrator
from server.app.api.models import ChatRequest, ErrorResponse
from server.app.api.sse import SSEStream
from server.app.llm.orchestrator import ChatTurnRequest, StreamingOrchestrator

router = APIRouter(tags=["chat"])


@router.post(
    "/chat",
    status_code=status.HTTP_200_OK,
    responses={
        401: {"model": ErrorResponse, "description": "Not authenticated"},
        402: {"model": ErrorResponse, "description": "Insufficient token balance"},
        503: {"model": ErrorResponse, "description": "No models available"},
    },
)
async def chat(
    body: ChatRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
):
    """Run one chat turn.

    Streams the response as Server-Sent Events with the following event types:
    - `token`: A piece of response text
    - `usage`: Token usage and cost of the turn
    - `done`: Stream complete
    - `error`: The turn failed after streaming started (terminal)

    Precondition failures (authentication, balance, no available model) are
    returned as JSON errors before any event is sent.
    """
    turn = ChatTurnRequest(
        user_id=user_id,
        messages=[m.to_core() for m in body.messages],
        task_type=body.task_type,
        enable_cache=body.enable_cache,
    )
    events = orchestrator.stream_turn(turn)

    # Pull the first event so precondition errors surface as HTTP errors
    try:
        first = await events.__anext__()
    except StopAsyncIteration:
        first = None

    return SSEStream().create_response(first, events, request)
