"""Usage reporting routes."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from server.app.api.auth import get_current_user_id
from server.app.api.dependencies import get_services
from server.app.api.models import UsageSummaryResponse
from server.app.container import AppServices

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=UsageSummaryResponse)
async def get_usage(
    since: Optional[datetime] = Query(None, description="Only count turns at or after this time"),
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> UsageSummaryResponse:
    """Get the caller's aggregated usage and current token balance."""
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=UTC)
    summary = await services.ledger.get_user_summary(user_id, since)
    balance = await services.store.get_token_balance(user_id)
    return UsageSummaryResponse.from_core(summary, token_balance=balance)
