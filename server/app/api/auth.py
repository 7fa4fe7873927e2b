"""Bearer token authentication.

Tokens are issued by the external auth backend as HS256 JWTs signed with
the shared secret; the ``sub`` claim is the user ID.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any, Optional

import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from server.app.api.dependencies import get_app_settings
from server.app.exceptions import UnauthenticatedError
from server.app.settings import Settings

logger = structlog.get_logger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


def create_access_token(
    user_id: str,
    settings: Settings,
    expires_delta: Optional[timedelta] = None,
    extra_claims: Optional[dict[str, Any]] = None,
) -> str:
    """Create a signed access token for a user.

    Used by the CLI and tests; production tokens come from the auth backend.
    """
    claims: dict[str, Any] = dict(extra_claims or {})
    claims["sub"] = user_id
    claims["exp"] = datetime.now(UTC) + (expires_delta or timedelta(hours=24))
    return jwt.encode(
        claims, settings.jwt_secret.get_secret_value(), algorithm=settings.jwt_algorithm
    )


def verify_token(token: str, settings: Settings) -> str:
    """Verify a token and return its user ID.

    Raises:
        UnauthenticatedError: The token is invalid, expired, or has no subject.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret.get_secret_value(),
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        logger.info("Token rejected", error=str(e))
        raise UnauthenticatedError("Invalid or expired token") from e

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthenticatedError("Token has no subject")
    return str(user_id)


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_app_settings),
) -> str:
    """FastAPI dependency resolving the authenticated user ID."""
    if credentials is None:
        raise UnauthenticatedError("Missing bearer token")

    user_id = verify_token(credentials.credentials, settings)
    structlog.contextvars.bind_contextvars(user_id=user_id)
    return user_id
