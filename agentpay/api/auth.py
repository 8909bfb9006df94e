"""
Authentication for scheduler-triggered endpoints.

Cron endpoints require "Authorization: Bearer <cron_secret>". With no secret
configured they refuse every call.
"""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from ..utils.logging import get_logger

logger = get_logger(__name__)


def validate_bearer_secret(authorization: Optional[str], secret: Optional[str]) -> bool:
    """
    Constant-time check of an Authorization header against a shared secret.

    Args:
        authorization: Raw Authorization header value
        secret: Configured secret (None disables access)

    Returns:
        True if the header carries the secret
    """
    if not secret or not authorization:
        return False
    expected = f"Bearer {secret}"
    return hmac.compare_digest(authorization.encode(), expected.encode())


async def require_cron_secret(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> None:
    """FastAPI dependency guarding cron endpoints."""
    settings = request.app.state.engine.settings
    if not validate_bearer_secret(authorization, settings.cron_secret):
        logger.warning("Rejected cron call", path=request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")
