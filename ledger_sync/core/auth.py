"""
Admin authentication dependency.

Mutating admin endpoints (manual sync, balance refresh, session monitor)
require the ``X-Admin-Token`` header to match ``settings.ADMIN_TOKEN``.
"""
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader
from starlette.requests import Request

from ledger_sync.core.config import settings
from ledger_sync.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_TOKEN_HEADER = "X-Admin-Token"

admin_token_header = APIKeyHeader(name=ADMIN_TOKEN_HEADER, auto_error=False)


def require_admin(request: Request, admin_token: Optional[str] = Security(admin_token_header)) -> str:
    """
    Validate the admin token from the request header.

    Without a configured ADMIN_TOKEN, requests pass outside production.

    Raises:
        HTTPException: If the token is missing or invalid
    """
    if not settings.ADMIN_TOKEN:
        if settings.is_production():
            logger.warning("ADMIN_TOKEN not configured in production - rejecting request")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Admin token required. Configure ADMIN_TOKEN environment variable."
            )
        logger.debug("ADMIN_TOKEN not configured - allowing request in development mode")
        return "_dev_skip_"

    if not admin_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Admin token missing. Provide {ADMIN_TOKEN_HEADER} header."
        )

    if admin_token != settings.ADMIN_TOKEN:
        logger.warning(f"Invalid admin token attempt from {request.client.host if request.client else 'unknown'}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token."
        )

    return admin_token
