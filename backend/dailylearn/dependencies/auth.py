"""
Request identity dependencies for DailyLearn.

End-user authentication is handled upstream (API gateway); it forwards the
verified user id in the X-User-Id header. Operational endpoints (manual
triggers, cleanup, stats) require the shared X-Admin-Key.

Usage:
    @router.post("/trigger", dependencies=[Depends(require_admin)])
    def trigger(): ...
"""

import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from dailylearn.config import get_settings

logger = logging.getLogger(__name__)


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """FastAPI dependency returning the caller's user id."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return x_user_id.strip()


def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    """
    FastAPI dependency requiring the admin API key.

    Raises:
        HTTPException: 503 if no admin key is configured, 403 if the
            supplied key is missing or wrong
    """
    expected = get_settings().admin_api_key
    if not expected:
        logger.error("ADMIN_API_KEY is not configured; admin endpoints are disabled")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin access not configured",
        )

    if not x_admin_key or not secrets.compare_digest(x_admin_key.encode(), expected.encode()):
        logger.warning("Rejected admin request with invalid X-Admin-Key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
