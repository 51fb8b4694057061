"""Security dependencies for FastAPI routes."""

import hmac

import structlog
from fastapi import Depends, HTTPException, Request, status

from webhook_queue.config import Settings, get_settings

logger = structlog.get_logger(__name__)


def require_admin_token(
    request: Request, settings: Settings = Depends(get_settings)
) -> bool:
    """
    Require valid admin token for protected routes.

    Security guarantees:
    - Uses hmac.compare_digest() for constant-time comparison
    - Returns 403 when ADMIN_TOKEN is not configured (admin routes disabled)
    - Returns 401 for missing token, 403 for invalid token

    Usage:
        @router.post("/admin/webhook-queue/jobs/{job_id}/retry")
        async def retry(..., _: bool = Depends(require_admin_token)):
            ...
    """
    admin_token = settings.admin_token
    if not admin_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_TOKEN not configured. Contact system administrator.",
        )

    provided_token = request.headers.get("X-Admin-Token")
    if not provided_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token required. Provide X-Admin-Token header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(provided_token.encode(), admin_token.encode()):
        logger.warning(
            "Invalid admin token attempt",
            path=request.url.path,
            client=request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token",
        )

    return True
