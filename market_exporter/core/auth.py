"""
Admin authentication and token utilities.
"""

import secrets
from typing import Optional
from fastapi import Depends, HTTPException, status, Header

from market_exporter.deps import ExporterServices, get_services


def generate_token(length: int = 32) -> str:
    """Random admin key: ``length`` bytes from ``secrets``, hex-encoded."""
    return secrets.token_hex(length)


def verify_admin_key(admin_key: Optional[str], expected_key: Optional[str]) -> None:
    """
    Verify the X-Admin-Key header against ADMIN_API_KEY.

    Raises:
        HTTPException: If the key is missing, not configured or wrong
    """
    if not expected_key:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_API_KEY is not configured. Please generate one.",
            headers={"X-Error-Code": "permission-error"}
        )

    if not admin_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing X-Admin-Key header",
            headers={"X-Error-Code": "permission-error"}
        )

    # Constant-time comparison to prevent timing attacks
    if not secrets.compare_digest(admin_key, expected_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid X-Admin-Key",
            headers={"X-Error-Code": "permission-error"}
        )


async def require_admin(
    services: ExporterServices = Depends(get_services),
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")
) -> None:
    """
    FastAPI dependency guarding export and file management routes.

    Usage:
        router = APIRouter(dependencies=[Depends(require_admin)])
    """
    verify_admin_key(x_admin_key, services.settings.admin_api_key)
