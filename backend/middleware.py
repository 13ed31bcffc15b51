from fastapi import Request, HTTPException, status
from typing import Optional
import hmac
import logging
import os
from auth import decode_access_token
from models import UserRole

logger = logging.getLogger(__name__)

def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header[len("Bearer "):].strip()
    return token or None

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    token = _bearer_token(request)
    if not token:
        return None
    return decode_access_token(token)

async def require_auth(request: Request) -> dict:
    """Require valid authentication with a user_id claim."""
    user = await get_current_user(request)
    if not user or not user.get("user_id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    user = await require_auth(request)
    if user.get("role") != UserRole.ROLE_ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    return await require_admin(request)

async def require_cron_secret(request: Request) -> None:
    """Scheduler endpoints: Authorization: Bearer <CRON_SECRET>, compared in constant time."""
    expected = os.getenv("CRON_SECRET", "")
    presented = _bearer_token(request) or ""
    if not expected or not hmac.compare_digest(expected.encode(), presented.encode()):
        logger.warning(f"CRON_UNAUTHORIZED path={request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )
