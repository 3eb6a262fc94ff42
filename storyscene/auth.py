"""
Authentication dependencies for FastAPI endpoints.

Bearer tokens are verified with Supabase ``auth.get_user()``. Admin access
is granted to user IDs listed in ``BillingConfig.admin_user_ids`` or to
accounts whose role is ``admin``.
"""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from storyscene.config import get_settings

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class AuthenticatedUser(BaseModel):
    """Represents a verified authenticated user."""

    id: str
    email: str | None = None
    name: str | None = None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or user not found.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    token = credentials.credentials
    try:
        response = await supabase.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        metadata = getattr(user, "user_metadata", None)
        name = metadata.get("name") if isinstance(metadata, dict) else None
        return AuthenticatedUser(id=str(user.id), email=user.email, name=name)
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


async def get_admin_user(request: Request, user: CurrentUser) -> AuthenticatedUser:
    """
    FastAPI dependency that additionally requires admin rights.

    Raises:
        HTTPException 403: The user is not an administrator.
    """
    if user.id in get_settings().billing.admin_user_ids:
        return user

    service = getattr(request.app.state, "subscription_service", None)
    if service is not None:
        account = await service.repository.get_account(user.id)
        if account is not None and account.role == "admin":
            return user

    logger.warning("admin_access_denied", user_id=user.id)
    raise HTTPException(status_code=403, detail="Admin access required")


AdminUser = Annotated[AuthenticatedUser, Depends(get_admin_user)]
