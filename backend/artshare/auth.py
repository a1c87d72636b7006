"""
Authentication dependencies for FastAPI endpoints.

Verifies Supabase JWTs via auth.get_user(). ``CurrentUser`` protects an
endpoint; ``OptionalUser`` lets guests through (checkout by email) while
still identifying signed-in users.
"""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()
_optional_bearer_scheme = HTTPBearer(auto_error=False)


class AuthenticatedUser(BaseModel):
    """Represents a verified authenticated user."""

    id: str
    email: str | None = None


async def verify_token(supabase, token: str) -> AuthenticatedUser | None:
    """Resolve a bearer token to a user. Returns None when it is not valid."""
    try:
        response = await supabase.auth.get_user(token)
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        return None
    user = response.user if response else None
    if user is None:
        return None
    return AuthenticatedUser(id=str(user.id), email=user.email)


def _get_supabase(request: Request):
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")
    return supabase


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
    supabase = _get_supabase(request)
    user = await verify_token(supabase, credentials.credentials)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


async def get_optional_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_optional_bearer_scheme),
) -> AuthenticatedUser | None:
    """Like get_current_user, but anonymous requests resolve to None."""
    if credentials is None:
        return None
    supabase = _get_supabase(request)
    user = await verify_token(supabase, credentials.credentials)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
OptionalUser = Annotated[AuthenticatedUser | None, Depends(get_optional_user)]
