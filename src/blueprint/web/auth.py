"""
Authentication for the web API.

The onboarding requires a signed-in user. A missing or invalid token is a
401; the client is expected to sign in again rather than retry.
"""

import logging

from fastapi import Header, HTTPException
from pydantic import BaseModel

from blueprint.db.client import get_service_client

logger = logging.getLogger(__name__)


class AuthenticatedUser(BaseModel):
    """User resolved from a Supabase access token."""
    id: str
    email: str | None
    access_token: str


async def get_current_user(authorization: str = Header(None)) -> AuthenticatedUser:
    """
    Validate the Supabase JWT.

    Expects Authorization header: "Bearer <access_token>"
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization format")

    access_token = authorization[7:]

    try:
        response = get_service_client().auth.get_user(access_token)
    except Exception as e:
        logger.warning(f"Auth validation failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    if not response or not response.user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return AuthenticatedUser(
        id=response.user.id,
        email=response.user.email,
        access_token=access_token,
    )
