"""
Authentication dependencies for FastAPI routes.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from clubnight.services import auth_service, user_service
from clubnight.database.db import get_db_session

security = HTTPBearer()


async def get_verified_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Dependency returning the verified claims of the bearer token.

    Raises:
        HTTPException: If the token is missing, invalid or expired
    """
    payload = auth_service.verify_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_current_user(
    session: AsyncSession = Depends(get_db_session),
    payload: dict = Depends(get_verified_claims),
) -> dict:
    """
    Dependency to get the current member from the token subject.

    Returns:
        User dictionary

    Raises:
        HTTPException: If the subject has not been registered via the auth callback
    """
    user = await user_service.get_user_by_subject(session, payload["sub"])
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def require_user(user: dict = Depends(get_current_user)) -> dict:
    """Require any registered user, approved or not."""
    return user


async def require_approved(user: dict = Depends(get_current_user)) -> dict:
    """Require an approved club member."""
    if user.get("membership_status") != "approved":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Membership approval required",
        )
    return user


async def require_admin(user: dict = Depends(require_approved)) -> dict:
    """Require an approved member with the admin role."""
    if user.get("role") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
