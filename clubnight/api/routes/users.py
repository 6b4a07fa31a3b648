"""Member profile route handlers."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.api.routes import http_error_for
from clubnight.database.db import get_db_session
from clubnight.services import user_service
from clubnight.api.auth_dependencies import require_user, require_approved
from clubnight.models.schemas import UserResponse, ProfileUpdate

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/users/me", response_model=UserResponse)
async def get_current_user_profile(current_user: dict = Depends(require_user)):
    """Get the current member, including membership status."""
    return current_user


@router.put("/api/users/me", response_model=UserResponse)
async def update_current_user(
    payload: ProfileUpdate,
    current_user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Update the current member's phone number or display name."""
    try:
        return await user_service.update_profile(
            session,
            current_user["id"],
            phone_number=payload.phone_number,
            name=payload.name,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "updating user profile")


@router.get("/api/users", response_model=List[UserResponse])
async def list_members(
    current_user: dict = Depends(require_approved),
    session: AsyncSession = Depends(get_db_session),
):
    """List approved club members."""
    try:
        return await user_service.list_approved_members(session)
    except Exception as e:
        raise http_error_for(e, "listing members")
