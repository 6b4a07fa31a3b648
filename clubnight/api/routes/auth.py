"""Authentication route handlers."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.api.routes import limiter, http_error_for
from clubnight.api.auth_dependencies import get_verified_claims
from clubnight.database.db import get_db_session
from clubnight.services import auth_service, user_service
from clubnight.models.schemas import AuthCallbackResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/auth/callback", response_model=AuthCallbackResponse)
@limiter.limit("20/minute")
async def auth_callback(
    request: Request,
    claims: dict = Depends(get_verified_claims),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Register or refresh the member behind a verified identity token.

    New members start as pending until an admin approves them.
    """
    try:
        identity = auth_service.identity_from_claims(claims)
        user = await user_service.create_or_update_user(
            session,
            subject=identity["subject"],
            email=identity["email"],
            name=identity["name"],
            avatar_url=identity["avatar_url"],
        )
        is_new = user.pop("is_new")
        return {"user": user, "is_new": is_new}
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "registering user")
