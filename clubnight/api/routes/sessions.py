"""Session read route handlers for members."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.api.routes import http_error_for
from clubnight.api.auth_dependencies import require_approved
from clubnight.api.dependencies import get_clock
from clubnight.database.db import get_db_session
from clubnight.services import session_service
from clubnight.models.schemas import SessionResponse, SessionDetailResponse
from clubnight.utils.datetime_utils import ClubClock

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/sessions", response_model=List[SessionResponse])
async def list_sessions(
    user: dict = Depends(require_approved),
    clock: ClubClock = Depends(get_clock),
    session: AsyncSession = Depends(get_db_session),
):
    """Upcoming sessions that are not cancelled, each with an RSVP summary."""
    try:
        return await session_service.list_upcoming_sessions(session, clock)
    except Exception as e:
        raise http_error_for(e, "listing sessions")


@router.get("/api/sessions/cancelled", response_model=List[SessionResponse])
async def list_cancelled_sessions(
    user: dict = Depends(require_approved),
    clock: ClubClock = Depends(get_clock),
    session: AsyncSession = Depends(get_db_session),
):
    """Upcoming sessions that were cancelled."""
    try:
        return await session_service.list_cancelled_upcoming_sessions(session, clock)
    except Exception as e:
        raise http_error_for(e, "listing cancelled sessions")


@router.get("/api/sessions/{session_id}", response_model=SessionDetailResponse)
async def get_session(
    session_id: int,
    user: dict = Depends(require_approved),
    session: AsyncSession = Depends(get_db_session),
):
    """Session with RSVPs in first-come-first-served order and a fresh summary."""
    try:
        return await session_service.get_session_detail(session, session_id)
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "fetching session")
