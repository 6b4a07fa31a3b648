"""RSVP route handlers for members."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.api.routes import limiter, http_error_for
from clubnight.api.auth_dependencies import require_approved
from clubnight.api.dependencies import get_clock, get_scheduler
from clubnight.database.db import get_db_session
from clubnight.services import rsvp_service
from clubnight.services.reminder_scheduler import ReminderScheduler
from clubnight.models.schemas import RSVPRequest, RSVPResponse, RemoveRSVPResponse
from clubnight.utils.datetime_utils import ClubClock

logger = logging.getLogger(__name__)
router = APIRouter()


async def notify_waitlist_after_removal(
    scheduler: ReminderScheduler, removed: dict
) -> List[int]:
    """
    Tell waiting members about a freed spot when a confirmed RSVP was removed.

    The removal is already committed; a notification failure is logged, not raised.
    """
    if removed["previous_status"] != rsvp_service.RSVPStatus.IN.value:
        return []
    try:
        outcome = await scheduler.notify_waitlist(removed["session_id"])
        return outcome["notified"]
    except Exception as e:
        logger.error(
            f"Waitlist notification failed for session {removed['session_id']}: {e}", exc_info=True
        )
        return []


@router.post("/api/sessions/{session_id}/rsvp", response_model=RSVPResponse)
@router.put("/api/sessions/{session_id}/rsvp", response_model=RSVPResponse)
@limiter.limit("30/minute")
async def upsert_my_rsvp(
    request: Request,
    session_id: int,
    payload: RSVPRequest,
    user: dict = Depends(require_approved),
    clock: ClubClock = Depends(get_clock),
    session: AsyncSession = Depends(get_db_session),
):
    """Create or change the caller's RSVP. Deadline rules apply."""
    try:
        return await rsvp_service.upsert_rsvp(
            session, clock, session_id, user["id"], payload.status, is_admin=False
        )
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "saving RSVP")


@router.delete("/api/sessions/{session_id}/rsvp", response_model=RemoveRSVPResponse)
@limiter.limit("30/minute")
async def delete_my_rsvp(
    request: Request,
    session_id: int,
    user: dict = Depends(require_approved),
    clock: ClubClock = Depends(get_clock),
    scheduler: ReminderScheduler = Depends(get_scheduler),
    session: AsyncSession = Depends(get_db_session),
):
    """Remove the caller's RSVP. An IN RSVP is locked in after the deadline."""
    try:
        removed = await rsvp_service.remove_rsvp(
            session, clock, session_id, user["id"], is_admin=False
        )
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "removing RSVP")

    removed["waitlist_notified"] = await notify_waitlist_after_removal(scheduler, removed)
    return removed


@router.get("/api/sessions/{session_id}/rsvp/me", response_model=Optional[RSVPResponse])
async def get_my_rsvp(
    session_id: int,
    user: dict = Depends(require_approved),
    session: AsyncSession = Depends(get_db_session),
):
    """The caller's RSVP for a session, or null."""
    try:
        return await rsvp_service.get_user_rsvp(session, session_id, user["id"])
    except Exception as e:
        raise http_error_for(e, "fetching RSVP")


@router.get("/api/sessions/{session_id}/rsvps", response_model=List[RSVPResponse])
async def list_session_rsvps(
    session_id: int,
    status: Optional[str] = None,
    user: dict = Depends(require_approved),
    session: AsyncSession = Depends(get_db_session),
):
    """RSVPs of a session in first-come-first-served order, optionally filtered by status."""
    try:
        status_filter = rsvp_service.parse_rsvp_status(status) if status else None
        return await rsvp_service.get_rsvps_for_session(session, session_id, status=status_filter)
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "listing RSVPs")
