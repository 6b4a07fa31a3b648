"""Admin route handlers: join requests, roles, sessions, RSVP overrides, announcements."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.api.routes import limiter, http_error_for
from clubnight.api.routes.rsvp import notify_waitlist_after_removal
from clubnight.api.auth_dependencies import require_admin
from clubnight.api.dependencies import get_clock, get_dispatcher, get_scheduler
from clubnight.database.db import get_db_session
from clubnight.services import notification_service, rsvp_service, session_service, user_service
from clubnight.services.notification_service import NotificationDispatcher
from clubnight.services.reminder_scheduler import ReminderScheduler
from clubnight.models.schemas import (
    AdminRSVPRequest,
    AnnouncementCreate,
    AnnouncementResponse,
    CancelSessionRequest,
    DeleteSessionResponse,
    RemoveRSVPResponse,
    RoleUpdate,
    RSVPRequest,
    RSVPResponse,
    SessionCreate,
    SessionCreateResponse,
    SessionResponse,
    SessionUpdate,
    UserResponse,
)
from clubnight.utils.datetime_utils import ClubClock

logger = logging.getLogger(__name__)
router = APIRouter()


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


@router.get("/api/admin/join-requests", response_model=List[UserResponse])
async def list_join_requests(
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Members waiting for approval, oldest first."""
    try:
        return await user_service.list_pending_join_requests(session)
    except Exception as e:
        raise http_error_for(e, "listing join requests")


@router.post("/api/admin/join-requests/{user_id}/approve", response_model=UserResponse)
async def approve_join_request(
    user_id: int,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await user_service.approve_join_request(session, user_id)
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "approving join request")


@router.post("/api/admin/join-requests/{user_id}/reject", response_model=UserResponse)
async def reject_join_request(
    user_id: int,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await user_service.reject_join_request(session, user_id)
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "rejecting join request")


@router.put("/api/admin/users/{user_id}/role", response_model=UserResponse)
async def update_user_role(
    user_id: int,
    payload: RoleUpdate,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Set a member's role (pending, player or admin)."""
    try:
        return await user_service.update_user_role(session, user_id, payload.role)
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "updating user role")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/api/admin/sessions", response_model=SessionCreateResponse)
async def create_session(
    payload: SessionCreate,
    admin: dict = Depends(require_admin),
    clock: ClubClock = Depends(get_clock),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Create a session.

    A recurring session also materializes its weekly occurrences; the response
    reports how many were generated.
    """
    try:
        return await session_service.create_session(
            session,
            clock,
            title=payload.title,
            description=payload.description,
            session_date=payload.session_date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            courts=payload.courts,
            created_by=admin["id"],
            is_recurring=payload.is_recurring,
            recurring_day_of_week=payload.recurring_day_of_week,
            occurrences=payload.occurrences,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "creating session")


@router.put("/api/admin/sessions/{session_id}", response_model=SessionResponse)
async def update_session(
    session_id: int,
    payload: SessionUpdate,
    admin: dict = Depends(require_admin),
    clock: ClubClock = Depends(get_clock),
    session: AsyncSession = Depends(get_db_session),
):
    """Apply only the fields present in the request body."""
    try:
        return await session_service.update_session(
            session, clock, session_id, payload.model_dump(exclude_unset=True)
        )
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "updating session")


@router.post("/api/admin/sessions/{session_id}/cancel", response_model=SessionResponse)
async def cancel_session(
    session_id: int,
    payload: CancelSessionRequest,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await session_service.cancel_session(session, session_id, payload.reason)
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "cancelling session")


@router.delete("/api/admin/sessions/{session_id}", response_model=DeleteSessionResponse)
async def delete_session(
    session_id: int,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Delete a session.

    A session that already has RSVPs is cancelled instead so the history survives.
    """
    try:
        return await session_service.delete_session(session, session_id)
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "deleting session")


@router.post("/api/admin/recurrences/refresh")
async def refresh_recurrences(
    admin: dict = Depends(require_admin),
    scheduler: ReminderScheduler = Depends(get_scheduler),
):
    """Top up the weekly occurrences of every open recurring session now."""
    try:
        return await scheduler.refresh_recurrences()
    except Exception as e:
        raise http_error_for(e, "refreshing recurring sessions")


# ---------------------------------------------------------------------------
# RSVP overrides
# ---------------------------------------------------------------------------


@router.post("/api/admin/sessions/{session_id}/rsvp", response_model=RSVPResponse)
async def admin_upsert_rsvp(
    session_id: int,
    payload: AdminRSVPRequest,
    admin: dict = Depends(require_admin),
    clock: ClubClock = Depends(get_clock),
    session: AsyncSession = Depends(get_db_session),
):
    """Create or change any member's RSVP, ignoring the deadline."""
    try:
        return await rsvp_service.upsert_rsvp(
            session, clock, session_id, payload.user_id, payload.status, is_admin=True
        )
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "saving RSVP")


@router.put("/api/admin/sessions/{session_id}/rsvp/{user_id}", response_model=RSVPResponse)
async def admin_update_rsvp(
    session_id: int,
    user_id: int,
    payload: RSVPRequest,
    admin: dict = Depends(require_admin),
    clock: ClubClock = Depends(get_clock),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await rsvp_service.upsert_rsvp(
            session, clock, session_id, user_id, payload.status, is_admin=True
        )
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "saving RSVP")


@router.delete("/api/admin/sessions/{session_id}/rsvp/{user_id}", response_model=RemoveRSVPResponse)
async def admin_remove_rsvp(
    session_id: int,
    user_id: int,
    admin: dict = Depends(require_admin),
    clock: ClubClock = Depends(get_clock),
    scheduler: ReminderScheduler = Depends(get_scheduler),
    session: AsyncSession = Depends(get_db_session),
):
    """Remove any member's RSVP. Waiting members hear about a freed spot."""
    try:
        removed = await rsvp_service.remove_rsvp(
            session, clock, session_id, user_id, is_admin=True
        )
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "removing RSVP")

    removed["waitlist_notified"] = await notify_waitlist_after_removal(scheduler, removed)
    return removed


# ---------------------------------------------------------------------------
# Announcements
# ---------------------------------------------------------------------------


@router.post("/api/admin/announcements", response_model=AnnouncementResponse)
@limiter.limit("10/minute")
async def create_announcement(
    request: Request,
    payload: AnnouncementCreate,
    admin: dict = Depends(require_admin),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session: AsyncSession = Depends(get_db_session),
):
    """Record an announcement and notify every approved member."""
    try:
        return await notification_service.create_announcement(
            session, dispatcher, payload.title, payload.body, admin["id"]
        )
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "sending announcement")
