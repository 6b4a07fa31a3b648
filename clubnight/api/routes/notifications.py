"""Notification preference, device token and history route handlers."""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.api.routes import http_error_for
from clubnight.database.db import get_db_session
from clubnight.services import notification_service
from clubnight.api.auth_dependencies import require_user
from clubnight.models.schemas import (
    NotificationListResponse,
    NotificationPreferencesResponse,
    NotificationPreferencesUpdate,
    NotificationResponse,
    PushTokenDeleteRequest,
    PushTokenRequest,
    UnreadCountResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/users/me/notifications", response_model=NotificationPreferencesResponse)
async def get_notification_preferences(
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get the caller's notification preferences (created with defaults on first access)."""
    try:
        return await notification_service.get_preferences(session, user["id"])
    except Exception as e:
        raise http_error_for(e, "fetching notification preferences")


@router.put("/api/users/me/notifications", response_model=NotificationPreferencesResponse)
async def update_notification_preferences(
    payload: NotificationPreferencesUpdate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Partially update notification preferences."""
    try:
        updates = payload.model_dump(exclude_none=True)
        return await notification_service.update_preferences(session, user["id"], updates)
    except HTTPException:
        raise
    except Exception as e:
        raise http_error_for(e, "updating notification preferences")


@router.post("/api/users/me/push-tokens")
async def register_push_token(
    payload: PushTokenRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Register a device for push notifications."""
    try:
        await notification_service.register_push_token(
            session, user["id"], payload.token, payload.device_name
        )
        return {"success": True}
    except Exception as e:
        raise http_error_for(e, "registering push token")


@router.delete("/api/users/me/push-tokens")
async def unregister_push_token(
    payload: Optional[PushTokenDeleteRequest] = Body(None),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Remove one device token, or every device of the caller when no token is given."""
    try:
        token = payload.token if payload else None
        count = await notification_service.unregister_push_token(session, user["id"], token)
        return {"success": True, "count": count}
    except Exception as e:
        raise http_error_for(e, "removing push token")


@router.get("/api/users/me/notifications/history", response_model=NotificationListResponse)
async def get_notifications(
    limit: int = 50,
    offset: int = 0,
    unread_only: bool = False,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get user notifications with pagination, newest first."""
    try:
        return await notification_service.get_user_notifications(
            session, user["id"], limit=limit, offset=offset, unread_only=unread_only
        )
    except Exception as e:
        raise http_error_for(e, "fetching notifications")


@router.get("/api/notifications/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    """Get unread notification count for user."""
    try:
        count = await notification_service.get_unread_count(session, user["id"])
        return {"count": count}
    except Exception as e:
        raise http_error_for(e, "fetching unread count")


@router.post("/api/notifications/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_as_read(
    notification_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Mark a single notification as read."""
    try:
        return await notification_service.mark_as_read(session, notification_id, user["id"])
    except Exception as e:
        raise http_error_for(e, "marking notification as read")


@router.post("/api/notifications/read-all")
async def mark_all_notifications_as_read(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    """Mark all user notifications as read."""
    try:
        count = await notification_service.mark_all_as_read(session, user["id"])
        return {"success": True, "count": count}
    except Exception as e:
        raise http_error_for(e, "marking all notifications as read")
