"""
Notification service for preferences, push tokens, history and delivery.

NotificationDispatcher resolves a user's channel preferences, records an
audit Notification row first, then attempts push and email independently.
A failure on one channel never affects the other, and in a bulk send one
recipient's failure never affects another's.
"""

import asyncio
import json
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.database import db
from clubnight.database.models import (
    Announcement,
    Notification,
    NotificationPreferences,
    NotificationType,
    PushToken,
    User,
)
from clubnight.services.email_service import EmailChannel
from clubnight.services.errors import NotFoundError, ValidationError
from clubnight.services.push_service import PushChannel
from clubnight.utils.datetime_utils import ensure_utc, utcnow
from clubnight.utils.env_utils import get_int_env

logger = logging.getLogger(__name__)

NOTIFICATION_MAX_CONCURRENCY = get_int_env("NOTIFICATION_MAX_CONCURRENCY", 10)

PREFERENCE_FIELDS = (
    "push_enabled",
    "push_session_reminders",
    "push_rsvp_deadlines",
    "push_waitlist_updates",
    "push_admin_announcements",
    "email_enabled",
    "email_session_reminders",
    "email_rsvp_deadlines",
    "email_waitlist_updates",
    "email_admin_announcements",
)


def parse_notification_type(value) -> NotificationType:
    try:
        return NotificationType(value)
    except ValueError:
        raise ValidationError(f"Invalid notification type: {value}")


def preferences_to_dict(prefs: NotificationPreferences) -> Dict:
    data = {"user_id": prefs.user_id}
    for field in PREFERENCE_FIELDS:
        data[field] = getattr(prefs, field)
    return data


def notification_to_dict(notif: Notification) -> Dict:
    return {
        "id": notif.id,
        "user_id": notif.user_id,
        "type": notif.type,
        "title": notif.title,
        "body": notif.body,
        "data": json.loads(notif.data) if notif.data else None,
        "push_sent": notif.push_sent,
        "push_sent_at": ensure_utc(notif.push_sent_at).isoformat() if notif.push_sent_at else None,
        "email_sent": notif.email_sent,
        "email_sent_at": ensure_utc(notif.email_sent_at).isoformat() if notif.email_sent_at else None,
        "is_read": notif.read_at is not None,
        "read_at": ensure_utc(notif.read_at).isoformat() if notif.read_at else None,
        "created_at": ensure_utc(notif.created_at).isoformat() if notif.created_at else None,
    }


async def get_or_create_preferences(session: AsyncSession, user_id: int) -> NotificationPreferences:
    """
    Load a user's preferences, creating the all-enabled defaults on first access.

    Commits when it creates the row. A concurrent first access that wins the
    insert race is picked up by re-reading.
    """
    result = await session.execute(
        select(NotificationPreferences).where(NotificationPreferences.user_id == user_id)
    )
    prefs = result.scalar_one_or_none()
    if prefs is not None:
        return prefs

    prefs = NotificationPreferences(user_id=user_id)
    session.add(prefs)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        result = await session.execute(
            select(NotificationPreferences).where(NotificationPreferences.user_id == user_id)
        )
        prefs = result.scalar_one()
    return prefs


async def get_preferences(session: AsyncSession, user_id: int) -> Dict:
    prefs = await get_or_create_preferences(session, user_id)
    return preferences_to_dict(prefs)


async def update_preferences(session: AsyncSession, user_id: int, updates: Dict) -> Dict:
    """
    Partially update preference switches. Unknown keys are rejected.

    Raises:
        ValidationError: On an unknown key or a non-boolean value
    """
    unknown = set(updates) - set(PREFERENCE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown preference field(s): {', '.join(sorted(unknown))}")

    prefs = await get_or_create_preferences(session, user_id)
    for field, value in updates.items():
        if value is None:
            continue
        if not isinstance(value, bool):
            raise ValidationError(f"{field} must be a boolean")
        setattr(prefs, field, value)
    await session.commit()
    return preferences_to_dict(prefs)


async def register_push_token(
    session: AsyncSession, user_id: int, token: str, device_name: Optional[str] = None
) -> Dict:
    """
    Register a device token for a user. A token already registered (possibly
    to another user) is re-assigned to this user.
    """
    if not token or not token.strip():
        raise ValidationError("token is required")
    token = token.strip()

    result = await session.execute(select(PushToken).where(PushToken.token == token))
    push_token = result.scalar_one_or_none()
    if push_token is None:
        push_token = PushToken(user_id=user_id, token=token, device_name=device_name)
        session.add(push_token)
    else:
        push_token.user_id = user_id
        push_token.device_name = device_name
        push_token.last_used_at = utcnow()
    await session.commit()
    return {"id": push_token.id, "user_id": user_id, "device_name": push_token.device_name}


async def unregister_push_token(session: AsyncSession, user_id: int, token: Optional[str] = None) -> int:
    """Remove one token of the user, or all of them when token is None."""
    query = delete(PushToken).where(PushToken.user_id == user_id)
    if token:
        query = query.where(PushToken.token == token)
    result = await session.execute(query)
    await session.commit()
    return result.rowcount or 0


async def get_push_tokens(session: AsyncSession, user_id: int) -> List[str]:
    result = await session.execute(
        select(PushToken.token).where(PushToken.user_id == user_id).order_by(PushToken.id.asc())
    )
    return list(result.scalars().all())


async def remove_push_tokens(session: AsyncSession, tokens: Iterable[str]) -> int:
    """Prune tokens the push provider reported as invalid. Does not commit."""
    tokens = list(tokens)
    if not tokens:
        return 0
    result = await session.execute(delete(PushToken).where(PushToken.token.in_(tokens)))
    return result.rowcount or 0


async def get_user_notifications(
    session: AsyncSession,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
    unread_only: bool = False,
) -> Dict:
    """
    Fetch user notifications with pagination, newest first.

    Returns:
        Dict containing:
            - notifications: List of notification dicts
            - total_count: Total number of notifications matching the criteria
            - has_more: Boolean indicating if there are more notifications
    """
    query = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        query = query.where(Notification.read_at.is_(None))

    total_result = await session.execute(select(func.count()).select_from(query.subquery()))
    total_count = total_result.scalar_one() or 0

    query = (
        query.order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(query)
    notifications = [notification_to_dict(n) for n in result.scalars().all()]

    return {
        "notifications": notifications,
        "total_count": total_count,
        "has_more": (offset + len(notifications)) < total_count,
    }


async def get_unread_count(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Notification)
        .where(and_(Notification.user_id == user_id, Notification.read_at.is_(None)))
    )
    return result.scalar_one() or 0


async def mark_as_read(session: AsyncSession, notification_id: int, user_id: int) -> Dict:
    """
    Mark a single notification as read.

    Raises:
        NotFoundError: If notification not found or doesn't belong to user
    """
    result = await session.execute(
        select(Notification).where(
            and_(Notification.id == notification_id, Notification.user_id == user_id)
        )
    )
    notification = result.scalar_one_or_none()
    if not notification:
        raise NotFoundError("Notification not found")

    if notification.read_at is None:
        notification.read_at = utcnow()
        await session.commit()
    return notification_to_dict(notification)


async def mark_all_as_read(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(
        update(Notification)
        .where(and_(Notification.user_id == user_id, Notification.read_at.is_(None)))
        .values(read_at=utcnow())
    )
    await session.commit()
    return result.rowcount or 0


class NotificationDispatcher:
    """Per-recipient delivery over push and email with preference gating."""

    def __init__(
        self,
        session_factory=None,
        push_channel: Optional[PushChannel] = None,
        email_channel: Optional[EmailChannel] = None,
        max_concurrency: int = NOTIFICATION_MAX_CONCURRENCY,
    ):
        self._session_factory = session_factory
        self.push_channel = push_channel if push_channel is not None else PushChannel()
        self.email_channel = email_channel if email_channel is not None else EmailChannel()
        self.max_concurrency = max(1, max_concurrency)

    def _sessions(self):
        return self._session_factory or db.get_session_factory()

    def is_enabled(self) -> bool:
        """True if at least one delivery channel is configured."""
        return self.push_channel.enabled or self.email_channel.enabled

    async def send(
        self,
        user_id: int,
        kind,
        title: str,
        body: str,
        metadata: Optional[Dict] = None,
    ) -> Dict:
        """
        Record and deliver one notification to one user.

        The audit row is committed before any delivery attempt, so history
        exists even when every channel fails.

        Returns:
            Dict with notification_id, push_sent and email_sent

        Raises:
            ValidationError: Unknown notification kind
            NotFoundError: User does not exist
        """
        kind = parse_notification_type(kind).value

        async with self._sessions()() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            email_address = user.email
            user_name = user.name

            prefs = await get_or_create_preferences(session, user_id)
            push_allowed = self.push_channel.enabled and prefs.is_push_enabled_for(kind)
            email_allowed = self.email_channel.enabled and prefs.is_email_enabled_for(kind)

            notification = Notification(
                user_id=user_id,
                type=kind,
                title=title,
                body=body,
                data=json.dumps(metadata) if metadata is not None else None,
            )
            session.add(notification)
            await session.commit()

            if push_allowed and await self._send_push(session, user_id, title, body, metadata):
                notification.push_sent = True
                notification.push_sent_at = utcnow()

            if email_allowed and email_address:
                if await self._send_email(email_address, user_name, title, body, kind):
                    notification.email_sent = True
                    notification.email_sent_at = utcnow()

            await session.commit()

            return {
                "notification_id": notification.id,
                "user_id": user_id,
                "push_sent": notification.push_sent,
                "email_sent": notification.email_sent,
            }

    async def _send_push(
        self, session: AsyncSession, user_id: int, title: str, body: str, metadata: Optional[Dict]
    ) -> bool:
        tokens = await get_push_tokens(session, user_id)
        if not tokens:
            return False
        try:
            outcome = await self.push_channel.send(tokens, title, body, metadata)
        except Exception as e:
            logger.warning(f"Failed to send push to user {user_id}: {e}")
            return False

        invalid = outcome.get("invalid_tokens") or []
        if invalid:
            removed = await remove_push_tokens(session, invalid)
            logger.info(f"Removed {removed} invalid push token(s) for user {user_id}")
        return outcome.get("success_count", 0) > 0

    async def _send_email(
        self, address: str, name: Optional[str], title: str, body: str, kind: str
    ) -> bool:
        html_body, text_body = self.email_channel.render(title, body, kind)
        try:
            return await self.email_channel.send(address, name, title, html_body, text_body)
        except Exception as e:
            logger.warning(f"Failed to send email to {address}: {e}")
            return False

    async def send_bulk(
        self,
        user_ids: Iterable[int],
        kind,
        title: str,
        body: str,
        metadata: Optional[Dict] = None,
    ) -> Dict:
        """
        Fan the same notification out to many users concurrently.

        Concurrency is bounded by max_concurrency. Failures are logged and
        counted per recipient, never raised.

        Returns:
            Dict with total, delivered (at least one channel succeeded) and failed
        """
        kind = parse_notification_type(kind).value
        recipients = list(dict.fromkeys(user_ids))
        if not recipients:
            return {"total": 0, "delivered": 0, "failed": 0}

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _send_one(uid: int) -> Dict:
            async with semaphore:
                return await self.send(uid, kind, title, body, metadata)

        results = await asyncio.gather(
            *(_send_one(uid) for uid in recipients), return_exceptions=True
        )

        delivered = 0
        failed = 0
        for uid, result in zip(recipients, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.warning(f"Failed to notify user {uid} ({kind}): {result}")
            elif result["push_sent"] or result["email_sent"]:
                delivered += 1

        return {"total": len(recipients), "delivered": delivered, "failed": failed}


async def create_announcement(
    session: AsyncSession,
    dispatcher: NotificationDispatcher,
    title: str,
    body: str,
    created_by: int,
) -> Dict:
    """Record an admin announcement and send it to every approved member."""
    from clubnight.services.user_service import get_approved_member_ids

    if not title or not title.strip():
        raise ValidationError("title is required")
    if not body or not body.strip():
        raise ValidationError("body is required")

    announcement = Announcement(title=title.strip(), body=body.strip(), created_by=created_by)
    session.add(announcement)
    await session.commit()

    recipients = await get_approved_member_ids(session)
    delivery = await dispatcher.send_bulk(
        recipients,
        NotificationType.ADMIN_ANNOUNCEMENT,
        announcement.title,
        announcement.body,
        {"announcement_id": str(announcement.id)},
    )
    logger.info(
        f"Announcement {announcement.id} sent to {delivery['total']} member(s), "
        f"{delivery['failed']} failed"
    )
    return {
        "id": announcement.id,
        "title": announcement.title,
        "body": announcement.body,
        "created_by": created_by,
        "sent_at": ensure_utc(announcement.sent_at).isoformat() if announcement.sent_at else None,
        "delivery": delivery,
    }


_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get the global notification dispatcher, built from the environment on first use."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher
