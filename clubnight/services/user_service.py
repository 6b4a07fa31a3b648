"""
User service layer for club members and membership approval.
"""

import os
import logging
from typing import Optional, Dict, List

from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.database.models import User, UserRole, MembershipStatus
from clubnight.services.errors import NotFoundError, PolicyError, ValidationError
from clubnight.utils.datetime_utils import ensure_utc

load_dotenv()

logger = logging.getLogger(__name__)

# First login with this email becomes an approved admin
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "").strip().lower()


def user_to_dict(user: User) -> Dict:
    return {
        "id": user.id,
        "subject": user.subject,
        "email": user.email,
        "name": user.name,
        "avatar_url": user.avatar_url,
        "phone_number": user.phone_number,
        "role": user.role.value if user.role else None,
        "is_player": user.is_player,
        "membership_status": user.membership_status.value if user.membership_status else None,
        "created_at": ensure_utc(user.created_at).isoformat() if user.created_at else None,
        "updated_at": ensure_utc(user.updated_at).isoformat() if user.updated_at else None,
    }


async def _get_user(session: AsyncSession, user_id: int) -> User:
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


async def create_or_update_user(
    session: AsyncSession,
    subject: str,
    email: str,
    name: str,
    avatar_url: Optional[str] = None,
) -> Dict:
    """
    Create a user from a verified identity, or refresh name/avatar of an existing one.

    New users are pending members unless their email matches ADMIN_EMAIL.

    Returns:
        User dict plus an "is_new" flag

    Raises:
        ValidationError: If subject or email is missing
    """
    if not subject:
        raise ValidationError("subject is required")
    if not email:
        raise ValidationError("email is required")
    email = email.strip().lower()
    name = (name or email).strip()

    result = await session.execute(select(User).where(User.subject == subject))
    user = result.scalar_one_or_none()
    is_new = user is None

    if is_new:
        user = User(
            subject=subject,
            email=email,
            name=name,
            avatar_url=avatar_url,
            role=UserRole.PENDING,
            is_player=True,
            membership_status=MembershipStatus.PENDING,
        )
        if ADMIN_EMAIL and email == ADMIN_EMAIL:
            user.role = UserRole.ADMIN
            user.membership_status = MembershipStatus.APPROVED
        session.add(user)
    else:
        user.name = name
        user.avatar_url = avatar_url

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise PolicyError(f"Email {email} is already registered to another account")

    if is_new:
        logger.info(f"Created user {user.id} ({user.role.value}, {user.membership_status.value})")

    data = user_to_dict(user)
    data["is_new"] = is_new
    return data


async def get_user_by_id(session: AsyncSession, user_id: int) -> Optional[Dict]:
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    return user_to_dict(user) if user else None


async def get_user_by_subject(session: AsyncSession, subject: str) -> Optional[Dict]:
    """
    Get user by the identity provider's subject id.

    Returns:
        User dictionary or None if not found
    """
    result = await session.execute(select(User).where(User.subject == subject).limit(1))
    user = result.scalar_one_or_none()
    return user_to_dict(user) if user else None


async def get_approved_member_ids(session: AsyncSession) -> List[int]:
    result = await session.execute(
        select(User.id).where(User.membership_status == MembershipStatus.APPROVED)
    )
    return list(result.scalars().all())


async def list_approved_members(session: AsyncSession) -> List[Dict]:
    result = await session.execute(
        select(User)
        .where(User.membership_status == MembershipStatus.APPROVED)
        .order_by(User.name.asc())
    )
    return [user_to_dict(u) for u in result.scalars().all()]


async def list_pending_join_requests(session: AsyncSession) -> List[Dict]:
    result = await session.execute(
        select(User)
        .where(User.membership_status == MembershipStatus.PENDING)
        .order_by(User.created_at.asc(), User.id.asc())
    )
    return [user_to_dict(u) for u in result.scalars().all()]


async def approve_join_request(session: AsyncSession, user_id: int) -> Dict:
    """
    Approve a pending member; they become a player.

    Raises:
        NotFoundError: If the user does not exist
        PolicyError: If the user is not pending approval
    """
    user = await _get_user(session, user_id)
    if user.membership_status != MembershipStatus.PENDING:
        raise PolicyError("User is not pending approval")

    user.membership_status = MembershipStatus.APPROVED
    user.role = UserRole.PLAYER
    await session.commit()
    logger.info(f"Approved membership of user {user_id}")
    return user_to_dict(user)


async def reject_join_request(session: AsyncSession, user_id: int) -> Dict:
    """
    Reject a pending member.

    Raises:
        NotFoundError: If the user does not exist
        PolicyError: If the user is not pending approval
    """
    user = await _get_user(session, user_id)
    if user.membership_status != MembershipStatus.PENDING:
        raise PolicyError("User is not pending approval")

    user.membership_status = MembershipStatus.REJECTED
    await session.commit()
    logger.info(f"Rejected membership of user {user_id}")
    return user_to_dict(user)


async def update_user_role(session: AsyncSession, user_id: int, role) -> Dict:
    """
    Raises:
        ValidationError: If role is not pending/player/admin
        NotFoundError: If the user does not exist
    """
    try:
        new_role = UserRole(role)
    except ValueError:
        raise ValidationError(f"Invalid role: {role}. Must be one of: pending, player, admin")

    user = await _get_user(session, user_id)
    user.role = new_role
    await session.commit()
    logger.info(f"Set role of user {user_id} to {new_role.value}")
    return user_to_dict(user)


async def update_profile(
    session: AsyncSession,
    user_id: int,
    phone_number: Optional[str] = None,
    name: Optional[str] = None,
) -> Dict:
    """Update the editable profile fields. None leaves a field unchanged."""
    user = await _get_user(session, user_id)
    if phone_number is not None:
        user.phone_number = phone_number.strip() or None
    if name is not None:
        if not name.strip():
            raise ValidationError("name cannot be empty")
        user.name = name.strip()
    await session.commit()
    return user_to_dict(user)
