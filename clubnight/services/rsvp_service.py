"""
RSVP service - per (session, user) attendance state machine.

Each upsert/remove runs in one transaction: the session and RSVP rows are
read with row locks and the deadline is evaluated against the clock inside
that transaction, so the check that decides a write is the one made at write
time. Two concurrent "first creates" for the same pair collide on the
(session_id, user_id) unique constraint; the loser rolls back and retries
once, finding the winner's row.
"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.database.models import RSVP, RSVPStatus, Session, SessionStatus, User
from clubnight.services.errors import (
    DeadlinePassedError,
    DependencyError,
    LockedInError,
    NotFoundError,
    PolicyError,
    SessionNotOpenError,
    ValidationError,
)
from clubnight.utils.datetime_utils import ClubClock, ensure_utc

logger = logging.getLogger(__name__)

# One retry covers the lost race on a concurrent first create
MAX_UPSERT_ATTEMPTS = 2


def parse_rsvp_status(value) -> RSVPStatus:
    """
    Raises:
        ValidationError: If value is not one of in/out/maybe
    """
    try:
        return RSVPStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid RSVP status: {value}. Must be one of: in, out, maybe")


def rsvp_to_dict(rsvp: RSVP, user: Optional[User] = None) -> Dict:
    """Serialize an RSVP row, with basic user info when given."""
    data = {
        "id": rsvp.id,
        "session_id": rsvp.session_id,
        "user_id": rsvp.user_id,
        "status": rsvp.status.value if rsvp.status else None,
        "rsvp_timestamp": ensure_utc(rsvp.rsvp_timestamp).isoformat() if rsvp.rsvp_timestamp else None,
        "is_late_rsvp": rsvp.is_late_rsvp,
        "added_by_admin": rsvp.added_by_admin,
        "created_at": ensure_utc(rsvp.created_at).isoformat() if rsvp.created_at else None,
        "updated_at": ensure_utc(rsvp.updated_at).isoformat() if rsvp.updated_at else None,
    }
    if user is not None:
        data["user"] = {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "avatar_url": user.avatar_url,
        }
    return data


async def _lock_session(session: AsyncSession, session_id: int) -> Session:
    result = await session.execute(
        select(Session).where(Session.id == session_id).with_for_update(read=True)
    )
    club_session = result.scalar_one_or_none()
    if club_session is None:
        raise NotFoundError(f"Session {session_id} not found")
    return club_session


async def _lock_rsvp(session: AsyncSession, session_id: int, user_id: int) -> Optional[RSVP]:
    result = await session.execute(
        select(RSVP)
        .where(RSVP.session_id == session_id, RSVP.user_id == user_id)
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def _upsert_once(
    session: AsyncSession,
    clock: ClubClock,
    session_id: int,
    user_id: int,
    new_status: RSVPStatus,
    is_admin: bool,
) -> Dict:
    club_session = await _lock_session(session, session_id)
    if club_session.status != SessionStatus.OPEN:
        raise SessionNotOpenError()

    now = clock.now_utc()
    late = now > ensure_utc(club_session.rsvp_deadline)

    rsvp = await _lock_rsvp(session, session_id, user_id)
    created = rsvp is None

    if created:
        if late and not is_admin:
            raise DeadlinePassedError()
        if await session.get(User, user_id) is None:
            raise NotFoundError(f"User {user_id} not found")
        rsvp = RSVP(
            session_id=session_id,
            user_id=user_id,
            status=new_status,
            rsvp_timestamp=now,
            is_late_rsvp=late,
            added_by_admin=is_admin,
            created_at=now,
            updated_at=now,
        )
        session.add(rsvp)
    else:
        if late and not is_admin:
            if rsvp.status == RSVPStatus.IN and new_status != RSVPStatus.IN:
                raise LockedInError()
            if rsvp.status != RSVPStatus.IN:
                raise DeadlinePassedError()
        # rsvp_timestamp and is_late_rsvp belong to the first write
        rsvp.status = new_status
        rsvp.updated_at = now
        if is_admin:
            rsvp.added_by_admin = True

    await session.flush()
    await session.commit()

    data = rsvp_to_dict(rsvp)
    data["created"] = created
    return data


async def upsert_rsvp(
    session: AsyncSession,
    clock: ClubClock,
    session_id: int,
    user_id: int,
    status,
    is_admin: bool = False,
) -> Dict:
    """
    Create or update a member's RSVP for a session.

    Members cannot create an RSVP after the deadline, cannot downgrade an IN
    RSVP after the deadline, and cannot change an OUT/MAYBE RSVP after the
    deadline. Admin callers bypass the deadline rules, and any admin write
    marks the record added_by_admin for good.

    Returns:
        Serialized RSVP with a "created" flag

    Raises:
        ValidationError: Unknown status
        NotFoundError: Session or user does not exist
        SessionNotOpenError, DeadlinePassedError, LockedInError: Policy rejections
        DependencyError: Storage failure, safe to retry
    """
    new_status = parse_rsvp_status(status)

    for attempt in range(1, MAX_UPSERT_ATTEMPTS + 1):
        try:
            return await _upsert_once(session, clock, session_id, user_id, new_status, is_admin)
        except IntegrityError as e:
            await session.rollback()
            if attempt == MAX_UPSERT_ATTEMPTS:
                raise DependencyError(f"Could not save RSVP for session {session_id}") from e
            logger.info(
                f"Concurrent RSVP create for session {session_id}, user {user_id}; retrying"
            )
        except OperationalError as e:
            await session.rollback()
            logger.error(f"Storage error saving RSVP for session {session_id}: {e}")
            raise DependencyError(f"Could not save RSVP for session {session_id}") from e
        except (PolicyError, NotFoundError):
            await session.rollback()
            raise


async def remove_rsvp(
    session: AsyncSession,
    clock: ClubClock,
    session_id: int,
    user_id: int,
    is_admin: bool = False,
) -> Dict:
    """
    Delete a member's RSVP.

    Returns:
        Dict with the removed RSVP's previous status, so callers can decide
        whether a confirmed spot opened up

    Raises:
        NotFoundError: Session or RSVP does not exist
        LockedInError: A member removing an IN RSVP after the deadline
        DependencyError: Storage failure, safe to retry
    """
    try:
        club_session = await _lock_session(session, session_id)
        rsvp = await _lock_rsvp(session, session_id, user_id)
        if rsvp is None:
            raise NotFoundError("RSVP not found")

        late = clock.now_utc() > ensure_utc(club_session.rsvp_deadline)
        if late and not is_admin and rsvp.status == RSVPStatus.IN:
            raise LockedInError("Cannot remove IN RSVP after deadline")

        previous_status = rsvp.status
        await session.delete(rsvp)
        await session.commit()
    except OperationalError as e:
        await session.rollback()
        logger.error(f"Storage error removing RSVP for session {session_id}: {e}")
        raise DependencyError(f"Could not remove RSVP for session {session_id}") from e
    except (PolicyError, NotFoundError):
        await session.rollback()
        raise

    logger.info(
        f"Removed RSVP of user {user_id} for session {session_id} "
        f"(was {previous_status.value}, admin={is_admin})"
    )
    return {
        "session_id": session_id,
        "user_id": user_id,
        "previous_status": previous_status.value,
    }


def build_summary(max_players: int, counts: Dict[RSVPStatus, int]) -> Dict:
    """Summary from per-status counts. Overflow is reported, never trimmed."""
    total_in = counts.get(RSVPStatus.IN, 0)
    return {
        "total_in": total_in,
        "total_out": counts.get(RSVPStatus.OUT, 0),
        "total_maybe": counts.get(RSVPStatus.MAYBE, 0),
        "max_players": max_players,
        "spots_left": max(0, max_players - total_in),
        "is_over_capacity": total_in > max_players,
    }


async def summarize_rsvps(session: AsyncSession, session_id: int) -> Dict:
    """
    Count in/out/maybe for a session, computed fresh from the RSVP rows.

    Raises:
        NotFoundError: Session does not exist
    """
    result = await session.execute(select(Session.max_players).where(Session.id == session_id))
    max_players = result.scalar_one_or_none()
    if max_players is None:
        raise NotFoundError(f"Session {session_id} not found")

    counts_result = await session.execute(
        select(RSVP.status, func.count())
        .where(RSVP.session_id == session_id)
        .group_by(RSVP.status)
    )
    counts = {status: count for status, count in counts_result.all()}
    return build_summary(max_players, counts)


async def summarize_rsvps_bulk(session: AsyncSession, sessions: Iterable[Session]) -> Dict[int, Dict]:
    """Summaries for several sessions with one grouped count query."""
    sessions = list(sessions)
    if not sessions:
        return {}

    result = await session.execute(
        select(RSVP.session_id, RSVP.status, func.count())
        .where(RSVP.session_id.in_([s.id for s in sessions]))
        .group_by(RSVP.session_id, RSVP.status)
    )
    counts: Dict[int, Dict[RSVPStatus, int]] = {}
    for session_id, status, count in result.all():
        counts.setdefault(session_id, {})[status] = count

    return {s.id: build_summary(s.max_players, counts.get(s.id, {})) for s in sessions}


async def get_rsvps_for_session(
    session: AsyncSession, session_id: int, status: Optional[RSVPStatus] = None
) -> List[Dict]:
    """RSVPs of a session with user info, in FCFS (rsvp_timestamp ascending) order."""
    query = (
        select(RSVP, User)
        .join(User, User.id == RSVP.user_id)
        .where(RSVP.session_id == session_id)
    )
    if status is not None:
        query = query.where(RSVP.status == status)
    query = query.order_by(RSVP.rsvp_timestamp.asc(), RSVP.id.asc())

    result = await session.execute(query)
    return [rsvp_to_dict(rsvp, user) for rsvp, user in result.all()]


async def get_confirmed_players(session: AsyncSession, session_id: int) -> List[Dict]:
    """IN RSVPs of a session in FCFS order."""
    return await get_rsvps_for_session(session, session_id, status=RSVPStatus.IN)


async def get_user_rsvp(session: AsyncSession, session_id: int, user_id: int) -> Optional[Dict]:
    """A user's RSVP for a session, or None."""
    result = await session.execute(
        select(RSVP).where(RSVP.session_id == session_id, RSVP.user_id == user_id)
    )
    rsvp = result.scalar_one_or_none()
    return rsvp_to_dict(rsvp) if rsvp else None
