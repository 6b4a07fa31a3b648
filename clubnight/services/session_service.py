"""
Session service - typed CRUD and filtered queries over club play sessions.

Capacity (max_players) and the RSVP deadline are derived fields: every write
that touches courts or session_date recomputes them here, so they are always
consistent with the stored values.
"""

import logging
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.database.models import Session, SessionStatus, RSVP, RSVPStatus, User
from clubnight.services import rsvp_service
from clubnight.services.errors import NotFoundError, ValidationError
from clubnight.utils.constants import (
    MAX_PLAYERS_BY_COURTS,
    MIN_COURTS,
    MAX_COURTS,
    DEFAULT_RECURRING_OCCURRENCES,
)
from clubnight.utils.datetime_utils import ClubClock, ensure_utc, parse_time_of_day

logger = logging.getLogger(__name__)

DEFAULT_DELETE_CANCELLATION_REASON = "Session deleted by admin"


def max_players_for_courts(courts: int) -> int:
    """
    Capacity for a number of booked courts.

    Raises:
        ValidationError: If courts is outside [1, 3]
    """
    if isinstance(courts, bool) or not isinstance(courts, int) or courts not in MAX_PLAYERS_BY_COURTS:
        raise ValidationError(f"courts must be between {MIN_COURTS} and {MAX_COURTS}")
    return MAX_PLAYERS_BY_COURTS[courts]


def weekday_index(value: date) -> int:
    """Day of week with 0=Sunday .. 6=Saturday."""
    return (value.weekday() + 1) % 7


def _validate_time_window(start_time: str, end_time: str) -> None:
    try:
        start = parse_time_of_day(start_time)
        end = parse_time_of_day(end_time)
    except ValueError as e:
        raise ValidationError(str(e))
    if end <= start:
        raise ValidationError("end_time must be after start_time")


def _validate_title(title: Optional[str]) -> str:
    if title is None or not title.strip():
        raise ValidationError("title is required")
    return title.strip()


def session_to_dict(s: Session, summary: Optional[Dict] = None) -> Dict:
    """Serialize a Session row. Includes the RSVP summary when one is given."""
    data = {
        "id": s.id,
        "title": s.title,
        "description": s.description,
        "session_date": s.session_date.isoformat() if s.session_date else None,
        "start_time": s.start_time,
        "end_time": s.end_time,
        "courts": s.courts,
        "max_players": s.max_players,
        "rsvp_deadline": ensure_utc(s.rsvp_deadline).isoformat() if s.rsvp_deadline else None,
        "is_recurring": s.is_recurring,
        "recurring_day_of_week": s.recurring_day_of_week,
        "recurring_parent_id": s.recurring_parent_id,
        "status": s.status.value if s.status else None,
        "cancellation_reason": s.cancellation_reason,
        "created_by": s.created_by,
        "created_at": ensure_utc(s.created_at).isoformat() if s.created_at else None,
        "updated_at": ensure_utc(s.updated_at).isoformat() if s.updated_at else None,
    }
    if summary is not None:
        data["rsvp_summary"] = summary
    return data


async def get_session(session: AsyncSession, session_id: int) -> Session:
    """
    Load a session row.

    Raises:
        NotFoundError: If the session does not exist
    """
    result = await session.execute(select(Session).where(Session.id == session_id))
    club_session = result.scalar_one_or_none()
    if club_session is None:
        raise NotFoundError(f"Session {session_id} not found")
    return club_session


async def find_sessions(
    session: AsyncSession,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    status: Optional[SessionStatus] = None,
    exclude_status: Optional[SessionStatus] = None,
    recurring_parent_id: Optional[int] = None,
    is_recurring: Optional[bool] = None,
) -> List[Session]:
    """
    Filtered query over sessions, ordered by date then start time.

    All filters are optional and combined with AND. date_from/date_to are
    inclusive civil dates.
    """
    conditions = []
    if date_from is not None:
        conditions.append(Session.session_date >= date_from)
    if date_to is not None:
        conditions.append(Session.session_date <= date_to)
    if status is not None:
        conditions.append(Session.status == status)
    if exclude_status is not None:
        conditions.append(Session.status != exclude_status)
    if recurring_parent_id is not None:
        conditions.append(Session.recurring_parent_id == recurring_parent_id)
    if is_recurring is not None:
        conditions.append(Session.is_recurring == is_recurring)

    query = select(Session)
    if conditions:
        query = query.where(and_(*conditions))
    query = query.order_by(Session.session_date.asc(), Session.start_time.asc(), Session.id.asc())

    result = await session.execute(query)
    return list(result.scalars().all())


async def create_session(
    session: AsyncSession,
    clock: ClubClock,
    title: str,
    session_date: date,
    start_time: str,
    end_time: str,
    courts: int,
    created_by: Optional[int] = None,
    description: Optional[str] = None,
    is_recurring: bool = False,
    recurring_day_of_week: Optional[int] = None,
    occurrences: Optional[int] = None,
) -> Dict:
    """
    Create a one-off or recurring session.

    For a recurring session the new row is the parent and counts as the first
    occurrence; the following weekly occurrences are materialized in the same
    transaction. occurrences defaults to 4 when omitted, and an explicit value
    <= 0 generates nothing beyond the parent.

    Returns:
        Dict with the serialized parent session and the number of children created

    Raises:
        ValidationError: On invalid courts, time window, title or day of week
    """
    title = _validate_title(title)
    max_players = max_players_for_courts(courts)
    _validate_time_window(start_time, end_time)

    if is_recurring:
        if recurring_day_of_week is None:
            recurring_day_of_week = weekday_index(session_date)
        if not 0 <= recurring_day_of_week <= 6:
            raise ValidationError("recurring_day_of_week must be between 0 (Sunday) and 6 (Saturday)")
        if recurring_day_of_week != weekday_index(session_date):
            raise ValidationError("recurring_day_of_week does not match session_date")
    else:
        recurring_day_of_week = None

    club_session = Session(
        title=title,
        description=description,
        session_date=session_date,
        start_time=start_time,
        end_time=end_time,
        courts=courts,
        max_players=max_players,
        rsvp_deadline=clock.rsvp_deadline(session_date),
        is_recurring=is_recurring,
        recurring_day_of_week=recurring_day_of_week,
        status=SessionStatus.OPEN,
        created_by=created_by,
    )
    session.add(club_session)
    await session.flush()

    created_children = 0
    if is_recurring:
        from clubnight.services.recurrence_service import materialize_occurrences

        total = DEFAULT_RECURRING_OCCURRENCES if occurrences is None else occurrences
        children = await materialize_occurrences(session, club_session, total, clock)
        created_children = len(children)

    await session.commit()
    logger.info(
        f"Created session {club_session.id} ({club_session.title!r}) on {session_date} "
        f"with {created_children} recurring occurrence(s)"
    )
    return {
        "session": session_to_dict(club_session),
        "generated_occurrences": created_children,
    }


async def get_session_detail(session: AsyncSession, session_id: int) -> Dict:
    """
    Session with its RSVPs in FCFS order (with user info) and a fresh summary.

    IN RSVPs beyond max_players in FCFS order are flagged over_capacity; none
    are excluded, overflow is left for an admin to resolve.
    """
    club_session = await get_session(session, session_id)

    result = await session.execute(
        select(RSVP, User)
        .join(User, User.id == RSVP.user_id)
        .where(RSVP.session_id == session_id)
        .order_by(RSVP.rsvp_timestamp.asc(), RSVP.id.asc())
    )
    rsvps = []
    in_position = 0
    for rsvp, user in result.all():
        rsvp_dict = rsvp_service.rsvp_to_dict(rsvp, user)
        if rsvp.status == RSVPStatus.IN:
            in_position += 1
            rsvp_dict["over_capacity"] = in_position > club_session.max_players
        else:
            rsvp_dict["over_capacity"] = False
        rsvps.append(rsvp_dict)

    summary = await rsvp_service.summarize_rsvps(session, session_id)
    data = session_to_dict(club_session, summary)
    data["rsvps"] = rsvps
    return data


async def _with_summaries(session: AsyncSession, sessions: List[Session]) -> List[Dict]:
    summaries = await rsvp_service.summarize_rsvps_bulk(session, sessions)
    return [session_to_dict(s, summaries[s.id]) for s in sessions]


async def list_upcoming_sessions(session: AsyncSession, clock: ClubClock) -> List[Dict]:
    """Sessions dated club-local today or later that are not cancelled, each with a summary."""
    sessions = await find_sessions(
        session, date_from=clock.today(), exclude_status=SessionStatus.CANCELLED
    )
    return await _with_summaries(session, sessions)


async def list_cancelled_upcoming_sessions(session: AsyncSession, clock: ClubClock) -> List[Dict]:
    """Cancelled sessions that have not passed yet."""
    sessions = await find_sessions(
        session, date_from=clock.today(), status=SessionStatus.CANCELLED
    )
    return [session_to_dict(s) for s in sessions]


async def update_session(
    session: AsyncSession,
    clock: ClubClock,
    session_id: int,
    updates: Dict,
) -> Dict:
    """
    Partially update a session.

    Only keys present in updates are applied, and only once all of them are
    valid. Changing session_date recomputes rsvp_deadline (and
    recurring_day_of_week of a recurring parent); changing courts recomputes
    max_players.

    Raises:
        NotFoundError: If the session does not exist
        ValidationError: On invalid values
    """
    club_session = await get_session(session, session_id)

    # Validate everything before touching the row
    changes = {}
    if "title" in updates:
        changes["title"] = _validate_title(updates["title"])
    if "description" in updates:
        changes["description"] = updates["description"]

    if "start_time" in updates or "end_time" in updates:
        start_time = updates.get("start_time", club_session.start_time)
        end_time = updates.get("end_time", club_session.end_time)
        _validate_time_window(start_time, end_time)
        changes["start_time"] = start_time
        changes["end_time"] = end_time

    if "session_date" in updates:
        new_date = updates["session_date"]
        if new_date is None:
            raise ValidationError("session_date is required")
        changes["session_date"] = new_date
        changes["rsvp_deadline"] = clock.rsvp_deadline(new_date)
        if club_session.is_recurring:
            # Occurrences follow the parent's weekday
            changes["recurring_day_of_week"] = weekday_index(new_date)

    if "courts" in updates:
        changes["max_players"] = max_players_for_courts(updates["courts"])
        changes["courts"] = updates["courts"]

    if "status" in updates and updates["status"] is not None:
        try:
            new_status = SessionStatus(updates["status"])
        except ValueError:
            raise ValidationError(f"Invalid session status: {updates['status']}")
        changes["status"] = new_status
        if new_status != SessionStatus.CANCELLED:
            changes["cancellation_reason"] = None

    for field, value in changes.items():
        setattr(club_session, field, value)

    await session.commit()
    logger.info(f"Updated session {session_id}: {sorted(updates.keys())}")
    return session_to_dict(club_session)


async def cancel_session(session: AsyncSession, session_id: int, reason: Optional[str] = None) -> Dict:
    """
    Cancel a session, keeping its RSVPs.

    Raises:
        NotFoundError: If the session does not exist
    """
    club_session = await get_session(session, session_id)
    club_session.status = SessionStatus.CANCELLED
    club_session.cancellation_reason = reason
    await session.commit()
    logger.info(f"Cancelled session {session_id}: {reason!r}")
    return session_to_dict(club_session)


async def soft_cancel(session: AsyncSession, club_session: Session, reason: Optional[str] = None) -> None:
    """Mark a session cancelled and retain its RSVPs. Does not commit."""
    club_session.status = SessionStatus.CANCELLED
    club_session.cancellation_reason = reason or DEFAULT_DELETE_CANCELLATION_REASON
    await session.flush()


async def hard_delete(session: AsyncSession, club_session: Session) -> None:
    """
    Delete a session row and its RSVPs. Does not commit.

    Recurring children of this session are not deleted, their back-reference
    is cleared by the foreign key.
    """
    await session.delete(club_session)
    await session.flush()


async def has_rsvps(session: AsyncSession, session_id: int) -> bool:
    result = await session.execute(
        select(func.count()).select_from(RSVP).where(RSVP.session_id == session_id)
    )
    return (result.scalar() or 0) > 0


async def delete_session(session: AsyncSession, session_id: int) -> Dict:
    """
    Delete a session: cancel it if anyone has RSVP'd, otherwise remove it.

    Returns:
        Dict with "action" set to "cancelled" or "deleted"

    Raises:
        NotFoundError: If the session does not exist
    """
    club_session = await get_session(session, session_id)

    if await has_rsvps(session, session_id):
        await soft_cancel(session, club_session)
        action = "cancelled"
    else:
        await hard_delete(session, club_session)
        action = "deleted"

    await session.commit()
    logger.info(f"Session {session_id} {action}")
    return {"session_id": session_id, "action": action}
