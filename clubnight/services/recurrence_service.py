"""
Recurrence service - materializes weekly child sessions of a recurring parent.

The parent counts as occurrence 1. Children are keyed by
(recurring_parent_id, session_date), so re-running with the same or a larger
occurrence count never duplicates a date that already exists.
"""

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.database.models import Session, SessionStatus
from clubnight.services.session_service import max_players_for_courts
from clubnight.utils.constants import RECURRENCE_REFRESH_WEEKS_AHEAD, RECURRING_TITLE_FORMAT
from clubnight.utils.datetime_utils import ClubClock

logger = logging.getLogger(__name__)


def occurrence_title(session_date: date) -> str:
    """Title for a generated occurrence, e.g. "Sunday - 22 Jun 2025"."""
    return session_date.strftime(RECURRING_TITLE_FORMAT)


def occurrence_dates(parent_date: date, total_occurrences: int) -> List[date]:
    """Weekly dates after the parent date, for total_occurrences - 1 steps."""
    return [parent_date + timedelta(weeks=step) for step in range(1, max(total_occurrences, 0))]


async def materialize_occurrences(
    session: AsyncSession,
    parent: Session,
    total_occurrences: int,
    clock: ClubClock,
    not_before: Optional[date] = None,
) -> List[Session]:
    """
    Create the missing weekly children of a recurring parent.

    Walks forward from the parent's date in 7-day steps for
    total_occurrences - 1 steps and creates a child for each date that has no
    child yet. Children inherit description, time window, courts, derived
    capacity and creator, and get their own deadline and generated title.
    Dates before not_before are skipped. Flushes but does not commit.

    A parent without recurring_day_of_week, or total_occurrences <= 1, is a no-op.

    Returns:
        The newly created child sessions
    """
    if parent.recurring_day_of_week is None or total_occurrences <= 1:
        return []

    candidates = occurrence_dates(parent.session_date, total_occurrences)
    if not_before is not None:
        candidates = [d for d in candidates if d >= not_before]
    if not candidates:
        return []

    result = await session.execute(
        select(Session.session_date).where(
            Session.recurring_parent_id == parent.id,
            Session.session_date.in_(candidates),
        )
    )
    existing = set(result.scalars().all())

    created = []
    for candidate in candidates:
        if candidate in existing:
            continue
        child = Session(
            title=occurrence_title(candidate),
            description=parent.description,
            session_date=candidate,
            start_time=parent.start_time,
            end_time=parent.end_time,
            courts=parent.courts,
            max_players=max_players_for_courts(parent.courts),
            rsvp_deadline=clock.rsvp_deadline(candidate),
            is_recurring=False,
            recurring_parent_id=parent.id,
            status=SessionStatus.OPEN,
            created_by=parent.created_by,
        )
        session.add(child)
        created.append(child)

    if created:
        await session.flush()
        logger.info(
            f"Materialized {len(created)} occurrence(s) of recurring session {parent.id}"
        )
    return created


def refresh_occurrence_count(parent_date: date, today: date, weeks_ahead: int) -> int:
    """Occurrences (parent included) needed to reach weeks_ahead past today."""
    horizon = today + timedelta(weeks=weeks_ahead)
    if horizon < parent_date:
        return 1
    return (horizon - parent_date).days // 7 + 1


async def refresh_all(
    session: AsyncSession,
    clock: ClubClock,
    weeks_ahead: int = RECURRENCE_REFRESH_WEEKS_AHEAD,
) -> Dict:
    """
    Fill gaps for every open recurring parent, up to weeks_ahead past today.

    Dates already in the past are not back-filled. Each parent is handled in
    its own transaction so one failure does not stop the sweep.

    Returns:
        Dict with the number of parents scanned, children created and failures
    """
    today = clock.today()
    result = await session.execute(
        select(Session.id).where(
            Session.is_recurring.is_(True),
            Session.status == SessionStatus.OPEN,
        )
    )
    parent_ids = list(result.scalars().all())

    created = 0
    failed = 0
    for parent_id in parent_ids:
        try:
            # Re-load per parent, a rollback expires everything in the session
            parent = await session.get(Session, parent_id)
            if parent is None:
                continue
            total = refresh_occurrence_count(parent.session_date, today, weeks_ahead)
            children = await materialize_occurrences(
                session, parent, total, clock, not_before=today
            )
            await session.commit()
            created += len(children)
        except IntegrityError:
            # A concurrent refresh created the same child first
            await session.rollback()
            logger.warning(f"Concurrent materialization for recurring session {parent_id}, skipped")
        except Exception as e:
            await session.rollback()
            failed += 1
            logger.error(f"Failed to refresh recurring session {parent_id}: {e}", exc_info=True)

    logger.info(
        f"Recurrence refresh: {len(parent_ids)} parent(s), {created} occurrence(s) created, {failed} failed"
    )
    return {"parents": len(parent_ids), "created": created, "failed": failed}
