"""
Reminder scheduler - background worker that sends session and deadline reminders.

Each tick runs independent scans:
  - session reminders for every configured lead time (24h and 12h by default):
    open sessions whose club-local start falls in [now + lead, now + lead + 1h)
    notify every member with an IN RSVP;
  - deadline reminders: open sessions whose RSVP deadline falls in
    (now, now + lead] notify every approved member without an RSVP.

Scans only read Session/RSVP rows. Every fan-out is claimed first in
reminder_dispatches, keyed by (session, kind, scheduled instant), so repeated
or overlapping ticks never send the same reminder twice.

Waitlist notifications are not timer driven: notify_waitlist() is called when
a confirmed RSVP is removed.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, func, and_, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clubnight.database import db
from clubnight.database.models import (
    MembershipStatus,
    NotificationType,
    ReminderDispatch,
    RSVP,
    RSVPStatus,
    Session,
    SessionStatus,
    User,
)
from clubnight.services.notification_service import NotificationDispatcher
from clubnight.services.recurrence_service import refresh_all
from clubnight.services.session_service import find_sessions
from clubnight.utils.constants import (
    DEFAULT_DEADLINE_REMINDER_HOURS,
    DEFAULT_SESSION_REMINDER_HOURS_12,
    DEFAULT_SESSION_REMINDER_HOURS_24,
    REMINDER_WINDOW_HOURS,
)
from clubnight.utils.datetime_utils import (
    ClubClock,
    ensure_utc,
    format_date_for_display,
    format_deadline_for_display,
    format_time_for_display,
)
from clubnight.utils.env_utils import get_int_env

logger = logging.getLogger(__name__)

SESSION_REMINDER_HOURS = (
    get_int_env("SESSION_REMINDER_HOURS_24", DEFAULT_SESSION_REMINDER_HOURS_24),
    get_int_env("SESSION_REMINDER_HOURS_12", DEFAULT_SESSION_REMINDER_HOURS_12),
)
DEADLINE_REMINDER_HOURS = get_int_env("DEADLINE_REMINDER_HOURS", DEFAULT_DEADLINE_REMINDER_HOURS)

# How often the worker scans (seconds)
REMINDER_TICK_SECONDS = get_int_env("REMINDER_TICK_SECONDS", 3600)

# How often open recurring parents are topped up (hours, 0 disables)
RECURRENCE_REFRESH_HOURS = get_int_env("RECURRENCE_REFRESH_HOURS", 24)

DEADLINE_REMINDER_KIND = "rsvp_deadline"


def session_reminder_kind(lead_hours: int) -> str:
    return f"session_reminder_{lead_hours}h"


async def select_waitlist_recipients(
    session: AsyncSession, session_id: int, max_players: int
) -> Tuple[int, List[int]]:
    """
    Users to tell that a spot opened up.

    Returns:
        (spots_available, user_ids) where user_ids are the earliest MAYBE
        RSVPs by rsvp_timestamp, at most spots_available of them. A session
        at or over capacity has no spots and no recipients.
    """
    count_result = await session.execute(
        select(func.count())
        .select_from(RSVP)
        .where(RSVP.session_id == session_id, RSVP.status == RSVPStatus.IN)
    )
    confirmed = count_result.scalar() or 0
    spots_available = max_players - confirmed
    if spots_available <= 0:
        return 0, []

    result = await session.execute(
        select(RSVP.user_id)
        .where(RSVP.session_id == session_id, RSVP.status == RSVPStatus.MAYBE)
        .order_by(RSVP.rsvp_timestamp.asc(), RSVP.id.asc())
        .limit(spots_available)
    )
    return spots_available, list(result.scalars().all())


class ReminderScheduler:
    """Background service that sends time-window reminders on a fixed cadence."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        clock: ClubClock,
        session_factory=None,
        session_reminder_hours: Sequence[int] = SESSION_REMINDER_HOURS,
        deadline_reminder_hours: int = DEADLINE_REMINDER_HOURS,
        tick_seconds: float = REMINDER_TICK_SECONDS,
        refresh_hours: float = RECURRENCE_REFRESH_HOURS,
    ):
        self.dispatcher = dispatcher
        self.clock = clock
        self._session_factory = session_factory
        self.session_reminder_hours = tuple(session_reminder_hours)
        self.deadline_reminder_hours = deadline_reminder_hours
        self.tick_seconds = tick_seconds
        self.refresh_hours = refresh_hours
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._last_refresh: Optional[float] = None

    def _sessions(self):
        return self._session_factory or db.get_session_factory()

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def start(self) -> None:
        """Start the background reminder worker."""
        if not self.running:
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info(
                f"Reminder scheduler started - session reminders at "
                f"{', '.join(f'{h}h' for h in self.session_reminder_hours)}, "
                f"deadline alerts at {self.deadline_reminder_hours}h, every {self.tick_seconds}s"
            )

    async def stop(self) -> None:
        """Stop the worker, waiting for an in-flight tick to finish."""
        self._stop_event.set()
        if self._worker_task is not None:
            await self._worker_task
            self._worker_task = None
            logger.info("Reminder scheduler stopped")

    async def _poll_loop(self) -> None:
        """Main loop: tick, then sleep out the rest of the interval. Repeats until stopped."""
        loop = asyncio.get_running_loop()
        while not self._stop_event.is_set():
            started = loop.time()
            try:
                await self.run_tick()
            except Exception as e:
                logger.error(f"Error in reminder scheduler tick: {e}", exc_info=True)

            elapsed = loop.time() - started
            if elapsed > self.tick_seconds:
                # Overran: go straight to the next tick, backlogged ticks are dropped
                logger.warning(
                    f"Reminder tick took {elapsed:.1f}s, longer than the {self.tick_seconds}s interval"
                )
            wait_seconds = max(0.0, self.tick_seconds - elapsed)

            # Wait for the rest of the interval or until stop is signalled
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=wait_seconds)
                break
            except asyncio.TimeoutError:
                pass

    def _refresh_due(self) -> bool:
        if not self.refresh_hours or self.refresh_hours <= 0:
            return False
        if self._last_refresh is None:
            return True
        now = asyncio.get_running_loop().time()
        return now - self._last_refresh >= self.refresh_hours * 3600

    async def refresh_recurrences(self) -> Dict:
        """Top up materialized occurrences of every open recurring parent."""
        async with self._sessions()() as session:
            result = await refresh_all(session, self.clock)
        self._last_refresh = asyncio.get_running_loop().time()
        return result

    async def run_tick(self) -> Dict:
        """
        Run one scan pass. Safe to call directly (tests, manual triggers).

        Returns:
            Dict with counts of sessions reminded per scan and per-item failures
        """
        summary = {"session_reminders": 0, "deadline_reminders": 0, "failed": 0, "skipped": False}

        if self._refresh_due():
            try:
                await self.refresh_recurrences()
            except Exception as e:
                logger.error(f"Recurrence refresh failed: {e}", exc_info=True)

        if not self.dispatcher.is_enabled():
            logger.debug("No notification channel configured, reminder scans skipped")
            summary["skipped"] = True
            return summary

        for lead_hours in self.session_reminder_hours:
            try:
                result = await self.send_session_reminders(lead_hours)
                summary["session_reminders"] += result["sessions"]
                summary["failed"] += result["failed"]
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Session reminder scan ({lead_hours}h) failed: {e}", exc_info=True)

        try:
            result = await self.send_deadline_reminders()
            summary["deadline_reminders"] += result["sessions"]
            summary["failed"] += result["failed"]
        except Exception as e:
            summary["failed"] += 1
            logger.error(f"Deadline reminder scan failed: {e}", exc_info=True)

        logger.info(
            f"Reminder tick: {summary['session_reminders']} session reminder(s), "
            f"{summary['deadline_reminders']} deadline reminder(s), {summary['failed']} failure(s)"
        )
        return summary

    async def _claim(
        self,
        session: AsyncSession,
        session_id: int,
        kind: str,
        scheduled_for,
        recipient_count: int,
    ) -> bool:
        """Insert the dispatch marker. False if this reminder was already claimed."""
        session.add(
            ReminderDispatch(
                session_id=session_id,
                reminder_kind=kind,
                scheduled_for=ensure_utc(scheduled_for),
                recipient_count=recipient_count,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return False
        return True

    async def _find_due_session_starts(self, lead_hours: int) -> List[Dict]:
        now = self.clock.now_utc()
        window_start = now + timedelta(hours=lead_hours)
        window_end = window_start + timedelta(hours=REMINDER_WINDOW_HOURS)
        first_day = self.clock.to_local(window_start).date()
        last_day = self.clock.to_local(window_end).date()

        async with self._sessions()() as session:
            candidates = await find_sessions(
                session, date_from=first_day, date_to=last_day, status=SessionStatus.OPEN
            )

        due = []
        for candidate in candidates:
            try:
                start = self.clock.session_start(candidate.session_date, candidate.start_time)
            except ValueError as e:
                logger.warning(f"Skipping session {candidate.id} with bad start time: {e}")
                continue
            if window_start <= start < window_end:
                due.append(
                    {
                        "id": candidate.id,
                        "title": candidate.title,
                        "session_date": candidate.session_date,
                        "start": start,
                    }
                )
        return due

    async def send_session_reminders(self, lead_hours: int) -> Dict:
        """Remind IN members of sessions starting lead_hours from now (one-hour window)."""
        kind = session_reminder_kind(lead_hours)
        sent = 0
        failed = 0

        for item in await self._find_due_session_starts(lead_hours):
            try:
                async with self._sessions()() as session:
                    result = await session.execute(
                        select(RSVP.user_id)
                        .where(RSVP.session_id == item["id"], RSVP.status == RSVPStatus.IN)
                        .order_by(RSVP.rsvp_timestamp.asc())
                    )
                    user_ids = list(result.scalars().all())
                    if not user_ids:
                        continue
                    if not await self._claim(session, item["id"], kind, item["start"], len(user_ids)):
                        logger.info(f"{kind} for session {item['id']} already sent, skipping")
                        continue

                local_start = self.clock.to_local(item["start"])
                title = f"Session Reminder ({lead_hours}h)"
                body = (
                    f"Don't forget! {item['title']} is on "
                    f"{format_date_for_display(item['session_date'])} at {format_time_for_display(local_start)}"
                )
                delivery = await self.dispatcher.send_bulk(
                    user_ids,
                    NotificationType.SESSION_REMINDER,
                    title,
                    body,
                    {"type": NotificationType.SESSION_REMINDER.value, "session_id": str(item["id"])},
                )
                sent += 1
                logger.info(
                    f"Sent {lead_hours}h session reminders to {delivery['total']} user(s) "
                    f"for session {item['id']} ({delivery['failed']} failed)"
                )
            except Exception as e:
                failed += 1
                logger.error(
                    f"Error sending {lead_hours}h reminders for session {item['id']}: {e}", exc_info=True
                )

        return {"sessions": sent, "failed": failed}

    async def send_deadline_reminders(self) -> Dict:
        """Alert approved members without an RSVP when a deadline is near."""
        now = self.clock.now_utc()
        window_end = now + timedelta(hours=self.deadline_reminder_hours)

        async with self._sessions()() as session:
            result = await session.execute(
                select(Session.id, Session.title, Session.session_date, Session.rsvp_deadline)
                .where(
                    and_(
                        Session.rsvp_deadline > now,
                        Session.rsvp_deadline <= window_end,
                        Session.status == SessionStatus.OPEN,
                    )
                )
                .order_by(Session.rsvp_deadline.asc())
            )
            due = result.all()

        sent = 0
        failed = 0
        for session_id, session_title, session_date, deadline in due:
            try:
                async with self._sessions()() as session:
                    responded = exists().where(
                        RSVP.session_id == session_id, RSVP.user_id == User.id
                    )
                    result = await session.execute(
                        select(User.id)
                        .where(User.membership_status == MembershipStatus.APPROVED, ~responded)
                        .order_by(User.id.asc())
                    )
                    user_ids = list(result.scalars().all())
                    if not user_ids:
                        # Unclaimed, so members who become eligible later in the window still get it
                        continue
                    if not await self._claim(
                        session, session_id, DEADLINE_REMINDER_KIND, deadline, len(user_ids)
                    ):
                        logger.info(f"Deadline reminder for session {session_id} already sent, skipping")
                        continue

                body = (
                    f"The RSVP deadline for {session_title} ({format_date_for_display(session_date)}) "
                    f"is {format_deadline_for_display(self.clock, deadline)}. Don't miss out!"
                )
                delivery = await self.dispatcher.send_bulk(
                    user_ids,
                    NotificationType.RSVP_DEADLINE,
                    "RSVP Deadline Approaching",
                    body,
                    {"type": NotificationType.RSVP_DEADLINE.value, "session_id": str(session_id)},
                )
                sent += 1
                logger.info(
                    f"Sent RSVP deadline reminders to {delivery['total']} user(s) "
                    f"for session {session_id} ({delivery['failed']} failed)"
                )
            except Exception as e:
                failed += 1
                logger.error(f"Error sending deadline reminders for session {session_id}: {e}", exc_info=True)

        return {"sessions": sent, "failed": failed}

    async def notify_waitlist(self, session_id: int) -> Dict:
        """
        Tell the earliest MAYBE members that a confirmed spot opened up.

        Called after an IN RSVP is removed. Advisory only, nobody is promoted.

        Returns:
            Dict with spots_available and the notified user ids
        """
        outcome = {"session_id": session_id, "spots_available": 0, "notified": []}
        if not self.dispatcher.is_enabled():
            return outcome

        async with self._sessions()() as session:
            club_session = await session.get(Session, session_id)
            if club_session is None or club_session.status != SessionStatus.OPEN:
                return outcome
            spots, user_ids = await select_waitlist_recipients(
                session, session_id, club_session.max_players
            )
            session_title = club_session.title
            session_date = club_session.session_date

        outcome["spots_available"] = spots
        if not user_ids:
            return outcome

        body = (
            f"A spot has opened up for {session_title} on {format_date_for_display(session_date)}. "
            f"RSVP now to confirm your place!"
        )
        await self.dispatcher.send_bulk(
            user_ids,
            NotificationType.WAITLIST_UPDATE,
            "Spot Available!",
            body,
            {"type": NotificationType.WAITLIST_UPDATE.value, "session_id": str(session_id)},
        )
        outcome["notified"] = user_ids
        logger.info(f"Sent waitlist updates to {len(user_ids)} user(s) for session {session_id}")
        return outcome
