"""
Tests for the reminder scheduler: reminder windows, persisted de-duplication,
deadline alerts, waitlist notices, failure isolation and graceful stop.
"""

import asyncio
from datetime import date, datetime

import pytest
import pytz
from sqlalchemy import select

from clubnight.database.models import MembershipStatus, ReminderDispatch, RSVPStatus, SessionStatus
from clubnight.services import rsvp_service
from clubnight.services.reminder_scheduler import (
    ReminderScheduler,
    select_waitlist_recipients,
    session_reminder_kind,
)
from clubnight.services.session_service import find_sessions
from clubnight.tests.fakes import FakeDispatcher


def _utc(*args):
    return pytz.UTC.localize(datetime(*args))


# Monday 2 June 2025 18:00 in Sydney is 08:00 UTC
SESSION_DATE = date(2025, 6, 2)
SESSION_START_UTC = _utc(2025, 6, 2, 8, 0)


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def scheduler(test_engine, dispatcher, clock):
    return ReminderScheduler(dispatcher, clock, session_reminder_hours=(24, 12), refresh_hours=0)


async def _dispatch_rows(db_session):
    db_session.expire_all()
    result = await db_session.execute(select(ReminderDispatch))
    return result.scalars().all()


def test_session_reminder_kind():
    assert session_reminder_kind(24) == "session_reminder_24h"


@pytest.mark.asyncio
async def test_session_reminder_fires_at_lead_time(
    db_session, scheduler, dispatcher, now, make_user, make_session, add_rsvp
):
    club_session = await make_session(SESSION_DATE, start_time="18:00", title="Monday Night")
    confirmed = [await make_user() for _ in range(2)]
    maybe = await make_user()
    for user in confirmed:
        await add_rsvp(club_session.id, user.id, RSVPStatus.IN)
    await add_rsvp(club_session.id, maybe.id, RSVPStatus.MAYBE)

    now.set(_utc(2025, 6, 1, 8, 0))  # exactly 24h before the start
    result = await scheduler.run_tick()

    assert result["session_reminders"] == 1
    assert result["failed"] == 0
    assert len(dispatcher.bulk_sends) == 1
    send = dispatcher.bulk_sends[0]
    assert send["user_ids"] == [u.id for u in confirmed]
    assert send["kind"] == "session_reminder"
    assert send["title"] == "Session Reminder (24h)"
    assert send["body"] == "Don't forget! Monday Night is on Monday, 2 June 2025 at 6:00 PM"
    assert send["metadata"] == {"type": "session_reminder", "session_id": str(club_session.id)}

    rows = await _dispatch_rows(db_session)
    assert [(r.reminder_kind, r.recipient_count) for r in rows] == [("session_reminder_24h", 2)]


@pytest.mark.asyncio
async def test_session_reminder_window_is_half_open(
    db_session, scheduler, dispatcher, now, make_user, make_session, add_rsvp
):
    club_session = await make_session(SESSION_DATE, start_time="18:00")
    user = await make_user()
    await add_rsvp(club_session.id, user.id, RSVPStatus.IN)

    # 23h59m before the start: the start is before the window opens
    now.set(_utc(2025, 6, 1, 8, 1))
    assert (await scheduler.run_tick())["session_reminders"] == 0

    # 25h before the start: the start is exactly at the window end
    now.set(_utc(2025, 6, 1, 7, 0))
    assert (await scheduler.run_tick())["session_reminders"] == 0

    # Just inside the window
    now.set(_utc(2025, 6, 1, 7, 1))
    assert (await scheduler.run_tick())["session_reminders"] == 1
    assert dispatcher.bulk_sends[0]["title"] == "Session Reminder (24h)"


@pytest.mark.asyncio
async def test_repeated_ticks_send_each_reminder_once(
    db_session, scheduler, dispatcher, now, make_user, make_session, add_rsvp
):
    club_session = await make_session(SESSION_DATE, start_time="18:00")
    user = await make_user()
    await add_rsvp(club_session.id, user.id, RSVPStatus.IN)
    now.set(_utc(2025, 6, 1, 8, 0))

    await scheduler.run_tick()
    now.set(_utc(2025, 6, 1, 8, 30))  # still inside the same window
    await scheduler.run_tick()

    assert len(dispatcher.bulk_sends) == 1
    assert len(await _dispatch_rows(db_session)) == 1

    # A second scheduler (another process) does not resend either
    other = ReminderScheduler(dispatcher, scheduler.clock, session_reminder_hours=(24, 12), refresh_hours=0)
    await other.run_tick()
    assert len(dispatcher.bulk_sends) == 1


@pytest.mark.asyncio
async def test_twelve_hour_reminder_is_separate(
    db_session, scheduler, dispatcher, now, make_user, make_session, add_rsvp
):
    club_session = await make_session(SESSION_DATE, start_time="18:00")
    user = await make_user()
    await add_rsvp(club_session.id, user.id, RSVPStatus.IN)

    now.set(_utc(2025, 6, 1, 8, 0))
    await scheduler.run_tick()
    now.set(_utc(2025, 6, 1, 20, 0))
    await scheduler.run_tick()

    assert [s["title"] for s in dispatcher.bulk_sends] == [
        "Session Reminder (24h)",
        "Session Reminder (12h)",
    ]


@pytest.mark.asyncio
async def test_cancelled_sessions_get_no_reminders(
    db_session, scheduler, dispatcher, now, make_user, make_session, add_rsvp
):
    club_session = await make_session(SESSION_DATE, start_time="18:00", status=SessionStatus.CANCELLED)
    user = await make_user()
    await add_rsvp(club_session.id, user.id, RSVPStatus.IN)
    now.set(_utc(2025, 6, 1, 8, 0))

    assert (await scheduler.run_tick())["session_reminders"] == 0
    assert dispatcher.bulk_sends == []


@pytest.mark.asyncio
async def test_deadline_reminder_targets_members_without_rsvp(
    db_session, scheduler, dispatcher, now, make_user, make_session, add_rsvp
):
    # Deadline for 15 June is 2025-06-12 13:59:59 UTC (Thursday 11:59 PM club time)
    club_session = await make_session(date(2025, 6, 15), title="Sunday Social")
    silent = await make_user()
    responded = await make_user()
    await make_user(membership_status=MembershipStatus.PENDING)
    await add_rsvp(club_session.id, responded.id, RSVPStatus.OUT)

    now.set(_utc(2025, 6, 12, 9, 0))
    result = await scheduler.run_tick()

    assert result["deadline_reminders"] == 1
    send = dispatcher.bulk_sends[0]
    assert send["user_ids"] == [silent.id]
    assert send["kind"] == "rsvp_deadline"
    assert send["title"] == "RSVP Deadline Approaching"
    assert send["body"] == (
        "The RSVP deadline for Sunday Social (Sunday, 15 June 2025) is Thursday 11:59 PM. Don't miss out!"
    )

    # Same deadline, later tick: no resend
    now.set(_utc(2025, 6, 12, 12, 0))
    await scheduler.run_tick()
    assert len(dispatcher.bulk_sends) == 1


@pytest.mark.asyncio
async def test_deadline_reminder_window_bounds(db_session, scheduler, dispatcher, now, make_user, make_session):
    await make_session(date(2025, 6, 15))
    await make_user()

    # Deadline more than 6h away
    now.set(_utc(2025, 6, 12, 7, 59, 58))
    assert (await scheduler.run_tick())["deadline_reminders"] == 0

    # Deadline already passed
    now.set(_utc(2025, 6, 12, 14, 0))
    assert (await scheduler.run_tick())["deadline_reminders"] == 0
    assert dispatcher.bulk_sends == []


@pytest.mark.asyncio
async def test_deadline_reminder_with_nobody_to_remind_stays_unclaimed(
    db_session, scheduler, dispatcher, now, make_user, make_session, add_rsvp
):
    club_session = await make_session(date(2025, 6, 15))
    early = await make_user()
    await add_rsvp(club_session.id, early.id, RSVPStatus.IN)

    now.set(_utc(2025, 6, 12, 9, 0))
    assert (await scheduler.run_tick())["deadline_reminders"] == 0
    assert await _dispatch_rows(db_session) == []

    # Approved later in the same window
    newcomer = await make_user()
    now.set(_utc(2025, 6, 12, 10, 0))
    assert (await scheduler.run_tick())["deadline_reminders"] == 1
    assert [s["user_ids"] for s in dispatcher.bulk_sends] == [[newcomer.id]]


@pytest.mark.asyncio
async def test_session_reminder_waits_for_first_confirmed_player(
    db_session, scheduler, dispatcher, now, make_user, make_session, add_rsvp
):
    club_session = await make_session(SESSION_DATE, start_time="18:00")
    user = await make_user()

    now.set(_utc(2025, 6, 1, 7, 10))
    assert (await scheduler.run_tick())["session_reminders"] == 0
    assert await _dispatch_rows(db_session) == []

    await add_rsvp(club_session.id, user.id, RSVPStatus.IN)
    now.set(_utc(2025, 6, 1, 7, 40))
    assert (await scheduler.run_tick())["session_reminders"] == 1
    assert dispatcher.bulk_sends[0]["user_ids"] == [user.id]

    rows = await _dispatch_rows(db_session)
    assert [(r.reminder_kind, r.recipient_count) for r in rows] == [("session_reminder_24h", 1)]


@pytest.mark.asyncio
async def test_failure_in_one_session_does_not_stop_others(
    db_session, clock, now, make_user, make_session, add_rsvp, test_engine
):
    broken = await make_session(SESSION_DATE, start_time="18:00", title="Broken")
    healthy = await make_session(SESSION_DATE, start_time="18:30", title="Healthy")
    user = await make_user()
    await add_rsvp(broken.id, user.id, RSVPStatus.IN)
    await add_rsvp(healthy.id, user.id, RSVPStatus.IN)

    dispatcher = FakeDispatcher(fail_for_sessions=[broken.id])
    scheduler = ReminderScheduler(dispatcher, clock, session_reminder_hours=(24,), refresh_hours=0)
    now.set(_utc(2025, 6, 1, 8, 0))

    result = await scheduler.run_tick()

    assert result["session_reminders"] == 1
    assert result["failed"] == 1
    assert [s["metadata"]["session_id"] for s in dispatcher.bulk_sends] == [str(healthy.id)]


@pytest.mark.asyncio
async def test_disabled_dispatcher_skips_scans(db_session, clock, now, make_user, make_session, add_rsvp, test_engine):
    club_session = await make_session(SESSION_DATE, start_time="18:00")
    user = await make_user()
    await add_rsvp(club_session.id, user.id, RSVPStatus.IN)
    dispatcher = FakeDispatcher(enabled=False)
    scheduler = ReminderScheduler(dispatcher, clock, refresh_hours=0)
    now.set(_utc(2025, 6, 1, 8, 0))

    result = await scheduler.run_tick()

    assert result["skipped"] is True
    assert dispatcher.bulk_sends == []
    assert await _dispatch_rows(db_session) == []


@pytest.mark.asyncio
async def test_tick_refreshes_recurring_sessions(db_session, clock, dispatcher, test_engine, make_session):
    parent = await make_session(date(2025, 6, 1), is_recurring=True, recurring_day_of_week=0)
    parent_id = parent.id
    scheduler = ReminderScheduler(dispatcher, clock, refresh_hours=24)

    await scheduler.run_tick()
    await scheduler.run_tick()  # refresh not due again yet

    children = await find_sessions(db_session, recurring_parent_id=parent_id)
    assert [c.session_date for c in children] == [
        date(2025, 6, 8),
        date(2025, 6, 15),
        date(2025, 6, 22),
        date(2025, 6, 29),
    ]


# ---------------------------------------------------------------------------
# Waitlist
# ---------------------------------------------------------------------------


async def _full_session_with_waitlist(make_session, make_user, add_rsvp):
    club_session = await make_session(date(2025, 6, 15), courts=2)  # 10 players
    confirmed = [await make_user() for _ in range(10)]
    for user in confirmed:
        await add_rsvp(club_session.id, user.id, RSVPStatus.IN)
    first_maybe = await make_user()
    second_maybe = await make_user()
    await add_rsvp(club_session.id, first_maybe.id, RSVPStatus.MAYBE)
    await add_rsvp(club_session.id, second_maybe.id, RSVPStatus.MAYBE)
    return club_session, confirmed, first_maybe, second_maybe


@pytest.mark.asyncio
async def test_freed_spot_notifies_earliest_maybe(
    db_session, scheduler, dispatcher, clock, make_user, make_session, add_rsvp
):
    club_session, confirmed, first_maybe, _ = await _full_session_with_waitlist(
        make_session, make_user, add_rsvp
    )
    session_id = club_session.id

    removed = await rsvp_service.remove_rsvp(db_session, clock, session_id, confirmed[0].id)
    assert removed["previous_status"] == "in"

    outcome = await scheduler.notify_waitlist(session_id)

    assert outcome == {"session_id": session_id, "spots_available": 1, "notified": [first_maybe.id]}
    send = dispatcher.bulk_sends[0]
    assert send["kind"] == "waitlist_update"
    assert send["title"] == "Spot Available!"
    assert send["body"] == (
        "A spot has opened up for Club Night on Sunday, 15 June 2025. RSVP now to confirm your place!"
    )


@pytest.mark.asyncio
async def test_full_session_notifies_nobody(db_session, scheduler, dispatcher, make_user, make_session, add_rsvp):
    club_session, _, _, _ = await _full_session_with_waitlist(make_session, make_user, add_rsvp)

    spots, user_ids = await select_waitlist_recipients(db_session, club_session.id, club_session.max_players)
    assert (spots, user_ids) == (0, [])

    outcome = await scheduler.notify_waitlist(club_session.id)
    assert outcome["notified"] == []
    assert dispatcher.bulk_sends == []


@pytest.mark.asyncio
async def test_waitlist_skipped_for_cancelled_session_or_disabled_dispatcher(
    db_session, clock, test_engine, make_user, make_session, add_rsvp
):
    club_session = await make_session(date(2025, 6, 15), status=SessionStatus.CANCELLED)
    maybe = await make_user()
    await add_rsvp(club_session.id, maybe.id, RSVPStatus.MAYBE)

    enabled = FakeDispatcher()
    outcome = await ReminderScheduler(enabled, clock).notify_waitlist(club_session.id)
    assert outcome["notified"] == []

    open_session = await make_session(date(2025, 6, 22))
    await add_rsvp(open_session.id, maybe.id, RSVPStatus.MAYBE)
    disabled = FakeDispatcher(enabled=False)
    outcome = await ReminderScheduler(disabled, clock).notify_waitlist(open_session.id)
    assert outcome["notified"] == []
    assert enabled.bulk_sends == [] and disabled.bulk_sends == []


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class GatedScheduler(ReminderScheduler):
    """Scheduler whose tick blocks until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.tick_started = asyncio.Event()
        self.release = asyncio.Event()
        self.completed_ticks = 0

    async def run_tick(self):
        self.tick_started.set()
        await self.release.wait()
        self.completed_ticks += 1
        return {}


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_tick(clock, dispatcher):
    scheduler = GatedScheduler(dispatcher, clock, tick_seconds=3600, refresh_hours=0)
    scheduler.start()
    assert scheduler.running

    await asyncio.wait_for(scheduler.tick_started.wait(), timeout=1)
    stopping = asyncio.create_task(scheduler.stop())
    await asyncio.sleep(0.01)
    assert not stopping.done()

    scheduler.release.set()
    await asyncio.wait_for(stopping, timeout=1)

    assert scheduler.completed_ticks == 1
    assert not scheduler.running


@pytest.mark.asyncio
async def test_start_is_idempotent_and_stop_without_start_is_safe(clock, dispatcher):
    scheduler = GatedScheduler(dispatcher, clock, tick_seconds=3600, refresh_hours=0)
    await scheduler.stop()

    scheduler.start()
    task = scheduler._worker_task
    scheduler.start()
    assert scheduler._worker_task is task

    scheduler.release.set()
    await scheduler.stop()
    assert not scheduler.running
