"""
Tests for session service: capacity, creation, recurring parents, detail view, updates and deletion.
"""

from datetime import date, datetime

import pytest
import pytz
from sqlalchemy import select

from clubnight.database.models import RSVPStatus, Session, SessionStatus
from clubnight.services import recurrence_service, session_service
from clubnight.services.errors import NotFoundError, ValidationError


def test_max_players_for_courts():
    assert session_service.max_players_for_courts(1) == 6
    assert session_service.max_players_for_courts(2) == 10
    assert session_service.max_players_for_courts(3) == 16
    for bad in (0, 4, -1, True, "2", 2.0):
        with pytest.raises(ValidationError):
            session_service.max_players_for_courts(bad)


def test_weekday_index_starts_on_sunday():
    assert session_service.weekday_index(date(2025, 6, 15)) == 0  # Sunday
    assert session_service.weekday_index(date(2025, 6, 16)) == 1  # Monday
    assert session_service.weekday_index(date(2025, 6, 21)) == 6  # Saturday


@pytest.mark.asyncio
async def test_create_one_off_session(db_session, clock, make_user):
    admin = await make_user()
    result = await session_service.create_session(
        db_session,
        clock,
        title="  Sunday Social  ",
        session_date=date(2025, 6, 15),
        start_time="18:00",
        end_time="20:00",
        courts=3,
        created_by=admin.id,
    )

    created = result["session"]
    assert result["generated_occurrences"] == 0
    assert created["title"] == "Sunday Social"
    assert created["max_players"] == 16
    assert created["status"] == "open"
    assert created["is_recurring"] is False
    assert created["recurring_day_of_week"] is None
    assert created["rsvp_deadline"] == "2025-06-12T13:59:59+00:00"


@pytest.mark.asyncio
async def test_create_rejects_invalid_input(db_session, clock):
    base = dict(title="Club Night", session_date=date(2025, 6, 15), start_time="18:00", end_time="20:00", courts=2)

    with pytest.raises(ValidationError):
        await session_service.create_session(db_session, clock, **{**base, "courts": 4})
    with pytest.raises(ValidationError, match="end_time must be after start_time"):
        await session_service.create_session(db_session, clock, **{**base, "end_time": "17:00"})
    with pytest.raises(ValidationError):
        await session_service.create_session(db_session, clock, **{**base, "start_time": "6pm"})
    with pytest.raises(ValidationError, match="title is required"):
        await session_service.create_session(db_session, clock, **{**base, "title": "   "})

    result = await db_session.execute(select(Session))
    assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_create_recurring_session_materializes_weekly_children(db_session, clock):
    result = await session_service.create_session(
        db_session,
        clock,
        title="Sunday Club Night",
        description="Bring water",
        session_date=date(2025, 6, 15),
        start_time="18:00",
        end_time="20:00",
        courts=2,
        is_recurring=True,
    )

    parent = result["session"]
    assert result["generated_occurrences"] == 3
    assert parent["is_recurring"] is True
    assert parent["recurring_day_of_week"] == 0

    children = await session_service.find_sessions(db_session, recurring_parent_id=parent["id"])
    assert [c.session_date for c in children] == [date(2025, 6, 22), date(2025, 6, 29), date(2025, 7, 6)]
    first = children[0]
    assert first.title == "Sunday - 22 Jun 2025"
    assert first.description == "Bring water"
    assert (first.start_time, first.end_time, first.courts, first.max_players) == ("18:00", "20:00", 2, 10)
    assert first.is_recurring is False
    assert first.status == SessionStatus.OPEN
    assert first.rsvp_deadline.replace(tzinfo=None) == datetime(2025, 6, 19, 13, 59, 59)


@pytest.mark.asyncio
async def test_create_recurring_with_explicit_occurrences(db_session, clock):
    result = await session_service.create_session(
        db_session, clock, title="Short series", session_date=date(2025, 6, 15),
        start_time="18:00", end_time="20:00", courts=1, is_recurring=True, occurrences=2,
    )
    assert result["generated_occurrences"] == 1

    none = await session_service.create_session(
        db_session, clock, title="Parent only", session_date=date(2025, 6, 16),
        start_time="18:00", end_time="20:00", courts=1, is_recurring=True, occurrences=0,
    )
    assert none["generated_occurrences"] == 0


@pytest.mark.asyncio
async def test_create_recurring_rejects_mismatched_day_of_week(db_session, clock):
    with pytest.raises(ValidationError, match="does not match"):
        await session_service.create_session(
            db_session, clock, title="Mismatch", session_date=date(2025, 6, 15),
            start_time="18:00", end_time="20:00", courts=2, is_recurring=True,
            recurring_day_of_week=3,
        )
    with pytest.raises(ValidationError):
        await session_service.create_session(
            db_session, clock, title="Out of range", session_date=date(2025, 6, 15),
            start_time="18:00", end_time="20:00", courts=2, is_recurring=True,
            recurring_day_of_week=7,
        )


@pytest.mark.asyncio
async def test_get_session_not_found(db_session):
    with pytest.raises(NotFoundError):
        await session_service.get_session(db_session, 999)


@pytest.mark.asyncio
async def test_session_detail_flags_overflow_without_trimming(db_session, make_user, make_session, add_rsvp):
    club_session = await make_session(date(2025, 6, 15), courts=1)  # 6 players
    users = [await make_user() for _ in range(8)]
    for user in users[:7]:
        await add_rsvp(club_session.id, user.id, RSVPStatus.IN)
    await add_rsvp(club_session.id, users[7].id, RSVPStatus.MAYBE)

    detail = await session_service.get_session_detail(db_session, club_session.id)

    assert [r["user_id"] for r in detail["rsvps"]] == [u.id for u in users]
    assert [r["over_capacity"] for r in detail["rsvps"]] == [False] * 6 + [True, False]
    assert detail["rsvps"][0]["user"]["name"] == users[0].name
    assert detail["rsvp_summary"] == {
        "total_in": 7,
        "total_out": 0,
        "total_maybe": 1,
        "max_players": 6,
        "spots_left": 0,
        "is_over_capacity": True,
    }


@pytest.mark.asyncio
async def test_list_upcoming_sessions(db_session, clock, make_session, make_user, add_rsvp):
    past = await make_session(date(2025, 5, 25), title="Past")
    today = await make_session(date(2025, 6, 1), title="Today")
    later = await make_session(date(2025, 6, 8), title="Later", courts=1)
    cancelled = await make_session(date(2025, 6, 15), title="Cancelled", status=SessionStatus.CANCELLED)
    user = await make_user()
    await add_rsvp(later.id, user.id, RSVPStatus.IN)

    upcoming = await session_service.list_upcoming_sessions(db_session, clock)
    assert [s["id"] for s in upcoming] == [today.id, later.id]
    assert upcoming[0]["rsvp_summary"]["spots_left"] == 10
    assert upcoming[1]["rsvp_summary"]["total_in"] == 1
    assert upcoming[1]["rsvp_summary"]["spots_left"] == 5

    cancelled_list = await session_service.list_cancelled_upcoming_sessions(db_session, clock)
    assert [s["id"] for s in cancelled_list] == [cancelled.id]
    assert past.id not in [s["id"] for s in upcoming + cancelled_list]


@pytest.mark.asyncio
async def test_update_session_recomputes_derived_fields(db_session, clock, make_session):
    club_session = await make_session(date(2025, 6, 15), courts=1)

    updated = await session_service.update_session(
        db_session, clock, club_session.id, {"session_date": date(2025, 4, 8), "courts": 3}
    )
    assert updated["session_date"] == "2025-04-08"
    assert updated["rsvp_deadline"] == "2025-04-05T12:59:59+00:00"
    assert updated["max_players"] == 16
    assert updated["title"] == "Club Night"

    with pytest.raises(ValidationError):
        await session_service.update_session(db_session, clock, club_session.id, {"courts": 0})
    with pytest.raises(ValidationError):
        await session_service.update_session(db_session, clock, club_session.id, {"end_time": "10:00"})
    with pytest.raises(ValidationError):
        await session_service.update_session(db_session, clock, club_session.id, {"status": "postponed"})
    with pytest.raises(NotFoundError):
        await session_service.update_session(db_session, clock, 999, {"title": "x"})


@pytest.mark.asyncio
async def test_reopening_clears_cancellation_reason(db_session, clock, make_session):
    club_session = await make_session(date(2025, 6, 15))
    cancelled = await session_service.cancel_session(db_session, club_session.id, "Rain")
    assert cancelled["status"] == "cancelled"
    assert cancelled["cancellation_reason"] == "Rain"

    reopened = await session_service.update_session(db_session, clock, club_session.id, {"status": "open"})
    assert reopened["status"] == "open"
    assert reopened["cancellation_reason"] is None


@pytest.mark.asyncio
async def test_rejected_update_changes_nothing(db_session, clock, make_session):
    session_id = (await make_session(date(2025, 6, 15), courts=2)).id

    with pytest.raises(ValidationError):
        await session_service.update_session(
            db_session,
            clock,
            session_id,
            {"title": "Renamed", "session_date": date(2025, 6, 22), "start_time": "17:00", "courts": 7},
        )

    unchanged = await session_service.get_session(db_session, session_id)
    assert unchanged.title == "Club Night"
    assert unchanged.session_date == date(2025, 6, 15)
    assert unchanged.start_time == "18:00"
    assert unchanged.courts == 2


@pytest.mark.asyncio
async def test_moving_recurring_parent_moves_its_weekday(db_session, clock):
    created = await session_service.create_session(
        db_session,
        clock,
        title="Sunday Club Night",
        session_date=date(2025, 6, 15),
        start_time="18:00",
        end_time="20:00",
        courts=2,
        is_recurring=True,
        occurrences=1,
    )
    parent_id = created["session"]["id"]
    assert created["session"]["recurring_day_of_week"] == 0

    updated = await session_service.update_session(
        db_session, clock, parent_id, {"session_date": date(2025, 6, 16)}
    )
    assert updated["recurring_day_of_week"] == 1

    await recurrence_service.refresh_all(db_session, clock, weeks_ahead=4)
    children = await session_service.find_sessions(db_session, recurring_parent_id=parent_id)
    assert [c.session_date for c in children] == [date(2025, 6, 23)]
    assert all(session_service.weekday_index(c.session_date) == 1 for c in children)


@pytest.mark.asyncio
async def test_moving_one_off_session_keeps_no_weekday(db_session, clock, make_session):
    session_id = (await make_session(date(2025, 6, 15))).id
    updated = await session_service.update_session(
        db_session, clock, session_id, {"session_date": date(2025, 6, 16)}
    )
    assert updated["recurring_day_of_week"] is None


@pytest.mark.asyncio
async def test_delete_session_with_rsvps_is_soft(db_session, make_session, make_user, add_rsvp):
    club_session = await make_session(date(2025, 6, 15))
    user = await make_user()
    await add_rsvp(club_session.id, user.id, RSVPStatus.OUT)

    result = await session_service.delete_session(db_session, club_session.id)
    assert result == {"session_id": club_session.id, "action": "cancelled"}

    kept = await session_service.get_session(db_session, club_session.id)
    assert kept.status == SessionStatus.CANCELLED
    assert kept.cancellation_reason == "Session deleted by admin"
    assert await session_service.has_rsvps(db_session, club_session.id)


@pytest.mark.asyncio
async def test_delete_session_without_rsvps_is_hard(db_session, make_session):
    club_session = await make_session(date(2025, 6, 15))

    result = await session_service.delete_session(db_session, club_session.id)
    assert result["action"] == "deleted"
    with pytest.raises(NotFoundError):
        await session_service.get_session(db_session, club_session.id)


@pytest.mark.asyncio
async def test_deleting_recurring_parent_keeps_children(db_session, clock):
    result = await session_service.create_session(
        db_session, clock, title="Series", session_date=date(2025, 6, 15),
        start_time="18:00", end_time="20:00", courts=2, is_recurring=True,
    )
    parent_id = result["session"]["id"]

    await session_service.delete_session(db_session, parent_id)
    db_session.expire_all()

    remaining = await session_service.find_sessions(db_session)
    assert len(remaining) == 3
    assert all(s.recurring_parent_id is None for s in remaining)
