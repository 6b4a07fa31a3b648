"""
Shared pytest configuration for clubnight tests.

Service tests run against a throwaway SQLite database (aiosqlite) in the
test's tmp_path. Set TEST_DATABASE_URL to run them against PostgreSQL instead.

SAFETY: a TEST_DATABASE_URL whose database name does not contain "test" is
refused, so a misconfigured environment can never drop a real database.
"""

import os

# Disable the rate limiter before the routes are imported
os.environ.setdefault("ENV", "test")

import itertools
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
import pytz
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from clubnight.database import db
from clubnight.database.db import Base
from clubnight.database.models import (
    MembershipStatus,
    RSVP,
    RSVPStatus,
    Session,
    SessionStatus,
    User,
    UserRole,
)
from clubnight.services.session_service import max_players_for_courts
from clubnight.tests.fakes import FakeEmailChannel, FakeNow, FakePushChannel
from clubnight.utils.datetime_utils import ClubClock

CLUB_TIMEZONE = "Australia/Sydney"

# Sunday 1 June 2025, 10:00 club time
DEFAULT_NOW = pytz.UTC.localize(datetime(2025, 6, 1, 0, 0, 0))


def _resolve_test_database_url(tmp_path) -> str:
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        return f"sqlite+aiosqlite:///{tmp_path / 'clubnight_test.db'}"

    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"Refusing to run tests against database '{db_name}'. "
            f"TEST_DATABASE_URL must point to a database whose name contains 'test'."
        )
    return url


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Fresh database per test, with db.AsyncSessionLocal pointed at it."""
    url = _resolve_test_database_url(tmp_path)
    # NullPool: no connection reuse across event loops
    engine = create_async_engine(url, echo=False, poolclass=NullPool)
    if url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own sessions (dispatcher, scheduler) goes through
    # db.get_session_factory(), which reads AsyncSessionLocal at call time
    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    yield engine

    db.AsyncSessionLocal = original_async_session_local
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine):
    """A session bound to the per-test database."""
    async with db.AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.rollback()


@pytest.fixture
def now():
    return FakeNow(DEFAULT_NOW)


@pytest.fixture
def clock(now):
    return ClubClock(CLUB_TIMEZONE, now_func=now)


@pytest.fixture
def push_channel():
    return FakePushChannel()


@pytest.fixture
def email_channel():
    return FakeEmailChannel()


@pytest_asyncio.fixture
async def make_user(db_session):
    """Factory for users. Approved players unless told otherwise."""
    counter = itertools.count(1)

    async def _make(
        name=None,
        role=UserRole.PLAYER,
        membership_status=MembershipStatus.APPROVED,
        email=None,
    ) -> User:
        n = next(counter)
        user = User(
            subject=f"subject-{n}",
            email=email or f"member{n}@example.com",
            name=name or f"Member {n}",
            role=role,
            membership_status=membership_status,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def make_session(db_session, clock):
    """Factory for sessions, inserted directly with derived capacity and deadline."""

    async def _make(
        session_date,
        start_time="18:00",
        end_time="20:00",
        courts=2,
        title="Club Night",
        status=SessionStatus.OPEN,
        **extra,
    ) -> Session:
        club_session = Session(
            title=title,
            session_date=session_date,
            start_time=start_time,
            end_time=end_time,
            courts=courts,
            max_players=max_players_for_courts(courts),
            rsvp_deadline=clock.rsvp_deadline(session_date),
            status=status,
            **extra,
        )
        db_session.add(club_session)
        await db_session.commit()
        return club_session

    return _make


@pytest_asyncio.fixture
async def add_rsvp(db_session, now):
    """Insert an RSVP row directly. Each call is one minute after the previous one."""
    offsets = itertools.count(0)

    async def _add(session_id, user_id, status=RSVPStatus.IN, timestamp=None) -> RSVP:
        ts = timestamp or (now() - timedelta(days=7) + timedelta(minutes=next(offsets)))
        rsvp = RSVP(
            session_id=session_id,
            user_id=user_id,
            status=status,
            rsvp_timestamp=ts,
            is_late_rsvp=False,
            added_by_admin=False,
        )
        db_session.add(rsvp)
        await db_session.commit()
        return rsvp

    return _add
