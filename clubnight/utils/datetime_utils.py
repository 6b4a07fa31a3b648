"""
Datetime utility functions.

All deadline and reminder-window math happens in the club's civil timezone,
not UTC, so day boundaries match what members see. The timezone is resolved
once at startup into a ClubClock that is passed to every time computation.
Datetimes are stored in UTC.
"""

from datetime import date, datetime, time, timedelta
from typing import Callable, Optional, Union
import pytz

from clubnight.utils.constants import RSVP_DEADLINE_DAYS_BEFORE


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime read back from the database to an aware UTC datetime.

    Some drivers (SQLite) return naive datetimes for timezone-aware columns;
    those values were written as UTC, so they are tagged as UTC here.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def parse_time_of_day(value: str) -> time:
    """
    Parse an "HH:MM" time-of-day string.

    Raises:
        ValueError: If the string is not a valid 24h HH:MM time
    """
    try:
        parsed = datetime.strptime(value.strip(), "%H:%M")
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    return parsed.time()


class ClubClock:
    """Civil-timezone-aware clock for a single club."""

    def __init__(self, timezone_name: str, now_func: Optional[Callable[[], datetime]] = None):
        self.timezone_name = timezone_name
        self.tz = pytz.timezone(timezone_name)
        self._now_func = now_func or utcnow

    def now(self) -> datetime:
        """Current time in the club timezone."""
        return self.to_local(self._now_func())

    def now_utc(self) -> datetime:
        """Current time in UTC."""
        return ensure_utc(self._now_func())

    def today(self) -> date:
        """Current calendar date in the club timezone."""
        return self.now().date()

    def to_local(self, value: datetime) -> datetime:
        """Convert an aware (or naive-UTC) datetime to the club timezone."""
        return ensure_utc(value).astimezone(self.tz)

    def localize(self, naive: datetime) -> datetime:
        """Attach the club timezone to a naive wall-clock datetime."""
        return self.tz.localize(naive)

    def combine(self, day: date, time_of_day: Union[time, str]) -> datetime:
        """Build the club-local instant for a civil date and time of day."""
        if isinstance(time_of_day, str):
            time_of_day = parse_time_of_day(time_of_day)
        return self.localize(datetime.combine(day, time_of_day))

    def rsvp_deadline(self, session_date: date) -> datetime:
        """
        Calculate the RSVP deadline for a session date.

        The deadline is 3 days before the session date at 23:59:59 club time.
        Date arithmetic is done on the civil date before localizing, so a
        daylight-saving transition inside the 3-day window does not shift it.

        Returns:
            Deadline as an aware UTC datetime
        """
        deadline_day = session_date - timedelta(days=RSVP_DEADLINE_DAYS_BEFORE)
        local_deadline = self.combine(deadline_day, time(23, 59, 59))
        return local_deadline.astimezone(pytz.UTC)

    def session_start(self, session_date: date, start_time: str) -> datetime:
        """Exact club-local start instant of a session."""
        return self.combine(session_date, start_time)

    def start_of_day(self, value: datetime) -> datetime:
        """Start of the club-local day containing value."""
        local = self.to_local(value)
        return self.localize(datetime.combine(local.date(), time(0, 0, 0)))

    def end_of_day(self, value: datetime) -> datetime:
        """End of the club-local day containing value."""
        local = self.to_local(value)
        return self.localize(datetime.combine(local.date(), time(23, 59, 59, 999999)))

    def is_past_deadline(self, deadline: datetime) -> bool:
        """True once now is strictly after the given deadline."""
        return self.now_utc() > ensure_utc(deadline)


def load_club_clock(timezone_name: str) -> ClubClock:
    """
    Resolve the club timezone at startup.

    Raises:
        ValueError: If the timezone cannot be loaded. Callers treat this as fatal.
    """
    try:
        return ClubClock(timezone_name)
    except pytz.UnknownTimeZoneError:
        raise ValueError(f"Failed to load club timezone '{timezone_name}'")


def format_date_for_display(value: date) -> str:
    """Format a session date like "Sunday, 15 June 2025" (no leading zero)."""
    return f"{value.strftime('%A')}, {value.day} {value.strftime('%B %Y')}"


def format_time_for_display(value: datetime) -> str:
    """Format a time like "6:30 PM" (no leading zero)."""
    hour = value.hour % 12 or 12
    return f"{hour}:{value.strftime('%M %p')}"


def format_deadline_for_display(clock: ClubClock, deadline: datetime) -> str:
    """Format a deadline in club time like "Thursday 11:59 PM"."""
    local = clock.to_local(deadline)
    return f"{local.strftime('%A')} {format_time_for_display(local)}"
