"""
Constants used across the session / RSVP system.
"""

# Capacity per number of booked courts
MAX_PLAYERS_BY_COURTS = {
    1: 6,
    2: 10,
    3: 16,
}
MIN_COURTS = 1
MAX_COURTS = 3

# RSVP deadline: N days before the session date, at 23:59:59 club time
RSVP_DEADLINE_DAYS_BEFORE = 3

# Recurring sessions
DEFAULT_RECURRING_OCCURRENCES = 4  # parent counts as the first occurrence
RECURRENCE_REFRESH_WEEKS_AHEAD = 4
RECURRING_TITLE_FORMAT = "%A - %d %b %Y"  # e.g. "Sunday - 22 Jun 2025"

# Reminder scheduler defaults (hours)
DEFAULT_SESSION_REMINDER_HOURS_24 = 24
DEFAULT_SESSION_REMINDER_HOURS_12 = 12
DEFAULT_DEADLINE_REMINDER_HOURS = 6
REMINDER_WINDOW_HOURS = 1

DEFAULT_CLUB_TIMEZONE = "Australia/Sydney"
