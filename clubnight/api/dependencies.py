"""
Dependencies for process-wide collaborators held on app.state.
"""

from fastapi import Request

from clubnight.services.notification_service import NotificationDispatcher
from clubnight.services.reminder_scheduler import ReminderScheduler
from clubnight.utils.datetime_utils import ClubClock


def get_clock(request: Request) -> ClubClock:
    """The club clock resolved at startup."""
    return request.app.state.clock


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_scheduler(request: Request) -> ReminderScheduler:
    """Used for synchronous waitlist notifications, also when the timer is disabled."""
    return request.app.state.scheduler
