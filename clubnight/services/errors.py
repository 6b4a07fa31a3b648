"""
Domain errors raised by the service layer.

All of them subclass ValueError so callers that only know about ValueError
still treat them as expected, non-fatal rejections. Routes translate each
family to its own HTTP status.
"""


class ValidationError(ValueError):
    """Malformed input, rejected before any state change."""


class NotFoundError(ValueError):
    """A session, RSVP, user or notification does not exist."""


class PolicyError(ValueError):
    """Expected business-rule rejection. Surfaced verbatim, never retried."""


class SessionNotOpenError(PolicyError):
    """The session is closed or cancelled."""

    def __init__(self, message: str = "Session is not open for RSVPs"):
        super().__init__(message)


class DeadlinePassedError(PolicyError):
    """A member tried to create an RSVP after the deadline."""

    def __init__(self, message: str = "RSVP deadline has passed"):
        super().__init__(message)


class LockedInError(PolicyError):
    """A member tried to downgrade or remove an IN RSVP after the deadline."""

    def __init__(self, message: str = "Cannot change RSVP from IN after deadline"):
        super().__init__(message)


class DependencyError(RuntimeError):
    """Storage or channel provider failure. Transient, the caller may retry."""
