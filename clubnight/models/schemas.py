"""
Pydantic models for API request/response validation.
"""

from datetime import date
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict


# ============================================================================
# Users
# ============================================================================


class UserResponse(BaseModel):
    """Club member."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    email: str
    name: str
    avatar_url: Optional[str] = None
    phone_number: Optional[str] = None
    role: str
    is_player: bool = True
    membership_status: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AuthCallbackResponse(BaseModel):
    """Result of syncing the verified identity into the member table."""

    user: UserResponse
    is_new: bool


class ProfileUpdate(BaseModel):
    """Editable profile fields."""

    phone_number: Optional[str] = Field(None, max_length=50)
    name: Optional[str] = Field(None, max_length=255)


class RoleUpdate(BaseModel):
    role: str


# ============================================================================
# Sessions
# ============================================================================


class SessionCreate(BaseModel):
    """
    Create a session. When is_recurring is set the session becomes the parent
    of weekly occurrences (occurrences defaults to 4, the parent included).
    """

    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    session_date: date
    start_time: str = Field(..., description="HH:MM club time")
    end_time: str = Field(..., description="HH:MM club time")
    courts: int
    is_recurring: bool = False
    recurring_day_of_week: Optional[int] = Field(None, description="0=Sunday .. 6=Saturday")
    occurrences: Optional[int] = None


class SessionUpdate(BaseModel):
    """Partial session update. Only fields that are sent are applied."""

    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    session_date: Optional[date] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    courts: Optional[int] = None
    status: Optional[str] = None


class CancelSessionRequest(BaseModel):
    reason: Optional[str] = None


class RSVPSummaryResponse(BaseModel):
    total_in: int
    total_out: int
    total_maybe: int
    max_players: int
    spots_left: int
    is_over_capacity: bool


class SessionResponse(BaseModel):
    """Session with optional RSVP summary."""

    id: int
    title: str
    description: Optional[str] = None
    session_date: str
    start_time: str
    end_time: str
    courts: int
    max_players: int
    rsvp_deadline: str
    is_recurring: bool
    recurring_day_of_week: Optional[int] = None
    recurring_parent_id: Optional[int] = None
    status: str
    cancellation_reason: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    rsvp_summary: Optional[RSVPSummaryResponse] = None


class SessionCreateResponse(BaseModel):
    session: SessionResponse
    generated_occurrences: int


class RSVPUserInfo(BaseModel):
    id: int
    name: str
    email: str
    avatar_url: Optional[str] = None


class RSVPResponse(BaseModel):
    """A member's RSVP. is_late_rsvp is fixed when the RSVP is first created."""

    id: int
    session_id: int
    user_id: int
    status: str
    rsvp_timestamp: str
    is_late_rsvp: bool
    added_by_admin: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    created: Optional[bool] = None
    over_capacity: Optional[bool] = None
    user: Optional[RSVPUserInfo] = None


class SessionDetailResponse(SessionResponse):
    """Session with RSVPs in first-come-first-served order."""

    rsvps: List[RSVPResponse] = []


class DeleteSessionResponse(BaseModel):
    session_id: int
    action: str  # "cancelled" or "deleted"


# ============================================================================
# RSVPs
# ============================================================================


class RSVPRequest(BaseModel):
    status: str = Field(..., description="in, out or maybe")


class AdminRSVPRequest(BaseModel):
    user_id: int
    status: str = Field(..., description="in, out or maybe")


class RemoveRSVPResponse(BaseModel):
    session_id: int
    user_id: int
    previous_status: str
    waitlist_notified: List[int] = []


# ============================================================================
# Notifications
# ============================================================================


class NotificationResponse(BaseModel):
    """Notification response."""

    id: int
    user_id: int
    type: str
    title: str
    body: str
    data: Optional[dict] = None
    push_sent: bool
    push_sent_at: Optional[str] = None
    email_sent: bool
    email_sent_at: Optional[str] = None
    is_read: bool
    read_at: Optional[str] = None
    created_at: Optional[str] = None


class NotificationListResponse(BaseModel):
    """Paginated notification list response."""

    notifications: List[NotificationResponse]
    total_count: int
    has_more: bool


class UnreadCountResponse(BaseModel):
    """Unread notification count response."""

    count: int


class NotificationPreferencesResponse(BaseModel):
    user_id: int
    push_enabled: bool
    push_session_reminders: bool
    push_rsvp_deadlines: bool
    push_waitlist_updates: bool
    push_admin_announcements: bool
    email_enabled: bool
    email_session_reminders: bool
    email_rsvp_deadlines: bool
    email_waitlist_updates: bool
    email_admin_announcements: bool


class NotificationPreferencesUpdate(BaseModel):
    """Partial preferences update. Channel master switches gate the per-kind switches."""

    push_enabled: Optional[bool] = None
    push_session_reminders: Optional[bool] = None
    push_rsvp_deadlines: Optional[bool] = None
    push_waitlist_updates: Optional[bool] = None
    push_admin_announcements: Optional[bool] = None
    email_enabled: Optional[bool] = None
    email_session_reminders: Optional[bool] = None
    email_rsvp_deadlines: Optional[bool] = None
    email_waitlist_updates: Optional[bool] = None
    email_admin_announcements: Optional[bool] = None


class PushTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)
    device_name: Optional[str] = Field(None, max_length=255)


class PushTokenDeleteRequest(BaseModel):
    """Omit token to remove every device of the caller."""

    token: Optional[str] = None


# ============================================================================
# Announcements
# ============================================================================


class AnnouncementCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., min_length=1)


class DeliverySummary(BaseModel):
    total: int
    delivered: int
    failed: int


class AnnouncementResponse(BaseModel):
    id: int
    title: str
    body: str
    created_by: int
    sent_at: Optional[str] = None
    delivery: DeliverySummary
