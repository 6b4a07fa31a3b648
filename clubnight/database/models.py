"""
SQLAlchemy ORM models for club sessions, RSVPs and notifications.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from clubnight.database.db import Base
from clubnight.utils.datetime_utils import utcnow


def _enum_values(enum_cls):
    """Persist enum values ("open") rather than member names ("OPEN")."""
    return [e.value for e in enum_cls]


class UserRole(str, enum.Enum):
    """User role enum."""

    PENDING = "pending"
    PLAYER = "player"
    ADMIN = "admin"


class MembershipStatus(str, enum.Enum):
    """Club membership status enum."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SessionStatus(str, enum.Enum):
    """Session status enum."""

    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class RSVPStatus(str, enum.Enum):
    """RSVP status enum."""

    IN = "in"
    OUT = "out"
    MAYBE = "maybe"


class NotificationType(str, enum.Enum):
    """Notification kind enum."""

    SESSION_REMINDER = "session_reminder"
    RSVP_DEADLINE = "rsvp_deadline"
    WAITLIST_UPDATE = "waitlist_update"
    ADMIN_ANNOUNCEMENT = "admin_announcement"


class User(Base):
    """Club members, keyed by the subject id of the external identity provider."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject = Column(String(255), nullable=False, unique=True)  # Verified token subject
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    avatar_url = Column(Text, nullable=True)
    phone_number = Column(String(50), nullable=True)
    role = Column(
        Enum(UserRole, values_callable=_enum_values),
        default=UserRole.PENDING,
        nullable=False,
    )
    is_player = Column(Boolean, default=True, nullable=False)
    membership_status = Column(
        Enum(MembershipStatus, values_callable=_enum_values),
        default=MembershipStatus.PENDING,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    # Relationships
    rsvps = relationship("RSVP", back_populates="user")
    push_tokens = relationship("PushToken", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_users_membership_status", "membership_status"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_approved(self) -> bool:
        return self.membership_status == MembershipStatus.APPROVED


class Session(Base):
    """A scheduled play session with a civil date, time window and court-derived capacity."""

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    session_date = Column(Date, nullable=False)  # Civil date, no timezone
    start_time = Column(String(5), nullable=False)  # HH:MM club time
    end_time = Column(String(5), nullable=False)  # HH:MM club time
    courts = Column(Integer, nullable=False)
    max_players = Column(Integer, nullable=False)  # Derived from courts
    rsvp_deadline = Column(DateTime(timezone=True), nullable=False)  # UTC, derived from session_date
    is_recurring = Column(Boolean, default=False, nullable=False)
    recurring_day_of_week = Column(Integer, nullable=True)  # 0=Sunday .. 6=Saturday
    recurring_parent_id = Column(
        Integer, ForeignKey("sessions.id", ondelete="SET NULL"), nullable=True
    )  # Weak back-reference, deleting the parent keeps the children
    status = Column(
        Enum(SessionStatus, values_callable=_enum_values),
        default=SessionStatus.OPEN,
        nullable=False,
    )
    cancellation_reason = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    # Relationships
    rsvps = relationship(
        "RSVP",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RSVP.rsvp_timestamp",
    )
    creator = relationship("User", foreign_keys=[created_by])

    __table_args__ = (
        CheckConstraint("courts >= 1 AND courts <= 3", name="ck_sessions_courts_range"),
        CheckConstraint(
            "recurring_day_of_week IS NULL OR (recurring_day_of_week >= 0 AND recurring_day_of_week <= 6)",
            name="ck_sessions_recurring_day_of_week",
        ),
        # One materialized child per parent per date
        UniqueConstraint("recurring_parent_id", "session_date", name="uq_sessions_parent_date"),
        Index("idx_sessions_date", "session_date"),
        Index("idx_sessions_status_date", "status", "session_date"),
        Index("idx_sessions_rsvp_deadline", "rsvp_deadline"),
        Index("idx_sessions_recurring_parent", "recurring_parent_id"),
    )


class RSVP(Base):
    """A member's attendance response to a session. At most one per (session, user)."""

    __tablename__ = "rsvps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status = Column(Enum(RSVPStatus, values_callable=_enum_values), nullable=False)
    rsvp_timestamp = Column(DateTime(timezone=True), nullable=False)  # UTC, first write, FCFS order
    is_late_rsvp = Column(Boolean, default=False, nullable=False)  # Fixed at creation
    added_by_admin = Column(Boolean, default=False, nullable=False)  # Sticky once set
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    # Relationships
    session = relationship("Session", back_populates="rsvps")
    user = relationship("User", back_populates="rsvps")

    __table_args__ = (
        UniqueConstraint("session_id", "user_id", name="uq_rsvps_session_user"),
        Index("idx_rsvps_session_status_timestamp", "session_id", "status", "rsvp_timestamp"),
        Index("idx_rsvps_user", "user_id"),
    )


class NotificationPreferences(Base):
    """Per-user channel x kind notification switches. Created lazily, all enabled."""

    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

    # Push notification preferences
    push_enabled = Column(Boolean, default=True, nullable=False)  # Master switch
    push_session_reminders = Column(Boolean, default=True, nullable=False)
    push_rsvp_deadlines = Column(Boolean, default=True, nullable=False)
    push_waitlist_updates = Column(Boolean, default=True, nullable=False)
    push_admin_announcements = Column(Boolean, default=True, nullable=False)

    # Email notification preferences
    email_enabled = Column(Boolean, default=True, nullable=False)  # Master switch
    email_session_reminders = Column(Boolean, default=True, nullable=False)
    email_rsvp_deadlines = Column(Boolean, default=True, nullable=False)
    email_waitlist_updates = Column(Boolean, default=True, nullable=False)
    email_admin_announcements = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    _KIND_SUFFIX = {
        NotificationType.SESSION_REMINDER: "session_reminders",
        NotificationType.RSVP_DEADLINE: "rsvp_deadlines",
        NotificationType.WAITLIST_UPDATE: "waitlist_updates",
        NotificationType.ADMIN_ANNOUNCEMENT: "admin_announcements",
    }

    def _is_enabled(self, channel: str, kind) -> bool:
        if not getattr(self, f"{channel}_enabled"):
            return False
        try:
            suffix = self._KIND_SUFFIX[NotificationType(kind)]
        except (KeyError, ValueError):
            return False
        return bool(getattr(self, f"{channel}_{suffix}"))

    def is_push_enabled_for(self, kind) -> bool:
        """Push master switch AND the kind-specific push switch."""
        return self._is_enabled("push", kind)

    def is_email_enabled_for(self, kind) -> bool:
        """Email master switch AND the kind-specific email switch."""
        return self._is_enabled("email", kind)


class PushToken(Base):
    """Device push tokens. One user can have several devices."""

    __tablename__ = "push_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token = Column(Text, nullable=False, unique=True)
    device_name = Column(String(255), nullable=True)
    last_used_at = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    # Relationships
    user = relationship("User", back_populates="push_tokens")

    __table_args__ = (Index("idx_push_tokens_user", "user_id"),)


class Notification(Base):
    """Audit record of a notification. Append-only except for the sent/read fields."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(50), nullable=False)  # NotificationType enum value
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    data = Column(Text, nullable=True)  # JSON string for opaque metadata (session_id, etc.)
    push_sent = Column(Boolean, default=False, nullable=False)
    push_sent_at = Column(DateTime(timezone=True), nullable=True)
    email_sent = Column(Boolean, default=False, nullable=False)
    email_sent_at = Column(DateTime(timezone=True), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("idx_notifications_user_created", "user_id", "created_at"),
        Index("idx_notifications_user_read", "user_id", "read_at"),
    )


class ReminderDispatch(Base):
    """
    Claim marker for a reminder fan-out, so overlapping or repeated scheduler
    ticks never send the same reminder twice. scheduled_for is the instant the
    reminder refers to (session start or RSVP deadline), so moving a session
    re-arms its reminders.
    """

    __tablename__ = "reminder_dispatches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    reminder_kind = Column(String(50), nullable=False)  # e.g. "session_reminder_24h", "rsvp_deadline"
    scheduled_for = Column(DateTime(timezone=True), nullable=False)  # UTC
    recipient_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "session_id", "reminder_kind", "scheduled_for", name="uq_reminder_dispatches_key"
        ),
    )


class Announcement(Base):
    """Admin announcement sent to all approved members."""

    __tablename__ = "announcements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    sent_at = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    # Relationships
    creator = relationship("User")
