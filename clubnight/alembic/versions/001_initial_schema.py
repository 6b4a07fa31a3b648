"""001_initial_schema

Revision ID: 001
Revises:
Create Date: 2025-06-01 09:00:00.000000

Initial schema for fresh deployments. Creates:
- users (members with role and membership status)
- sessions (civil date, HH:MM window, courts, derived capacity and RSVP deadline,
  weak back-reference to a recurring parent)
- rsvps (one per session and member)
- notification_preferences, push_tokens, notifications
- reminder_dispatches (persisted reminder claims)
- announcements
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from the current models."""
    from clubnight.database.db import Base
    from clubnight.database import models  # noqa: F401

    bind = op.get_bind()
    Base.metadata.create_all(bind=bind, checkfirst=True)


def downgrade() -> None:
    """Drop all tables."""
    from clubnight.database.db import Base
    from clubnight.database import models  # noqa: F401

    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind, checkfirst=True)
