"""User session model for taskrelay.

A session is the durable proof that a user holds a live connection. Sessions
are opened on authentication, refreshed on inbound activity, deactivated on
logout or expiry and purged after a retention window.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from taskrelay.database.models.base import Base, TimestampMixin


class UserSession(TimestampMixin, Base):
    """An authenticated session for a user.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        user_id: Owning user.
        token_fingerprint: SHA-256 hex digest of the bearer token.
        expires_at: Hard expiry of the session.
        last_activity_at: Most recent inbound activity.
        is_active: False once logged out, superseded or expired.
        ended_at: When the session was deactivated.
    """

    __tablename__ = "user_sessions"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    token_fingerprint: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
