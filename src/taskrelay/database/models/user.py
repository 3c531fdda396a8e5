"""User model for taskrelay.

Defines the User table plus the Role and WorkerAvailability enums. Workers
carry an availability value that only the availability manager writes;
dispatchers and administrators leave it null.
"""

from __future__ import annotations

import enum

from sqlalchemy import Boolean, Text
from sqlalchemy.orm import Mapped, mapped_column

from taskrelay.database.models.base import Base, TimestampMixin


class Role(str, enum.Enum):
    """Closed set of roles a caller can hold."""

    dispatcher = "dispatcher"
    worker = "worker"
    administrator = "administrator"


class WorkerAvailability(str, enum.Enum):
    """Availability of a worker.

    States:
        idle: Live and holding no task.
        busy: Live and holding a task.
        offline: No live session, whatever the task state.
    """

    idle = "idle"
    busy = "busy"
    offline = "offline"


class User(TimestampMixin, Base):
    """A dispatcher, worker or administrator account.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        username: Unique login name.
        display_name: Optional name shown to other users.
        role: Role of the account.
        availability: Worker availability, null for non-workers.
        is_active: Disabled accounts cannot open sessions.
    """

    __tablename__ = "users"

    username: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[Role] = mapped_column(nullable=False)
    availability: Mapped[WorkerAvailability | None] = mapped_column(nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
