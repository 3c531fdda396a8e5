"""Task audit log model for taskrelay.

Every transition, extension decision and reconciler flag writes one row in
the same transaction as the change it records.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from taskrelay.database.models.base import Base, JSONType, TimestampMixin


class TaskLog(TimestampMixin, Base):
    """An audit entry for a task.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        task_id: Task the entry belongs to.
        user_id: Acting user, null for system actions.
        action: Short action name (e.g. 'accept', 'extend_duration').
        details: Action-specific payload.
    """

    __tablename__ = "task_logs"

    task_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tasks.id"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id"),
        nullable=True,
    )
    action: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
