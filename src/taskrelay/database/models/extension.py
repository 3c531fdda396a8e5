"""Extension request model for taskrelay.

An extension request is a worker's ask to add minutes to a task's allotted
duration. It is reviewed by the task's dispatcher, or auto-rejected when the
task reaches a terminal state first.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from taskrelay.database.models.base import Base, TimestampMixin


class ExtensionStatus(str, enum.Enum):
    """Review state of an extension request."""

    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class ExtensionRequest(TimestampMixin, Base):
    """A request to extend a task's allotted duration.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        task_id: Task the extension applies to.
        worker_id: Requesting worker.
        dispatcher_id: Dispatcher owning the task when the request was made.
        reviewed_by: Reviewer, null while pending or when auto-rejected.
        requested_minutes: Minutes to add on approval.
        reason: Worker's justification.
        status: Review state.
        review_reason: Reviewer's (or the system's) explanation.
        reviewed_at: When the request left the pending state.
    """

    __tablename__ = "extension_requests"
    __table_args__ = (
        # At most one pending request per task
        Index(
            "uq_extension_requests_pending_task",
            "task_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    task_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tasks.id"),
        nullable=False,
        index=True,
    )
    worker_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    dispatcher_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id"),
        nullable=True,
    )
    requested_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ExtensionStatus] = mapped_column(
        default=ExtensionStatus.pending,
        nullable=False,
    )
    review_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
