"""Task model for taskrelay.

Defines the Task table and TaskStatus enum. A task is a short-lived service
job created by a dispatcher and carried out by a single worker. Tasks are
never deleted; terminal tasks are retained as history.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from taskrelay.database.models.base import Base, TimestampMixin


class TaskStatus(enum.Enum):
    """State machine for task lifecycle.

    States:
        pending: Created by a dispatcher, waiting for a worker to accept.
        accepted: Held by a worker, not yet started.
        in_progress: Worker is actively serving the task.
        paused: Work temporarily suspended.
        queued: Assigned to a busy worker, waiting behind its current task.
        overtime: Elapsed time exceeded the allotted duration, work still open.
        completed: Work finished (terminal).
        cancelled: Abandoned before completion (terminal).
    """

    pending = "pending"
    accepted = "accepted"
    in_progress = "in_progress"
    paused = "paused"
    queued = "queued"
    overtime = "overtime"
    completed = "completed"
    cancelled = "cancelled"


# Statuses in which a task is held by (and keeps busy) its assigned worker
HOLDING_STATUSES: frozenset[TaskStatus] = frozenset(
    {
        TaskStatus.accepted,
        TaskStatus.in_progress,
        TaskStatus.paused,
        TaskStatus.queued,
        TaskStatus.overtime,
    }
)

TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.completed, TaskStatus.cancelled}
)

# Statuses whose elapsed time is watched by the overtime detector
TIMED_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.in_progress, TaskStatus.paused}
)


class Task(TimestampMixin, Base):
    """A dispatched unit of work.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        dispatcher_id: Owning dispatcher.
        worker_id: Assigned worker, null until accepted or assigned.
        status: Current state in the task lifecycle.
        customer_name: Customer the job is served for.
        customer_contact: Optional customer contact detail.
        game_name: Service the job is about.
        game_mode: Optional service variant.
        requirements: Free-form notes from the dispatcher.
        duration_minutes: Allotted duration; only ever increases.
        original_duration_minutes: Allotted duration at creation, never mutated.
        accepted_at: When a worker took the task.
        started_at: When work began; the base for elapsed time.
        paused_at: Start of the current pause, null when not paused.
        paused_seconds: Accumulated time spent paused.
        overtime_at: When the task entered overtime.
        pre_overtime_status: Status to return to if an extension clears overtime.
        completed_at: When the task completed.
        cancelled_at: When the task was cancelled.
        queue_order: Position in the assigned worker's queue.
        queued_at: When the task was queued.
        needs_attention: Flagged for a dispatcher decision.
        attention_reason: Why the task was flagged.
    """

    __tablename__ = "tasks"

    dispatcher_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    worker_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id"),
        nullable=True,
        index=True,
    )
    status: Mapped[TaskStatus] = mapped_column(
        default=TaskStatus.pending,
        nullable=False,
        index=True,
    )
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    customer_contact: Mapped[str | None] = mapped_column(Text, nullable=True)
    game_name: Mapped[str] = mapped_column(Text, nullable=False)
    game_mode: Mapped[str | None] = mapped_column(Text, nullable=True)
    requirements: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    original_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    paused_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    paused_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    overtime_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    pre_overtime_status: Mapped[TaskStatus | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    queue_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    queued_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    needs_attention: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    attention_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
