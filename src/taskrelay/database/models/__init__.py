"""SQLAlchemy ORM models for taskrelay.

This module defines the database schema: users, tasks, extension requests,
user sessions and the task audit log.

All models use SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
"""

from taskrelay.database.models.base import Base, TimestampMixin
from taskrelay.database.models.extension import ExtensionRequest, ExtensionStatus
from taskrelay.database.models.session import UserSession
from taskrelay.database.models.task import (
    HOLDING_STATUSES,
    TERMINAL_STATUSES,
    TIMED_STATUSES,
    Task,
    TaskStatus,
)
from taskrelay.database.models.task_log import TaskLog
from taskrelay.database.models.user import Role, User, WorkerAvailability

__all__ = [
    "Base",
    "TimestampMixin",
    "Task",
    "TaskStatus",
    "HOLDING_STATUSES",
    "TERMINAL_STATUSES",
    "TIMED_STATUSES",
    "User",
    "Role",
    "WorkerAvailability",
    "UserSession",
    "ExtensionRequest",
    "ExtensionStatus",
    "TaskLog",
]
