"""Database layer for taskrelay.

This module handles database connections, transactions, and the SQLAlchemy
models backing the persistent store.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    transaction: Run a unit of work inside one committed transaction.
    Base: SQLAlchemy declarative base for all models.
"""

from taskrelay.database.connection import (
    create_schema,
    get_engine,
    get_session_factory,
    transaction,
)
from taskrelay.database.models import (
    Base,
    ExtensionRequest,
    ExtensionStatus,
    Role,
    Task,
    TaskLog,
    TaskStatus,
    TimestampMixin,
    User,
    UserSession,
    WorkerAvailability,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "create_schema",
    "transaction",
    "Base",
    "TimestampMixin",
    "Task",
    "TaskStatus",
    "TaskLog",
    "User",
    "Role",
    "WorkerAvailability",
    "UserSession",
    "ExtensionRequest",
    "ExtensionStatus",
]
