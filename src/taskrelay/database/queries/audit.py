"""Task audit log query functions for taskrelay."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.database.models.task_log import TaskLog


async def log_task_action(
    session: AsyncSession,
    task_id: UUID,
    action: str,
    user_id: UUID | None = None,
    details: dict[str, Any] | None = None,
) -> TaskLog:
    """Append an audit entry for a task.

    Args:
        session: Active async database session.
        task_id: Task the entry belongs to.
        action: Short action name.
        user_id: Acting user, None for system actions.
        details: JSON-serializable payload.

    Returns:
        The new TaskLog entry.
    """
    entry = TaskLog(task_id=task_id, user_id=user_id, action=action, details=details)
    session.add(entry)
    await session.flush()
    return entry


async def list_task_logs(
    session: AsyncSession,
    task_id: UUID,
) -> list[TaskLog]:
    """List the audit entries of a task in insertion order."""
    stmt = select(TaskLog).where(TaskLog.task_id == task_id).order_by(TaskLog.created_at.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())
