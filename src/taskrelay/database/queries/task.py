"""Task query functions for taskrelay.

Provides async functions for creating, reading and conditionally updating
Task records. Functions never open their own transaction: the caller wraps
them in ``transaction()`` so a transition and its side effects commit
together.

Every status change goes through ``update_task_if_status``, a conditional
UPDATE whose rowcount tells the caller whether it won.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.database.models.task import (
    HOLDING_STATUSES,
    TIMED_STATUSES,
    Task,
    TaskStatus,
)

logger = structlog.get_logger(__name__)


async def create_task(
    session: AsyncSession,
    dispatcher_id: UUID,
    customer_name: str,
    game_name: str,
    duration_minutes: int,
    customer_contact: str | None = None,
    game_mode: str | None = None,
    requirements: str | None = None,
    status: TaskStatus = TaskStatus.pending,
    worker_id: UUID | None = None,
    accepted_at: datetime | None = None,
    queue_order: int | None = None,
    queued_at: datetime | None = None,
) -> Task:
    """Insert a new task.

    Args:
        session: Active async database session.
        dispatcher_id: Owning dispatcher.
        customer_name: Customer the job is served for.
        game_name: Service the job is about.
        duration_minutes: Allotted duration; also stored as the original duration.
        customer_contact: Optional customer contact detail.
        game_mode: Optional service variant.
        requirements: Optional dispatcher notes.
        status: Initial status (pending unless directly assigned).
        worker_id: Directly assigned worker, if any.
        accepted_at: Acceptance time for directly accepted tasks.
        queue_order: Queue position for directly queued tasks.
        queued_at: Queue time for directly queued tasks.

    Returns:
        The newly created Task instance.
    """
    task = Task(
        dispatcher_id=dispatcher_id,
        worker_id=worker_id,
        status=status,
        customer_name=customer_name,
        customer_contact=customer_contact,
        game_name=game_name,
        game_mode=game_mode,
        requirements=requirements,
        duration_minutes=duration_minutes,
        original_duration_minutes=duration_minutes,
        accepted_at=accepted_at,
        queue_order=queue_order,
        queued_at=queued_at,
        paused_seconds=0,
        needs_attention=False,
    )
    session.add(task)
    await session.flush()
    await session.refresh(task)

    logger.debug(
        "task_inserted",
        task_id=str(task.id),
        dispatcher_id=str(dispatcher_id),
        status=task.status.value,
    )

    return task


async def get_task(
    session: AsyncSession,
    task_id: UUID,
) -> Task | None:
    """Retrieve a task by ID, re-reading it from the store.

    Args:
        session: Active async database session.
        task_id: UUID of the task to retrieve.

    Returns:
        The Task instance if found, None otherwise.
    """
    stmt = select(Task).where(Task.id == task_id).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_tasks(
    session: AsyncSession,
    dispatcher_id: UUID | None = None,
    worker_id: UUID | None = None,
    status_filter: TaskStatus | None = None,
    include_unassigned: bool = False,
    needs_attention: bool | None = None,
) -> list[Task]:
    """List tasks with optional filters, newest first.

    Args:
        session: Active async database session.
        dispatcher_id: Only tasks owned by this dispatcher.
        worker_id: Only tasks assigned to this worker.
        status_filter: Only tasks in this status.
        include_unassigned: With worker_id, also include unassigned pending
            tasks (the pool a worker may accept from).
        needs_attention: Filter on the reconciler attention flag.

    Returns:
        List of matching Task instances.
    """
    stmt = select(Task)

    if dispatcher_id is not None:
        stmt = stmt.where(Task.dispatcher_id == dispatcher_id)

    if worker_id is not None:
        if include_unassigned:
            stmt = stmt.where(
                or_(
                    Task.worker_id == worker_id,
                    and_(Task.worker_id.is_(None), Task.status == TaskStatus.pending),
                )
            )
        else:
            stmt = stmt.where(Task.worker_id == worker_id)

    if status_filter is not None:
        stmt = stmt.where(Task.status == status_filter)

    if needs_attention is not None:
        stmt = stmt.where(Task.needs_attention.is_(needs_attention))

    stmt = stmt.order_by(Task.created_at.desc()).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_task_if_status(
    session: AsyncSession,
    task_id: UUID,
    expected: Iterable[TaskStatus],
    expected_worker_id: UUID | None = None,
    **values: Any,
) -> bool:
    """Conditionally update a task only while it is in an expected status.

    This is the compare-and-swap primitive of the lifecycle engine: the
    WHERE clause re-checks the status at commit time, so of two concurrent
    writers expecting the same status exactly one matches a row.

    Args:
        session: Active async database session.
        task_id: UUID of the task to update.
        expected: Statuses the task must currently be in.
        expected_worker_id: If given, the task must also still be assigned
            to this worker.
        **values: Column values to write.

    Returns:
        True if a row was updated, False if the task was not in an
        expected status (or does not exist).
    """
    conditions = [Task.id == task_id, Task.status.in_(list(expected))]
    if expected_worker_id is not None:
        conditions.append(Task.worker_id == expected_worker_id)

    stmt = (
        update(Task)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def add_task_duration(
    session: AsyncSession,
    task_id: UUID,
    minutes: int,
    expected: Iterable[TaskStatus],
) -> bool:
    """Atomically add minutes to a task's allotted duration.

    The increment is computed by the database, so concurrent extensions
    never overwrite each other.

    Args:
        session: Active async database session.
        task_id: UUID of the task to extend.
        minutes: Minutes to add (positive).
        expected: Statuses the task must currently be in.

    Returns:
        True if the task was extended.
    """
    stmt = (
        update(Task)
        .where(Task.id == task_id, Task.status.in_(list(expected)))
        .values(duration_minutes=Task.duration_minutes + minutes)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def count_holding_tasks(
    session: AsyncSession,
    worker_id: UUID,
) -> int:
    """Count the tasks currently held by a worker."""
    stmt = select(func.count(Task.id)).where(
        Task.worker_id == worker_id,
        Task.status.in_(list(HOLDING_STATUSES)),
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def list_holding_tasks(
    session: AsyncSession,
    worker_id: UUID,
) -> list[Task]:
    """List the tasks currently held by a worker, oldest first."""
    stmt = (
        select(Task)
        .where(
            Task.worker_id == worker_id,
            Task.status.in_(list(HOLDING_STATUSES)),
        )
        .order_by(Task.created_at.asc())
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_timed_tasks(session: AsyncSession) -> list[Task]:
    """List started tasks whose elapsed time the overtime detector watches."""
    stmt = select(Task).where(
        Task.status.in_(list(TIMED_STATUSES)),
        Task.started_at.is_not(None),
    ).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_next_queued_task(
    session: AsyncSession,
    worker_id: UUID,
) -> Task | None:
    """Return the worker's queued task with the lowest queue position."""
    stmt = (
        select(Task)
        .where(Task.worker_id == worker_id, Task.status == TaskStatus.queued)
        .order_by(Task.queue_order.asc(), Task.queued_at.asc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_next_queue_order(
    session: AsyncSession,
    worker_id: UUID,
) -> int:
    """Return the queue position a newly queued task for a worker gets."""
    stmt = select(func.max(Task.queue_order)).where(
        Task.worker_id == worker_id,
        Task.status == TaskStatus.queued,
    )
    result = await session.execute(stmt)
    current = result.scalar_one_or_none()
    return (current or 0) + 1


async def set_attention_flag(
    session: AsyncSession,
    task_ids: Iterable[UUID],
    flagged: bool,
    reason: str | None = None,
) -> int:
    """Set or clear the dispatcher-attention flag on tasks.

    Only tasks whose flag actually changes are touched.

    Args:
        session: Active async database session.
        task_ids: Tasks to update.
        flagged: New flag value.
        reason: Reason stored with the flag (cleared when unflagging).

    Returns:
        Number of tasks whose flag changed.
    """
    ids = list(task_ids)
    if not ids:
        return 0

    stmt = (
        update(Task)
        .where(Task.id.in_(ids), Task.needs_attention.is_(not flagged))
        .values(needs_attention=flagged, attention_reason=reason if flagged else None)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount
