"""Extension request query functions for taskrelay.

Reviews are conditional updates on ``status = pending`` so a request can be
resolved exactly once, whether by a dispatcher or by auto-rejection.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.database.models.extension import ExtensionRequest, ExtensionStatus

logger = structlog.get_logger(__name__)


async def create_extension_request(
    session: AsyncSession,
    task_id: UUID,
    worker_id: UUID,
    dispatcher_id: UUID,
    requested_minutes: int,
    reason: str | None = None,
) -> ExtensionRequest:
    """Insert a pending extension request.

    Args:
        session: Active async database session.
        task_id: Task to extend.
        worker_id: Requesting worker.
        dispatcher_id: Dispatcher owning the task.
        requested_minutes: Minutes to add on approval.
        reason: Worker's justification.

    Returns:
        The newly created ExtensionRequest.
    """
    request = ExtensionRequest(
        task_id=task_id,
        worker_id=worker_id,
        dispatcher_id=dispatcher_id,
        requested_minutes=requested_minutes,
        reason=reason,
        status=ExtensionStatus.pending,
    )
    session.add(request)
    await session.flush()
    await session.refresh(request)
    return request


async def get_extension_request(
    session: AsyncSession,
    request_id: UUID,
) -> ExtensionRequest | None:
    """Retrieve an extension request by ID, re-reading it from the store."""
    stmt = (
        select(ExtensionRequest)
        .where(ExtensionRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_pending_request_for_task(
    session: AsyncSession,
    task_id: UUID,
) -> ExtensionRequest | None:
    """Return the pending extension request of a task, if any."""
    stmt = select(ExtensionRequest).where(
        ExtensionRequest.task_id == task_id,
        ExtensionRequest.status == ExtensionStatus.pending,
    ).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalars().first()


async def list_extension_requests(
    session: AsyncSession,
    task_id: UUID | None = None,
    worker_id: UUID | None = None,
    dispatcher_id: UUID | None = None,
    status_filter: ExtensionStatus | None = None,
) -> list[ExtensionRequest]:
    """List extension requests with optional filters, newest first."""
    stmt = select(ExtensionRequest)

    if task_id is not None:
        stmt = stmt.where(ExtensionRequest.task_id == task_id)

    if worker_id is not None:
        stmt = stmt.where(ExtensionRequest.worker_id == worker_id)

    if dispatcher_id is not None:
        stmt = stmt.where(ExtensionRequest.dispatcher_id == dispatcher_id)

    if status_filter is not None:
        stmt = stmt.where(ExtensionRequest.status == status_filter)

    stmt = stmt.order_by(ExtensionRequest.created_at.desc()).execution_options(
        populate_existing=True
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def resolve_extension_request(
    session: AsyncSession,
    request_id: UUID,
    status: ExtensionStatus,
    reviewed_at: datetime,
    reviewed_by: UUID | None = None,
    review_reason: str | None = None,
) -> bool:
    """Move a pending request to approved or rejected.

    Args:
        session: Active async database session.
        request_id: Request to resolve.
        status: approved or rejected.
        reviewed_at: Review time.
        reviewed_by: Reviewer, None for system rejections.
        review_reason: Explanation stored with the decision.

    Returns:
        True if the request was still pending and is now resolved.
    """
    stmt = (
        update(ExtensionRequest)
        .where(
            ExtensionRequest.id == request_id,
            ExtensionRequest.status == ExtensionStatus.pending,
        )
        .values(
            status=status,
            reviewed_by=reviewed_by,
            review_reason=review_reason,
            reviewed_at=reviewed_at,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1
