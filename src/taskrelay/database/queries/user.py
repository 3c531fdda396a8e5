"""User query functions for taskrelay.

Provides async functions for creating, reading and disabling users. The conditional
availability write lives here too, but only the availability manager may
call it.
"""

from __future__ import annotations

from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.database.models.user import Role, User, WorkerAvailability

logger = structlog.get_logger(__name__)


async def create_user(
    session: AsyncSession,
    username: str,
    role: Role,
    display_name: str | None = None,
) -> User:
    """Create a new user.

    Workers start offline; they become idle once a live session exists and
    their availability is recomputed.

    Args:
        session: Active async database session.
        username: Unique login name.
        role: Role of the account.
        display_name: Optional name shown to other users.

    Returns:
        The newly created User instance.
    """
    user = User(
        username=username,
        display_name=display_name,
        role=role,
        availability=WorkerAvailability.offline if role == Role.worker else None,
        is_active=True,
    )
    session.add(user)
    await session.flush()
    await session.refresh(user)

    logger.info(
        "user_created",
        user_id=str(user.id),
        username=username,
        role=role.value,
    )

    return user


async def get_user(
    session: AsyncSession,
    user_id: UUID,
) -> User | None:
    """Retrieve a user by ID, re-reading it from the store."""
    stmt = select(User).where(User.id == user_id).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_users(
    session: AsyncSession,
    role: Role | None = None,
    active_only: bool = True,
) -> list[User]:
    """List users with optional role filter, ordered by username.

    Args:
        session: Active async database session.
        role: Optional role to filter by.
        active_only: Exclude disabled accounts.

    Returns:
        List of matching User instances.
    """
    stmt = select(User)

    if role is not None:
        stmt = stmt.where(User.role == role)

    if active_only:
        stmt = stmt.where(User.is_active.is_(True))

    stmt = stmt.order_by(User.username.asc()).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def set_user_active(
    session: AsyncSession,
    user_id: UUID,
    is_active: bool,
) -> bool:
    """Enable or disable an account.

    Returns:
        True if the user exists and was updated.
    """
    stmt = (
        update(User)
        .where(User.id == user_id)
        .values(is_active=is_active)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def update_availability_if(
    session: AsyncSession,
    worker_id: UUID,
    expected: WorkerAvailability | None,
    new: WorkerAvailability,
) -> bool:
    """Conditionally write a worker's availability.

    Args:
        session: Active async database session.
        worker_id: Worker to update.
        expected: Availability the worker must currently have.
        new: Availability to write.

    Returns:
        True if the row matched and was updated.
    """
    condition = (
        User.availability.is_(None) if expected is None else User.availability == expected
    )
    stmt = (
        update(User)
        .where(User.id == worker_id, User.role == Role.worker, condition)
        .values(availability=new)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1
