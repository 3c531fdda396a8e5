"""User session query functions for taskrelay.

Provides async functions for opening, refreshing, deactivating and purging
user sessions, and for the liveness test the availability invariant depends
on: a session is live when it is active, unexpired, and saw activity within
the liveness window.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskrelay.database.models.session import UserSession

logger = structlog.get_logger(__name__)


def fingerprint_token(token: str) -> str:
    """Return the SHA-256 hex digest stored in place of a bearer token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


async def create_user_session(
    session: AsyncSession,
    user_id: UUID,
    token: str,
    expires_at: datetime,
    now: datetime,
) -> UserSession:
    """Open a new session for a user.

    Args:
        session: Active async database session.
        user_id: Owning user.
        token: Bearer token issued by the auth collaborator.
        expires_at: Hard expiry of the session.
        now: Current time, recorded as the first activity.

    Returns:
        The newly created UserSession instance.
    """
    user_session = UserSession(
        user_id=user_id,
        token_fingerprint=fingerprint_token(token),
        expires_at=expires_at,
        last_activity_at=now,
        is_active=True,
    )
    session.add(user_session)
    await session.flush()
    await session.refresh(user_session)

    logger.info(
        "user_session_created",
        session_id=str(user_session.id),
        user_id=str(user_id),
        expires_at=expires_at.isoformat(),
    )

    return user_session


async def get_active_session_by_token(
    session: AsyncSession,
    token: str,
    now: datetime,
) -> UserSession | None:
    """Find the active, unexpired session matching a bearer token."""
    stmt = select(UserSession).where(
        UserSession.token_fingerprint == fingerprint_token(token),
        UserSession.is_active.is_(True),
        UserSession.expires_at > now,
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def touch_user_session(
    session: AsyncSession,
    session_id: UUID,
    now: datetime,
) -> bool:
    """Record inbound activity on an active session."""
    stmt = (
        update(UserSession)
        .where(UserSession.id == session_id, UserSession.is_active.is_(True))
        .values(last_activity_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def deactivate_session(
    session: AsyncSession,
    session_id: UUID,
    now: datetime,
) -> bool:
    """Deactivate a single session (logout)."""
    stmt = (
        update(UserSession)
        .where(UserSession.id == session_id, UserSession.is_active.is_(True))
        .values(is_active=False, ended_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def deactivate_user_sessions(
    session: AsyncSession,
    user_id: UUID,
    now: datetime,
) -> int:
    """Deactivate every active session of a user.

    Returns:
        Number of sessions deactivated.
    """
    stmt = (
        update(UserSession)
        .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
        .values(is_active=False, ended_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount


async def count_live_sessions(
    session: AsyncSession,
    user_id: UUID,
    now: datetime,
    liveness_window: timedelta,
) -> int:
    """Count the sessions that make a user live.

    Args:
        session: Active async database session.
        user_id: User to check.
        now: Current time.
        liveness_window: Maximum age of the last activity.

    Returns:
        Number of live sessions.
    """
    stmt = select(func.count(UserSession.id)).where(
        UserSession.user_id == user_id,
        UserSession.is_active.is_(True),
        UserSession.expires_at > now,
        UserSession.last_activity_at >= now - liveness_window,
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def expire_sessions(
    session: AsyncSession,
    now: datetime,
) -> list[UUID]:
    """Deactivate sessions past their expiry.

    Returns:
        Distinct user IDs whose sessions were expired.
    """
    stmt = (
        select(UserSession.user_id)
        .where(UserSession.is_active.is_(True), UserSession.expires_at <= now)
        .distinct()
    )
    result = await session.execute(stmt)
    user_ids = list(result.scalars().all())

    if user_ids:
        await session.execute(
            update(UserSession)
            .where(UserSession.is_active.is_(True), UserSession.expires_at <= now)
            .values(is_active=False, ended_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info("user_sessions_expired", user_count=len(user_ids))

    return user_ids


async def purge_sessions(
    session: AsyncSession,
    older_than: datetime,
) -> int:
    """Delete inactive sessions whose last activity predates the cutoff.

    Returns:
        Number of sessions deleted.
    """
    stmt = (
        delete(UserSession)
        .where(
            UserSession.is_active.is_(False),
            UserSession.last_activity_at < older_than,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount:
        logger.info("user_sessions_purged", count=result.rowcount)
    return result.rowcount
